from __future__ import annotations

import json
import os
from contextlib import suppress
from pathlib import Path
from typing import Any

from devpipe.state.model import RunState
from devpipe.util.errors import RunStateError


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON through a temporary file and ``os.replace``."""
    tmp_path = path.with_name(path.name + ".tmp")
    text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(text + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def load_state(run_dir: Path) -> RunState:
    state_path = run_dir / "state.json"
    if state_path.is_symlink():
        raise RunStateError(f"state file must not be symlink: {state_path}")
    try:
        raw = read_json(state_path)
    except FileNotFoundError as exc:
        raise RunStateError(f"state file not found: {state_path}") from exc
    except UnicodeError as exc:
        raise RunStateError(f"failed to decode state file as utf-8: {state_path}") from exc
    except json.JSONDecodeError as exc:
        raise RunStateError(f"invalid state json: {state_path}") from exc
    except OSError as exc:
        raise RunStateError(f"failed to read state file: {state_path}") from exc
    if not isinstance(raw, dict):
        raise RunStateError("state root must be object")
    if not isinstance(raw.get("run_id"), str) or not isinstance(raw.get("instances"), dict):
        raise RunStateError(f"invalid state file: {state_path}")
    return RunState.from_dict(raw)


def save_state_atomic(run_dir: Path, state: RunState) -> None:
    write_json_atomic(run_dir / "state.json", state.to_dict())
