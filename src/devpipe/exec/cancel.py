"""Cancel requests shared through the run directory."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

CancelMode = Literal["graceful", "force"]
_REQUEST_NAME = "cancel.request"


def cancel_mode(run_dir: Path) -> CancelMode | None:
    """Return the requested cancel mode, or None when no cancel was requested."""
    path = run_dir / _REQUEST_NAME
    try:
        if path.is_symlink() or not path.is_file():
            return None
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return "force" if content == "force" else "graceful"


def write_cancel_request(run_dir: Path, *, force: bool = False) -> None:
    path = run_dir / _REQUEST_NAME
    if path.is_symlink():
        raise OSError("cancel request path must not be symlink")
    if path.exists() and not path.is_file():
        raise OSError("cancel request path must be regular file")
    # a forced request must never be downgraded by a later graceful one
    if not force and cancel_mode(run_dir) == "force":
        return
    path.write_text("force\n" if force else "graceful\n", encoding="utf-8")

