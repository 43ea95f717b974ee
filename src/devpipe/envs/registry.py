"""Persistent lifecycle records, one directory per environment and platform."""

from __future__ import annotations

import json
from pathlib import Path

from devpipe.envs.model import EnvironmentState
from devpipe.state.store import read_json, write_json_atomic
from devpipe.util.errors import ConfigurationError, StateError
from devpipe.util.ids import is_safe_id
from devpipe.util.paths import envs_root

_STATE_FILE = "environment.json"


class EnvironmentRegistry:
    def __init__(self, home: Path, platform: str) -> None:
        if not is_safe_id(platform):
            raise ConfigurationError(f"invalid platform name: {platform!r}")
        self.home = home
        self.platform = platform
        self.root = envs_root(home, platform)

    def env_dir(self, name: str) -> Path:
        if not is_safe_id(name):
            raise ConfigurationError(f"invalid environment name: {name!r}")
        return self.root / name

    def runtime_dir(self, name: str) -> Path:
        return self.env_dir(name) / "runtime"

    def load(self, name: str) -> EnvironmentState:
        path = self.env_dir(name) / _STATE_FILE
        try:
            raw = read_json(path)
        except FileNotFoundError:
            return EnvironmentState(name=name, platform=self.platform)
        except (OSError, UnicodeError, json.JSONDecodeError) as exc:
            raise StateError(f"environment record is unreadable: {path}") from exc
        if not isinstance(raw, dict):
            raise StateError(f"environment record is malformed: {path}")
        state = EnvironmentState.from_dict(raw)
        state.name = name
        state.platform = self.platform
        return state

    def save(self, state: EnvironmentState) -> None:
        env_dir = self.env_dir(state.name)
        env_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(env_dir / _STATE_FILE, state.to_dict())

    def delete(self, name: str) -> None:
        (self.env_dir(name) / _STATE_FILE).unlink(missing_ok=True)

    def names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            child.name
            for child in self.root.iterdir()
            if is_safe_id(child.name) and (child / _STATE_FILE).is_file()
        )

    def all(self) -> list[EnvironmentState]:
        return [self.load(name) for name in self.names()]
