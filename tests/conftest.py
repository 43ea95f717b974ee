from __future__ import annotations

from pathlib import Path

import pytest

from devpipe.config.project import requirement_name
from devpipe.config.schema import EnvironmentSpec, ProjectSpec
from devpipe.envs.manager import EnvironmentManager
from devpipe.envs.registry import EnvironmentRegistry
from devpipe.util.errors import ExecutionError


class FakeBackend:
    """In-memory backend: a runtime is a directory, packages live in a dict."""

    def __init__(self) -> None:
        self.packages: dict[Path, dict[str, str]] = {}
        self.editable: dict[Path, set[str]] = {}
        self.editable_name = "demo"
        self.calls: list[tuple[str, str]] = []
        self.fail_create = False

    def create(self, path: Path, runtime_version: str, params: dict[str, str]) -> None:
        self.calls.append(("create", path.parent.name))
        if self.fail_create:
            raise ExecutionError("interpreter not found", exit_code=127)
        path.mkdir(parents=True, exist_ok=True)
        self.packages[path] = {}

    def destroy(self, path: Path) -> None:
        self.calls.append(("destroy", path.parent.name))
        if path.exists():
            path.rmdir()
        self.packages.pop(path, None)
        self.editable.pop(path, None)

    def install(self, path: Path, requirements: list[str]) -> None:
        self.calls.append(("install", path.parent.name))
        installed = self.packages.setdefault(path, {})
        for line in requirements:
            if line.startswith("-e "):
                self.editable.setdefault(path, set()).add(self.editable_name)
                continue
            name = requirement_name(line)
            assert name is not None
            _, _, version = line.partition("==")
            installed[name] = version or "1.0"

    def uninstall(self, path: Path, names: list[str]) -> None:
        self.calls.append(("uninstall", path.parent.name))
        installed = self.packages.setdefault(path, {})
        for name in names:
            installed.pop(name, None)
            self.editable.get(path, set()).discard(name)

    def freeze(self, path: Path) -> dict[str, str]:
        return dict(self.packages.get(path, {}))

    def editables(self, path: Path) -> list[str]:
        return sorted(self.editable.get(path, set()))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def manager(tmp_path: Path, backend: FakeBackend) -> EnvironmentManager:
    registry = EnvironmentRegistry(tmp_path / ".devpipe", "linux")
    return EnvironmentManager(
        registry,
        backend,
        environments=[
            EnvironmentSpec(name="dev", runtime="3.12", dependencies=["ruff==0.6.0"]),
            EnvironmentSpec(name="win-only", runtime="3.12", platforms=["win32"]),
        ],
        project=ProjectSpec(name="demo", dependencies=["requests==2.32.0"]),
    )
