"""Idempotent, convergent lifecycle operations over the environment registry.

Every operation is defined for every lifecycle state:

=========  ===========  =======================  =======================
op         ABSENT       CREATED                  POPULATED
=========  ===========  =======================  =======================
create     -> CREATED   no-op (same params)      no-op (same params)
remove     no-op        -> ABSENT                -> ABSENT
provision  -> CREATED   -> CREATED (recreated)   -> CREATED (recreated)
install    StateError   -> POPULATED             -> POPULATED
uninstall  StateError   no-op                    -> CREATED
export     StateError   files written            files written
import     -> CREATED+  refreshed to match       refreshed to match
=========  ===========  =======================  =======================

Mutations on one environment name are serialized by a lock file; a second
concurrent mutation fails with EnvironmentConflictError.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

import yaml

from devpipe.config.project import requirement_name, requirements_for_environment
from devpipe.config.schema import EnvironmentSpec, LifecycleOp, ProjectSpec
from devpipe.envs.backend import EnvironmentBackend
from devpipe.envs.lock import env_lock
from devpipe.envs.model import EnvironmentState
from devpipe.envs.registry import EnvironmentRegistry
from devpipe.util.errors import ConfigurationError, DevpipeError, StateError
from devpipe.util.ids import is_safe_id
from devpipe.util.paths import exports_dir
from devpipe.util.time import now_iso

log = logging.getLogger(__name__)


def export_paths(directory: Path, name: str) -> tuple[Path, Path]:
    """Editable environment description and exact package list written by ``export``."""
    if not is_safe_id(name):
        raise ConfigurationError(f"invalid environment name: {name!r}")
    return directory / f"{name}.environment.yaml", directory / f"{name}.lock.txt"


def parse_lock(text: str) -> dict[str, str]:
    pins: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        pkg, sep, version = line.partition("==")
        if not sep or not pkg.strip() or not version.strip():
            raise StateError(f"invalid lock line: {raw_line!r}")
        pins[pkg.strip().lower()] = version.strip()
    return pins


def render_lock(state: EnvironmentState) -> str:
    lines = [f"# {state.name} ({state.platform}, runtime {state.runtime_version})"]
    lines.extend(f"{pkg}=={version}" for pkg, version in sorted(state.installed.items()))
    return "\n".join(lines) + "\n"


class EnvironmentManager:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        backend: EnvironmentBackend,
        *,
        environments: list[EnvironmentSpec] | None = None,
        project: ProjectSpec | None = None,
        exports: Path | None = None,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.environments = {env.name: env for env in environments or []}
        self.project = project or ProjectSpec()
        self.exports = exports if exports is not None else exports_dir(registry.home)

    @property
    def platform(self) -> str:
        return self.registry.platform

    def _spec(self, name: str) -> EnvironmentSpec | None:
        spec = self.environments.get(name)
        if spec is not None and not spec.supports(self.platform):
            raise ConfigurationError(
                f"environment '{name}' does not support platform '{self.platform}'"
            )
        return spec

    @contextmanager
    def _mutating(self, name: str) -> Iterator[None]:
        with env_lock(self.registry.env_dir(name)):
            yield

    def _save(self, state: EnvironmentState) -> EnvironmentState:
        state.updated_at = now_iso()
        self.registry.save(state)
        return state

    def get(self, name: str) -> EnvironmentState:
        return self.registry.load(name)

    def states(self) -> list[EnvironmentState]:
        return self.registry.all()

    def _create_params(
        self, name: str, runtime_version: str | None, params: dict[str, str] | None
    ) -> tuple[str, dict[str, str]]:
        spec = self._spec(name)
        runtime = runtime_version or (spec.runtime if spec is not None else None)
        if runtime is None:
            raise ConfigurationError(
                f"environment '{name}' is not declared; a runtime version is required"
            )
        if params is None:
            params = dict(spec.params) if spec is not None else {}
        return runtime, params

    def _create(self, name: str, runtime: str, params: dict[str, str]) -> EnvironmentState:
        state = self.registry.load(name)
        if state.state != "ABSENT":
            if state.runtime_version == runtime and state.params == params:
                log.info("environment %s already exists; nothing to do", name)
                return state
            raise StateError(
                f"environment '{name}' exists with runtime {state.runtime_version} and "
                f"params {state.params}; use provision to recreate it"
            )
        path = self.registry.runtime_dir(name)
        try:
            self.backend.create(path, runtime, params)
        except DevpipeError:
            with suppress(OSError, DevpipeError):
                self.backend.destroy(path)
            raise
        state.state = "CREATED"
        state.runtime_version = runtime
        state.params = dict(params)
        state.created_at = now_iso()
        log.info("created environment %s (runtime %s)", name, runtime)
        return self._save(state)

    def _remove(self, name: str) -> EnvironmentState:
        state = self.registry.load(name)
        path = self.registry.runtime_dir(name)
        if state.state == "ABSENT" and not path.exists():
            return state
        self.backend.destroy(path)
        self.registry.delete(name)
        log.info("removed environment %s", name)
        return EnvironmentState(name=name, platform=self.platform)

    def create(
        self, name: str, runtime_version: str | None = None, params: dict[str, str] | None = None
    ) -> EnvironmentState:
        runtime, resolved = self._create_params(name, runtime_version, params)
        with self._mutating(name):
            return self._create(name, runtime, resolved)

    def remove(self, name: str) -> EnvironmentState:
        with self._mutating(name):
            return self._remove(name)

    def provision(
        self, name: str, runtime_version: str | None = None, params: dict[str, str] | None = None
    ) -> EnvironmentState:
        runtime, resolved = self._create_params(name, runtime_version, params)
        with self._mutating(name):
            self._remove(name)
            return self._create(name, runtime, resolved)

    def install(self, name: str, requirements: list[str] | None = None) -> EnvironmentState:
        with self._mutating(name):
            state = self.registry.load(name)
            if state.state == "ABSENT":
                raise StateError(f"cannot install into absent environment '{name}'")
            if requirements is None:
                spec = self._spec(name)
                requirements = (
                    requirements_for_environment(spec, self.project)
                    if spec is not None
                    else list(state.requirements)
                )
            path = self.registry.runtime_dir(name)
            if requirements:
                self.backend.install(path, requirements)
            state.installed = self.backend.freeze(path)
            state.requirements = list(requirements)
            state.state = "POPULATED"
            state.exported = False
            log.info("installed %d requirement(s) into %s", len(requirements), name)
            return self._save(state)

    def uninstall(self, name: str) -> EnvironmentState:
        with self._mutating(name):
            state = self.registry.load(name)
            if state.state == "ABSENT":
                raise StateError(f"cannot uninstall from absent environment '{name}'")
            if state.state == "CREATED":
                return state
            path = self.registry.runtime_dir(name)
            # editable installs of the project are not part of the frozen manifest
            names = set(state.installed) | set(self.backend.editables(path))
            self.backend.uninstall(path, sorted(names))
            state.installed = self.backend.freeze(path)
            state.requirements = []
            state.state = "CREATED"
            state.exported = False
            log.info("uninstalled project dependencies from %s", name)
            return self._save(state)

    def export(self, name: str, directory: Path | None = None) -> tuple[Path, Path]:
        target = directory if directory is not None else self.exports
        with self._mutating(name):
            state = self.registry.load(name)
            if state.state == "ABSENT":
                raise StateError(f"cannot export absent environment '{name}'")
            spec_path, lock_path = export_paths(target, name)
            target.mkdir(parents=True, exist_ok=True)
            document = {
                "name": state.name,
                "platform": state.platform,
                "runtime_version": state.runtime_version,
                "params": state.params,
                "requirements": state.requirements,
            }
            spec_path.write_text(
                yaml.safe_dump(document, sort_keys=False, allow_unicode=True), encoding="utf-8"
            )
            lock_path.write_text(render_lock(state), encoding="utf-8")
            state.exported = True
            state.exported_at = now_iso()
            self._save(state)
            log.info("exported %s to %s", name, spec_path)
            return spec_path, lock_path

    def _read_export(self, name: str, directory: Path) -> tuple[dict[str, Any], dict[str, str]]:
        spec_path, lock_path = export_paths(directory, name)
        try:
            document = yaml.safe_load(spec_path.read_text(encoding="utf-8"))
            lock_text = lock_path.read_text(encoding="utf-8") if lock_path.exists() else ""
        except FileNotFoundError as exc:
            raise StateError(f"no export found for environment '{name}' in {directory}") from exc
        except (OSError, UnicodeError, yaml.YAMLError) as exc:
            raise StateError(f"failed to read export of environment '{name}': {exc}") from exc
        if not isinstance(document, dict) or not isinstance(document.get("runtime_version"), str):
            raise StateError(f"export of environment '{name}' is malformed: {spec_path}")
        return document, parse_lock(lock_text)

    def import_(
        self, name: str, source: str | None = None, directory: Path | None = None
    ) -> EnvironmentState:
        """Create or refresh ``name`` to match the export of ``source`` (default: itself)."""
        document, pins = self._read_export(source or name, directory or self.exports)
        runtime = document["runtime_version"]
        raw_params = document.get("params") or {}
        params = {str(k): str(v) for k, v in raw_params.items()} if isinstance(raw_params, dict) else {}
        raw_requirements = document.get("requirements") or []
        requirements = [r for r in raw_requirements if isinstance(r, str)]

        with self._mutating(name):
            state = self.registry.load(name)
            if state.state != "ABSENT" and (
                state.runtime_version != runtime or state.params != params
            ):
                self._remove(name)
                state = self.registry.load(name)
            if state.state == "ABSENT":
                state = self._create(name, runtime, params)

            path = self.registry.runtime_dir(name)
            editable = [line for line in requirements if line.startswith("-e ")]
            wanted = editable + [f"{pkg}=={version}" for pkg, version in sorted(pins.items())]
            if wanted:
                self.backend.install(path, wanted)
            current = self.backend.freeze(path)
            pinned = {requirement_name(pkg) for pkg in pins}
            extra = sorted(pkg for pkg in current if requirement_name(pkg) not in pinned)
            if extra:
                self.backend.uninstall(path, extra)
                current = self.backend.freeze(path)
            state.installed = current
            state.requirements = requirements
            state.state = "POPULATED" if current or requirements else "CREATED"
            state.exported = False
            log.info("imported %s from export of %s", name, source or name)
            return self._save(state)

    def perform(self, op: LifecycleOp, name: str, *, source: str | None = None) -> EnvironmentState:
        """Run one lifecycle operation by name, as declared by a lifecycle task."""
        if op == "create":
            return self.create(name)
        if op == "remove":
            return self.remove(name)
        if op == "provision":
            return self.provision(name)
        if op == "install":
            return self.install(name)
        if op == "uninstall":
            return self.uninstall(name)
        if op == "export":
            self.export(name)
            return self.get(name)
        if op == "import":
            return self.import_(name, source=source)
        raise ConfigurationError(f"unknown lifecycle operation: {op}")
