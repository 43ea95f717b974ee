"""Runtime backends that materialize environments on disk."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Protocol

from devpipe.util.errors import ExecutionError

log = logging.getLogger(__name__)

_BASE_PACKAGES = frozenset({"pip"})


class EnvironmentBackend(Protocol):
    def create(self, path: Path, runtime_version: str, params: dict[str, str]) -> None: ...

    def destroy(self, path: Path) -> None: ...

    def install(self, path: Path, requirements: list[str]) -> None: ...

    def uninstall(self, path: Path, names: list[str]) -> None: ...

    def freeze(self, path: Path) -> dict[str, str]: ...

    def editables(self, path: Path) -> list[str]: ...


def _requirement_args(requirements: list[str]) -> list[str]:
    args: list[str] = []
    for line in requirements:
        if line.startswith("-e "):
            args.extend(["-e", line[3:].strip()])
        else:
            args.append(line)
    return args


class VenvBackend:
    """``python -m venv`` plus pip, run from the project root."""

    def __init__(self, project_root: Path, *, timeout_sec: float | None = None) -> None:
        self.project_root = project_root
        self.timeout_sec = timeout_sec

    def _run(self, args: list[str]) -> str:
        log.debug("running %s", args)
        try:
            proc = subprocess.run(
                args,
                cwd=self.project_root,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_sec,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(f"failed to start process: {args[0]}", exit_code=127) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExecutionError(f"command timed out: {args}") from exc
        if proc.returncode != 0:
            raise ExecutionError(
                f"command failed with exit code {proc.returncode}: {args}\n{proc.stderr.strip()}",
                exit_code=proc.returncode,
            )
        return proc.stdout

    def _interpreter(self, runtime_version: str) -> str:
        found = shutil.which(f"python{runtime_version}")
        if found is not None:
            return found
        current = f"{sys.version_info.major}.{sys.version_info.minor}"
        if runtime_version in (current, str(sys.version_info.major)):
            return sys.executable
        raise ExecutionError(f"no interpreter found for runtime {runtime_version}", exit_code=127)

    @staticmethod
    def _python(path: Path) -> str:
        if sys.platform == "win32":
            return str(path / "Scripts" / "python.exe")
        return str(path / "bin" / "python")

    def create(self, path: Path, runtime_version: str, params: dict[str, str]) -> None:
        args = [self._interpreter(runtime_version), "-m", "venv"]
        if params.get("system_site_packages") == "true":
            args.append("--system-site-packages")
        self._run([*args, str(path)])

    def destroy(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)

    def _pip(self, path: Path, *args: str) -> str:
        return self._run([self._python(path), "-m", "pip", "--disable-pip-version-check", *args])

    def _pip_list(self, path: Path, *args: str) -> list[dict[str, object]]:
        out = self._pip(path, "list", "--format=json", *args)
        try:
            rows = json.loads(out)
        except json.JSONDecodeError as exc:
            raise ExecutionError("pip list returned invalid json") from exc
        if not isinstance(rows, list):
            raise ExecutionError("pip list returned invalid json")
        return [row for row in rows if isinstance(row, dict) and isinstance(row.get("name"), str)]

    def install(self, path: Path, requirements: list[str]) -> None:
        self._pip(path, "install", *_requirement_args(requirements))

    def uninstall(self, path: Path, names: list[str]) -> None:
        if names:
            self._pip(path, "uninstall", "-y", *names)

    def freeze(self, path: Path) -> dict[str, str]:
        return {
            str(row["name"]).lower(): str(row.get("version", ""))
            for row in self._pip_list(path, "--exclude-editable")
            if str(row["name"]).lower() not in _BASE_PACKAGES
        }

    def editables(self, path: Path) -> list[str]:
        return sorted(str(row["name"]).lower() for row in self._pip_list(path, "--editable"))
