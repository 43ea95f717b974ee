"""Ephemeral, per-instance execution context."""

from __future__ import annotations

import glob as globlib
import os
import re
import shutil
import sys
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from devpipe.config.schema import TaskSpec
from devpipe.dag.expand import TaskInstance


@dataclass(slots=True)
class InstanceContext:
    instance: TaskInstance
    task: TaskSpec
    run_dir: Path
    workdir: Path
    artifact_dir: Path
    tmp_dir: Path
    merge_dir: Path | None = None
    venv_dir: Path | None = None

    def placeholders(self) -> dict[str, str]:
        values = {
            "instance": self.instance.id,
            "task": self.task.name,
            "artifact_dir": str(self.artifact_dir),
            "tmp_dir": str(self.tmp_dir),
            "merge_dir": "" if self.merge_dir is None else str(self.merge_dir),
            "workdir": str(self.workdir),
        }
        values.update(self.instance.values)
        return values

    def render(self, value: str) -> str:
        return value.format_map(self.placeholders())

    def commands(self) -> list[list[str]]:
        return [[self.render(arg) for arg in cmd] for cmd in self.task.commands]

    def cwd(self) -> Path:
        if self.task.cwd is None:
            return self.workdir
        cwd = Path(self.render(self.task.cwd))
        if cwd.is_absolute():
            return cwd
        return self.workdir / cwd

    def environ(self) -> dict[str, str]:
        env = os.environ.copy()
        tmp = str(self.tmp_dir)
        env.update({"TMPDIR": tmp, "TMP": tmp, "TEMP": tmp})
        env["DEVPIPE_RUN_DIR"] = str(self.run_dir)
        env["DEVPIPE_INSTANCE"] = self.instance.id
        env["DEVPIPE_TASK"] = self.task.name
        env["DEVPIPE_ARTIFACT_DIR"] = str(self.artifact_dir)
        if self.merge_dir is not None:
            env["DEVPIPE_MERGE_DIR"] = str(self.merge_dir)
        if self.venv_dir is not None:
            env["VIRTUAL_ENV"] = str(self.venv_dir)
            env["PATH"] = os.pathsep.join(
                filter(None, [str(venv_bin_dir(self.venv_dir)), env.get("PATH")])
            )
            env.pop("PYTHONHOME", None)
        for axis, value in self.instance.params:
            env[f"DEVPIPE_PARAM_{axis.upper()}"] = value
        if self.task.env:
            env.update({key: self.render(value) for key, value in self.task.env.items()})
        return env


def venv_bin_dir(venv_dir: Path) -> Path:
    return venv_dir / ("Scripts" if sys.platform == "win32" else "bin")


@contextmanager
def instance_context(
    instance: TaskInstance,
    task: TaskSpec,
    run_dir: Path,
    workdir: Path,
    *,
    merge_dir: Path | None = None,
    private_venv: bool = False,
) -> Iterator[InstanceContext]:
    """Yield a fresh context; its temporary directory is gone once the instance ends.

    With ``private_venv`` the context points at a virtual environment inside that
    directory, so installs made by the instance never reach the host interpreter.
    """
    artifact_dir = run_dir / "artifacts" / instance.id
    artifact_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f"devpipe-{instance.id}-") as tmp:
        yield InstanceContext(
            instance=instance,
            task=task,
            run_dir=run_dir,
            workdir=workdir,
            artifact_dir=artifact_dir,
            tmp_dir=Path(tmp),
            merge_dir=merge_dir,
            venv_dir=Path(tmp) / "venv" if private_venv else None,
        )


def _artifact_relative_path(match: Path, cwd: Path) -> Path:
    def _sanitize_parts(path: Path) -> list[str]:
        anchor = path.anchor
        cleaned: list[str] = []
        for part in path.parts:
            if not part or part == anchor or part == ".":
                continue
            cleaned.append("__up__" if part == ".." else part.replace(":", "_"))
        return cleaned

    try:
        rel = match.relative_to(cwd)
    except ValueError:
        return Path("__external__", *(_sanitize_parts(match) or ["root"]))
    return Path(*(_sanitize_parts(rel) or ["root"]))


def _iter_output_matches(pattern: str, cwd: Path) -> list[Path]:
    try:
        if Path(pattern).is_absolute():
            return [Path(p) for p in globlib.glob(pattern, recursive=True)]
        return list(cwd.glob(pattern))
    except (OSError, ValueError, re.error):
        return []


def collect_outputs(ctx: InstanceContext) -> list[str]:
    """Copy declared output globs into the instance artifact directory.

    The artifact directory is append-only: files already present are kept.
    Returned paths are relative to the run directory.
    """
    copied: list[str] = []
    cwd = ctx.cwd()
    for pattern in ctx.task.outputs:
        for match in _iter_output_matches(ctx.render(pattern), cwd):
            if not match.is_file():
                continue
            dest = ctx.artifact_dir / _artifact_relative_path(match, cwd)
            if dest.exists():
                continue
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(match, dest)
            except OSError:
                continue
            copied.append(str(dest.relative_to(ctx.run_dir)))
    return sorted(set(copied))


def artifact_files(artifact_dir: Path) -> list[Path]:
    if not artifact_dir.is_dir():
        return []
    return sorted(path for path in artifact_dir.rglob("*") if path.is_file())
