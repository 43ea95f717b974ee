from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from devpipe.config.loader import load_manifest
from devpipe.config.schema import PipelineSpec
from devpipe.dag.schedule import resolve
from devpipe.dag.store import TaskStore
from devpipe.envs.backend import VenvBackend
from devpipe.envs.manager import EnvironmentManager
from devpipe.envs.model import EnvironmentState
from devpipe.envs.registry import EnvironmentRegistry
from devpipe.exec.cancel import write_cancel_request
from devpipe.exec.runner import exit_code_for_state, run_pipeline
from devpipe.report.render_md import render_markdown
from devpipe.report.summarize import build_summary
from devpipe.state.model import RunState
from devpipe.state.store import load_state
from devpipe.util.errors import (
    ConfigurationError,
    DevpipeError,
    EnvironmentConflictError,
    RunStateError,
    StateError,
)
from devpipe.util.ids import is_safe_id, new_run_id
from devpipe.util.paths import ensure_run_layout, run_dir
from devpipe.util.tail import tail_lines

app = typer.Typer(help="Development pipeline orchestrator")
env_app = typer.Typer(help="Manage persistent development environments")
app.add_typer(env_app, name="env")
console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    "SUCCESS": "green",
    "FAILED": "red",
    "SKIPPED": "yellow",
    "CANCELED": "magenta",
    "RUNNING": "cyan",
    "PENDING": "dim",
}

ManifestOption = Annotated[
    Path, typer.Option("--manifest", "-m", envvar="DEVPIPE_MANIFEST", help="Pipeline manifest")
]
HomeOption = Annotated[
    Path, typer.Option("--home", envvar="DEVPIPE_HOME", help="State directory for runs and envs")
]
PlatformOption = Annotated[
    str | None, typer.Option("--platform", help="Platform variant (default: host platform)")
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(title: str, exc: BaseException, code: int = 2) -> typer.Exit:
    console.print(f"[red]{title}:[/red] {escape(str(exc))}")
    return typer.Exit(code)


def _exit_for_error(exc: DevpipeError) -> typer.Exit:
    if isinstance(exc, EnvironmentConflictError):
        return _fail("Environment busy", exc, 3)
    if isinstance(exc, ConfigurationError):
        return _fail("Configuration error", exc)
    if isinstance(exc, (StateError, RunStateError)):
        return _fail("State error", exc)
    return _fail("Execution error", exc, 1)


def _load_or_exit(manifest: Path) -> tuple[PipelineSpec, TaskStore]:
    try:
        return load_manifest(manifest)
    except ConfigurationError as exc:
        raise _fail("Manifest validation error", exc) from exc


def _validate_run_id_or_exit(run_id: str) -> None:
    if not is_safe_id(run_id):
        console.print(f"[red]Invalid run_id:[/red] {run_id}")
        raise typer.Exit(2)


def _resolve_workdir_or_exit(workdir: Path) -> Path:
    resolved = workdir.resolve()
    if not resolved.is_dir():
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(2)
    return resolved


def _load_state_or_exit(current_run_dir: Path) -> RunState:
    try:
        return load_state(current_run_dir)
    except RunStateError as exc:
        raise _fail("Failed to load state", exc) from exc


def _manager(
    home: Path,
    platform: str | None,
    plan: PipelineSpec | None,
    project_root: Path,
) -> EnvironmentManager:
    try:
        registry = EnvironmentRegistry(home, platform or sys.platform)
    except ConfigurationError as exc:
        raise _exit_for_error(exc) from exc
    return EnvironmentManager(
        registry,
        VenvBackend(project_root),
        environments=plan.environments if plan is not None else None,
        project=plan.project if plan is not None else None,
    )


def _env_manager_or_exit(manifest: Path, home: Path, platform: str | None) -> EnvironmentManager:
    # environment commands also work without a manifest for explicitly described environments
    if not manifest.exists():
        return _manager(home, platform, None, Path.cwd())
    plan, _ = _load_or_exit(manifest)
    return _manager(home, platform, plan, manifest.resolve().parent)


def _write_report(state: RunState, current_run_dir: Path) -> Path:
    summary = build_summary(state, current_run_dir)
    report_path = current_run_dir / "report" / "final_report.md"
    if report_path.is_symlink():
        raise OSError(f"report path must not be symlink: {report_path}")
    report_path.write_text(render_markdown(summary) + "\n", encoding="utf-8")
    return report_path


def _styled(status: str) -> str:
    style = _STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _status_table(state: RunState) -> Table:
    table = Table(title=f"Run Status: {state.run_id}")
    table.add_column("instance")
    table.add_column("task")
    table.add_column("status")
    table.add_column("reason")
    table.add_column("duration_sec", justify="right")
    table.add_column("exit_code", justify="right")
    for inst_id in state.order:
        inst = state.instances[inst_id]
        reason = inst.skip_reason or ""
        if inst.blocked_by is not None:
            reason = f"{reason} ({inst.blocked_by})"
        table.add_row(
            inst_id,
            inst.task,
            _styled(inst.status),
            reason or "-",
            "-" if inst.duration_sec is None else str(inst.duration_sec),
            "-" if inst.exit_code is None else str(inst.exit_code),
        )
    return table


@app.command()
def run(
    task: Annotated[str | None, typer.Argument(help="Task to run (default: the pipeline)")] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    workdir: Annotated[Path, typer.Option("--workdir")] = Path("."),
    max_parallel: Annotated[int | None, typer.Option("--max-parallel", min=1)] = None,
    platform: PlatformOption = None,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
) -> None:
    """Run one task (with its dependencies) or the whole pipeline."""
    plan_spec, store = _load_or_exit(manifest)
    try:
        plan = resolve(store, task)
    except ConfigurationError as exc:
        raise _fail("Manifest validation error", exc) from exc

    if dry_run:
        table = Table(title="Dry Run - Execution Order")
        table.add_column("#")
        table.add_column("instance")
        table.add_column("depends_on")
        for idx, inst_id in enumerate(plan.order, start=1):
            table.add_row(str(idx), inst_id, ", ".join(plan.graph.depends_on[inst_id]) or "-")
        console.print(table)
        raise typer.Exit(0)

    resolved_workdir = _resolve_workdir_or_exit(workdir)
    manager = _manager(home, platform, plan_spec, manifest.resolve().parent)
    run_id = new_run_id(datetime.now().astimezone())
    current_run_dir = run_dir(home, run_id)
    try:
        ensure_run_layout(current_run_dir)
        shutil.copyfile(manifest, current_run_dir / "manifest.yaml")
    except OSError as exc:
        raise _fail("Failed to initialize run", exc) from exc

    try:
        state = asyncio.run(
            run_pipeline(
                plan,
                store,
                current_run_dir,
                workdir=resolved_workdir,
                max_parallel=max_parallel,
                installer=plan_spec.installer,
                project=plan_spec.project,
                artifacts_dir=plan_spec.artifacts_dir,
                manager=manager,
            )
        )
    except OSError as exc:
        raise _fail("Run execution failed", exc) from exc

    try:
        report_path = _write_report(state, current_run_dir)
    except OSError as exc:
        console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")
        report_path = current_run_dir / "report" / "final_report.md"
    console.print(_status_table(state))
    console.print(f"run_id: [bold]{run_id}[/bold]")
    console.print(f"state: [bold]{state.status}[/bold]")
    console.print(f"report: {report_path}")
    raise typer.Exit(exit_code_for_state(state))


@app.command("list")
def list_tasks(manifest: ManifestOption = Path("devpipe.yaml")) -> None:
    """List declared tasks and the default pipeline."""
    _, store = _load_or_exit(manifest)
    table = Table(title="Tasks")
    table.add_column("task")
    table.add_column("depends_on")
    table.add_column("parameters")
    table.add_column("install")
    table.add_column("description")
    for spec in store.tasks():
        axes = "; ".join(f"{axis}={','.join(values)}" for axis, values in spec.parameters.items())
        kind = f"lifecycle:{spec.lifecycle.op}" if spec.lifecycle is not None else spec.install
        table.add_row(
            spec.name,
            ", ".join(spec.depends_on) or "-",
            axes or "-",
            kind,
            spec.description or "",
        )
    console.print(table)
    console.print(f"pipeline: {' -> '.join(store.pipeline_order())}")


@app.command()
def status(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".devpipe"),
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    _validate_run_id_or_exit(run_id)
    state = _load_state_or_exit(run_dir(home, run_id))
    if as_json:
        typer.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        raise typer.Exit(0)
    console.print(_status_table(state))
    console.print(f"state: [bold]{state.status}[/bold]")


@app.command()
def logs(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".devpipe"),
    instance: Annotated[str | None, typer.Option("--instance")] = None,
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
) -> None:
    _validate_run_id_or_exit(run_id)
    current_run_dir = run_dir(home, run_id)
    state = _load_state_or_exit(current_run_dir)
    inst_ids = [instance] if instance else list(state.order)
    missing = False
    for inst_id in inst_ids:
        if inst_id not in state.instances:
            console.print(f"[yellow]unknown instance:[/yellow] {inst_id}")
            missing = True
            continue
        inst = state.instances[inst_id]
        for label, rel_path in (("stdout", inst.stdout_path), ("stderr", inst.stderr_path)):
            lines = tail_lines(current_run_dir / rel_path, tail) if rel_path is not None else []
            console.rule(f"{inst_id} :: {label}")
            console.print("\n".join(lines) if lines else "(empty)", markup=False)
    if missing:
        raise typer.Exit(2)


@app.command()
def cancel(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = Path(".devpipe"),
    force: Annotated[
        bool, typer.Option("--force", help="Also terminate running commands")
    ] = False,
) -> None:
    _validate_run_id_or_exit(run_id)
    current_run_dir = run_dir(home, run_id)
    if not (current_run_dir / "state.json").is_file():
        console.print(f"[red]Run not found:[/red] {run_id}")
        raise typer.Exit(2)
    try:
        write_cancel_request(current_run_dir, force=force)
    except OSError as exc:
        raise _fail("Failed to request cancel", exc) from exc
    console.print(f"cancel requested ({'force' if force else 'graceful'}): [bold]{run_id}[/bold]")


def _env_table(states: list[EnvironmentState]) -> Table:
    table = Table(title="Environments")
    table.add_column("name")
    table.add_column("platform")
    table.add_column("state")
    table.add_column("runtime")
    table.add_column("packages", justify="right")
    for env_state in states:
        table.add_row(
            env_state.name,
            env_state.platform,
            ", ".join(sorted(env_state.states)),
            env_state.runtime_version or "-",
            str(len(env_state.installed)),
        )
    return table


@env_app.command("list")
def env_list(
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    try:
        known = {env_state.name: env_state for env_state in manager.states()}
        for name in manager.environments:
            known.setdefault(name, manager.get(name))
    except DevpipeError as exc:
        raise _exit_for_error(exc) from exc
    console.print(_env_table([known[name] for name in sorted(known)]))


@env_app.command("show")
def env_show(
    name: Annotated[str, typer.Argument()],
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    try:
        env_state = manager.get(name)
    except DevpipeError as exc:
        raise _exit_for_error(exc) from exc
    typer.echo(json.dumps(env_state.to_dict(), ensure_ascii=False, indent=2))


def _perform_or_exit(action: str, call: Callable[[], EnvironmentState]) -> EnvironmentState:
    try:
        env_state = call()
    except DevpipeError as exc:
        raise _exit_for_error(exc) from exc
    except OSError as exc:
        raise _fail(f"{action} failed", exc, 1) from exc
    console.print(f"{action}: [bold]{env_state.name}[/bold] -> {', '.join(sorted(env_state.states))}")
    return env_state


@env_app.command("create")
def env_create(
    name: Annotated[str, typer.Argument()],
    runtime: Annotated[str | None, typer.Option("--runtime")] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit("create", lambda: manager.create(name, runtime))


@env_app.command("remove")
def env_remove(
    name: Annotated[str, typer.Argument()],
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit("remove", lambda: manager.remove(name))


@env_app.command("provision")
def env_provision(
    name: Annotated[str, typer.Argument()],
    runtime: Annotated[str | None, typer.Option("--runtime")] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit("provision", lambda: manager.provision(name, runtime))


@env_app.command("install")
def env_install(
    name: Annotated[str, typer.Argument()],
    requirement: Annotated[
        list[str] | None,
        typer.Option("--requirement", "-r", help="Requirement line (default: from manifest)"),
    ] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit("install", lambda: manager.install(name, requirement or None))


@env_app.command("uninstall")
def env_uninstall(
    name: Annotated[str, typer.Argument()],
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit("uninstall", lambda: manager.uninstall(name))


@env_app.command("export")
def env_export(
    name: Annotated[str, typer.Argument()],
    directory: Annotated[Path | None, typer.Option("--dir")] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    try:
        spec_path, lock_path = manager.export(name, directory)
    except DevpipeError as exc:
        raise _exit_for_error(exc) from exc
    except OSError as exc:
        raise _fail("export failed", exc, 1) from exc
    console.print(f"exported: {spec_path}")
    console.print(f"lock: {lock_path}")


@env_app.command("import")
def env_import(
    name: Annotated[str, typer.Argument()],
    source: Annotated[str | None, typer.Option("--from", help="Export to import from")] = None,
    directory: Annotated[Path | None, typer.Option("--dir")] = None,
    manifest: ManifestOption = Path("devpipe.yaml"),
    home: HomeOption = Path(".devpipe"),
    platform: PlatformOption = None,
) -> None:
    manager = _env_manager_or_exit(manifest, home, platform)
    _perform_or_exit(
        "import", lambda: manager.import_(name, source=source, directory=directory)
    )


if __name__ == "__main__":
    app()
