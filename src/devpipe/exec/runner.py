from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import signal
import sys
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from devpipe.config.project import requirements_for_task
from devpipe.config.schema import DEFAULT_INSTALLER, ProjectSpec, TaskSpec
from devpipe.dag.expand import TaskInstance
from devpipe.dag.schedule import ExecutionPlan
from devpipe.dag.store import TaskStore
from devpipe.envs.manager import EnvironmentManager
from devpipe.exec.aggregate import Contribution, aggregate_inputs
from devpipe.exec.cancel import CancelMode, cancel_mode
from devpipe.exec.capture import append_text, stream_to_file
from devpipe.exec.context import collect_outputs, instance_context
from devpipe.state.model import InstanceState, RunState
from devpipe.state.store import save_state_atomic
from devpipe.util.errors import (
    AggregationError,
    ConfigurationError,
    EnvironmentConflictError,
    ExecutionError,
    StateError,
)
from devpipe.util.time import duration_sec, elapsed_since, now_iso

log = logging.getLogger(__name__)

CANCELED_EXIT_CODE = 4
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass(slots=True)
class InstanceResult:
    exit_code: int | None
    timed_out: bool
    canceled: bool
    start_failed: bool
    started_at: str
    ended_at: str
    duration_sec: float
    failure: str | None = None
    artifact_paths: list[str] = field(default_factory=list)
    missing_inputs: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _CommandOutcome:
    exit_code: int | None
    timed_out: bool = False
    canceled: bool = False
    start_failed: bool = False


def _log_paths(run_dir: Path, instance_id: str) -> tuple[Path, Path]:
    return run_dir / "logs" / f"{instance_id}.out.log", run_dir / "logs" / f"{instance_id}.err.log"


def _resolve_artifacts_dir(artifacts_dir: str | None, workdir: Path) -> Path | None:
    if artifacts_dir is None:
        return None
    root = Path(artifacts_dir)
    if root.is_absolute():
        return root
    return workdir / root


def _copy_to_aggregate_dir(instance_id: str, source: Path, aggregate_root: Path) -> None:
    if not source.is_dir():
        return
    try:
        shutil.copytree(source, aggregate_root / instance_id, dirs_exist_ok=True)
    except OSError as exc:
        log.warning("failed to copy artifacts of %s to %s: %s", instance_id, aggregate_root, exc)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    # commands run in their own session, so the group also covers grandchildren
    with suppress(ProcessLookupError, PermissionError):
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=1.0)
    except TimeoutError:
        _signal_group(proc, _KILL_SIGNAL)
        await proc.wait()
    else:
        # the leader may exit on SIGTERM while members of its group ignore it
        _signal_group(proc, _KILL_SIGNAL)


async def _run_command(
    argv: list[str],
    *,
    cwd: Path,
    env: dict[str, str],
    out_path: Path,
    err_path: Path,
    run_dir: Path,
    deadline: float | None,
) -> _CommandOutcome:
    loop = asyncio.get_running_loop()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=hasattr(os, "killpg"),
        )
    except (OSError, ValueError) as exc:
        append_text(err_path, f"failed to start process: {exc}\n")
        return _CommandOutcome(exit_code=127, start_failed=True)

    out_stream = asyncio.create_task(stream_to_file(proc.stdout, out_path))
    err_stream = asyncio.create_task(stream_to_file(proc.stderr, err_path))
    outcome = _CommandOutcome(exit_code=None)
    while True:
        if proc.returncode is not None:
            outcome.exit_code = proc.returncode
            break
        if cancel_mode(run_dir) == "force":
            outcome.canceled = True
            await _terminate(proc)
            outcome.exit_code = proc.returncode
            break
        if deadline is not None and loop.time() > deadline:
            outcome.timed_out = True
            await _terminate(proc)
            break
        await asyncio.sleep(0.05)

    await asyncio.gather(out_stream, err_stream, return_exceptions=True)
    return outcome


async def _run_lifecycle(
    task: TaskSpec, manager: EnvironmentManager | None, out_path: Path, err_path: Path
) -> tuple[int, str | None]:
    spec = task.lifecycle
    assert spec is not None
    if manager is None:
        append_text(err_path, "no environment manager configured\n")
        return 1, "lifecycle_failed"
    try:
        env_state = await asyncio.to_thread(
            manager.perform, spec.op, spec.environment, source=spec.source
        )
    except (StateError, EnvironmentConflictError, ConfigurationError, OSError) as exc:
        append_text(err_path, f"{spec.op} {spec.environment} failed: {exc}\n")
        return 1, "lifecycle_failed"
    except ExecutionError as exc:
        append_text(err_path, f"{spec.op} {spec.environment} failed: {exc}\n")
        return exc.exit_code or 1, "lifecycle_failed"
    append_text(
        out_path, f"{spec.op} {spec.environment}: {', '.join(sorted(env_state.states))}\n"
    )
    return 0, None


async def run_instance(
    instance: TaskInstance,
    task: TaskSpec,
    run_dir: Path,
    *,
    workdir: Path,
    installer: list[str],
    requirements: list[str],
    manager: EnvironmentManager | None = None,
    contributions: list[Contribution] | None = None,
) -> InstanceResult:
    started_dt = datetime.now().astimezone()
    out_path, err_path = _log_paths(run_dir, instance.id)

    def _result(
        outcome: _CommandOutcome,
        *,
        failure: str | None = None,
        artifact_paths: list[str] | None = None,
        missing_inputs: list[str] | None = None,
    ) -> InstanceResult:
        ended_dt = datetime.now().astimezone()
        return InstanceResult(
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            canceled=outcome.canceled,
            start_failed=outcome.start_failed,
            started_at=started_dt.isoformat(timespec="seconds"),
            ended_at=ended_dt.isoformat(timespec="seconds"),
            duration_sec=duration_sec(started_dt, ended_dt),
            failure=failure,
            artifact_paths=artifact_paths or [],
            missing_inputs=missing_inputs or [],
        )

    if task.lifecycle is not None:
        code, failure = await _run_lifecycle(task, manager, out_path, err_path)
        return _result(_CommandOutcome(exit_code=code), failure=failure)

    merge_dir: Path | None = None
    missing: list[str] = []
    if contributions is not None and task.aggregate is not None:
        try:
            report = await asyncio.to_thread(
                aggregate_inputs,
                instance.id,
                contributions,
                merge_root=run_dir / "merge",
                relaxed=task.aggregate.relaxed,
            )
        except AggregationError as exc:
            append_text(err_path, f"aggregation failed: {exc}\n")
            return _result(
                _CommandOutcome(exit_code=1), failure="aggregation_failed", missing_inputs=exc.missing
            )
        merge_dir = report.merge_dir
        missing = report.missing

    loop = asyncio.get_running_loop()
    deadline = None if task.timeout_sec is None else loop.time() + task.timeout_sec
    outcome = _CommandOutcome(exit_code=0)
    with instance_context(
        instance, task, run_dir, workdir, merge_dir=merge_dir, private_venv=bool(requirements)
    ) as ctx:
        commands = ctx.commands()
        setup_steps = 0
        if ctx.venv_dir is not None:
            req_file = ctx.tmp_dir / "requirements.txt"
            req_file.write_text("\n".join(requirements) + "\n", encoding="utf-8")
            commands[:0] = [
                [sys.executable, "-m", "venv", str(ctx.venv_dir)],
                [*installer, "-r", str(req_file)],
            ]
            setup_steps = 2
        cwd = ctx.cwd()
        env = ctx.environ()
        for idx, argv in enumerate(commands, start=1):
            header = f"\n===== [{idx}/{len(commands)}] {shlex.join(argv)} =====\n"
            append_text(out_path, header)
            append_text(err_path, header)
            step = await _run_command(
                argv,
                cwd=cwd,
                env=env,
                out_path=out_path,
                err_path=err_path,
                run_dir=run_dir,
                deadline=deadline,
            )
            if step.canceled or step.timed_out:
                outcome = step
                break
            if step.exit_code != 0 and outcome.exit_code == 0:
                outcome = step
            # a failed venv or install step always ends the instance
            if step.exit_code != 0 and (task.fail_fast or idx <= setup_steps):
                break
        artifact_paths = await asyncio.to_thread(collect_outputs, ctx)
    return _result(outcome, artifact_paths=artifact_paths, missing_inputs=missing)


def _initial_state(
    plan: ExecutionPlan, run_dir: Path, *, max_parallel: int, workdir: Path
) -> RunState:
    ts = now_iso()
    instances: dict[str, InstanceState] = {}
    for inst_id in plan.order:
        instance = plan.graph.instances[inst_id]
        out_path, err_path = _log_paths(run_dir, inst_id)
        instances[inst_id] = InstanceState(
            task=instance.task,
            params=instance.values,
            depends_on=list(plan.graph.depends_on[inst_id]),
            stdout_path=str(out_path.relative_to(run_dir)),
            stderr_path=str(err_path.relative_to(run_dir)),
        )
    return RunState(
        run_id=run_dir.name,
        created_at=ts,
        updated_at=ts,
        status="RUNNING",
        target=plan.target,
        home=str(run_dir.parent.parent.resolve()),
        workdir=str(workdir),
        max_parallel=max_parallel,
        order=list(plan.order),
        instances=instances,
    )


def _finalize_run_status(state: RunState) -> None:
    statuses = [inst.status for inst in state.instances.values()]
    if any(status == "CANCELED" for status in statuses):
        state.status = "CANCELED"
    elif any(status in {"FAILED", "SKIPPED"} for status in statuses):
        state.status = "FAILED"
    elif statuses and all(status == "SUCCESS" for status in statuses):
        state.status = "SUCCESS"
    else:
        state.status = "FAILED"


def exit_code_for_state(state: RunState) -> int:
    """0 iff everything succeeded; otherwise the first failing instance's exit code."""
    failed = state.failed_instances()
    if failed:
        code = state.instances[failed[0]].exit_code
        return code if code not in (None, 0) else 1
    if state.status == "CANCELED":
        return CANCELED_EXIT_CODE
    return 0 if state.status == "SUCCESS" else 1


def _persist(run_dir: Path, state: RunState) -> None:
    state.updated_at = now_iso()
    save_state_atomic(run_dir, state)


async def run_pipeline(
    plan: ExecutionPlan,
    store: TaskStore,
    run_dir: Path,
    *,
    workdir: Path,
    max_parallel: int | None = None,
    installer: list[str] | None = None,
    project: ProjectSpec | None = None,
    artifacts_dir: str | None = None,
    manager: EnvironmentManager | None = None,
) -> RunState:
    """Run every instance of ``plan`` on a bounded pool, honoring the partial order."""
    if max_parallel is None:
        max_parallel = os.cpu_count() or 1
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    resolved_workdir = workdir.resolve()
    installer = list(installer or DEFAULT_INSTALLER)
    project = project or ProjectSpec()
    aggregate_root = _resolve_artifacts_dir(artifacts_dir, resolved_workdir)
    graph = plan.graph
    order_index = {inst_id: idx for idx, inst_id in enumerate(plan.order)}

    state = _initial_state(plan, run_dir, max_parallel=max_parallel, workdir=resolved_workdir)
    _persist(run_dir, state)
    log.info("run %s: %d instance(s), max_parallel=%d", state.run_id, len(plan.order), max_parallel)

    active = set(plan.order)
    dep_remaining = {inst_id: len(graph.depends_on[inst_id]) for inst_id in plan.order}
    ready = [inst_id for inst_id in plan.order if dep_remaining[inst_id] == 0]
    running: dict[str, asyncio.Task[InstanceResult]] = {}
    sem = asyncio.Semaphore(max_parallel)
    canceling: CancelMode | None = None

    def _release_children(inst_id: str) -> None:
        for child in graph.dependents.get(inst_id, []):
            dep_remaining[child] -= 1
            if dep_remaining[child] == 0 and child in active:
                ready.append(child)

    def _blocking_dependency(inst_id: str, task: TaskSpec) -> str | None:
        for dep in graph.depends_on[inst_id]:
            dep_state = state.instances[dep]
            if dep_state.status == "SUCCESS":
                continue
            dep_task = store.get(dep_state.task)
            if task.aggregate is not None and task.aggregate.relaxed and (
                dep_task.name == task.aggregate.source
            ):
                continue
            if dep_state.status == "FAILED" and not dep_task.fail_fast:
                continue
            return dep
        return None

    def _contributions(inst_id: str, task: TaskSpec) -> list[Contribution] | None:
        if task.aggregate is None:
            return None
        return [
            Contribution(
                instance_id=dep,
                params=state.instances[dep].params,
                status=state.instances[dep].status,
                artifact_dir=run_dir / "artifacts" / dep,
            )
            for dep in graph.depends_on[inst_id]
            if state.instances[dep].task == task.aggregate.source
        ]

    async def _run_with_sem(instance: TaskInstance, task: TaskSpec) -> InstanceResult:
        async with sem:
            return await run_instance(
                instance,
                task,
                run_dir,
                workdir=resolved_workdir,
                installer=installer,
                requirements=requirements_for_task(task, project),
                manager=manager,
                contributions=_contributions(instance.id, task),
            )

    while active or running:
        mode = cancel_mode(run_dir)
        if mode is not None and canceling != "force":
            canceling = mode

        pending = active - set(running)
        if canceling is not None and pending:
            for inst_id in sorted(pending, key=order_index.__getitem__):
                inst_state = state.instances[inst_id]
                inst_state.status = "CANCELED"
                inst_state.canceled = True
                inst_state.skip_reason = "run_canceled"
                inst_state.ended_at = now_iso()
                active.remove(inst_id)
            log.info(
                "run %s canceled (%s); %d pending instance(s) dropped",
                state.run_id,
                canceling,
                len(pending),
            )
            _persist(run_dir, state)

        ready.sort(key=order_index.__getitem__)
        while ready and len(running) < max_parallel and canceling is None:
            inst_id = ready.pop(0)
            if inst_id not in active or inst_id in running:
                continue
            instance = graph.instances[inst_id]
            task = store.get(instance.task)
            inst_state = state.instances[inst_id]
            blocker = _blocking_dependency(inst_id, task)
            if blocker is not None:
                inst_state.status = "SKIPPED"
                inst_state.skip_reason = "dependency_not_success"
                inst_state.blocked_by = blocker
                inst_state.ended_at = now_iso()
                active.remove(inst_id)
                _release_children(inst_id)
                log.info("skipped %s (dependency %s did not succeed)", inst_id, blocker)
                _persist(run_dir, state)
                continue

            inst_state.status = "RUNNING"
            inst_state.started_at = now_iso()
            _persist(run_dir, state)
            log.debug("starting %s", inst_id)
            running[inst_id] = asyncio.create_task(_run_with_sem(instance, task))

        if not running:
            if not ready:
                if active:
                    for inst_id in sorted(active, key=order_index.__getitem__):
                        inst_state = state.instances[inst_id]
                        inst_state.status = "SKIPPED"
                        inst_state.skip_reason = "unresolvable_dependencies"
                        inst_state.ended_at = now_iso()
                        active.remove(inst_id)
                    _persist(run_dir, state)
                break
            continue

        done, _ = await asyncio.wait(
            running.values(), timeout=0.2, return_when=asyncio.FIRST_COMPLETED
        )
        if not done:
            continue
        done_by_id = {inst_id: fut for inst_id, fut in running.items() if fut in done}

        for inst_id in sorted(done_by_id, key=order_index.__getitem__):
            fut = done_by_id[inst_id]
            del running[inst_id]
            inst_state = state.instances[inst_id]
            try:
                result = fut.result()
            except Exception as exc:
                ended_dt = datetime.now().astimezone()
                log.exception("runner exception in %s", inst_id)
                if inst_state.stderr_path is not None:
                    append_text(run_dir / inst_state.stderr_path, f"runner exception: {exc}\n")
                result = InstanceResult(
                    exit_code=70,
                    timed_out=False,
                    canceled=False,
                    start_failed=True,
                    started_at=inst_state.started_at or ended_dt.isoformat(timespec="seconds"),
                    ended_at=ended_dt.isoformat(timespec="seconds"),
                    duration_sec=elapsed_since(inst_state.started_at, ended_dt),
                    failure="runner_exception",
                )
            inst_state.ended_at = result.ended_at
            inst_state.duration_sec = result.duration_sec
            inst_state.exit_code = result.exit_code
            inst_state.timed_out = result.timed_out
            inst_state.canceled = result.canceled
            inst_state.artifact_paths = result.artifact_paths
            inst_state.missing_inputs = result.missing_inputs

            if result.canceled:
                inst_state.status = "CANCELED"
                inst_state.skip_reason = "run_canceled"
                canceling = "force"
            elif result.exit_code == 0 and not result.timed_out and result.failure is None:
                inst_state.status = "SUCCESS"
            else:
                inst_state.status = "FAILED"
                if result.failure is not None:
                    inst_state.skip_reason = result.failure
                elif result.timed_out:
                    inst_state.skip_reason = "timed_out"
                elif result.start_failed:
                    inst_state.skip_reason = "process_start_failed"
                else:
                    inst_state.skip_reason = "command_failed"
            log.info("%s finished: %s (exit %s)", inst_id, inst_state.status, result.exit_code)

            if aggregate_root is not None and inst_state.status != "CANCELED":
                await asyncio.to_thread(
                    _copy_to_aggregate_dir, inst_id, run_dir / "artifacts" / inst_id, aggregate_root
                )
            active.discard(inst_id)
            _release_children(inst_id)

        _persist(run_dir, state)

    _finalize_run_status(state)
    _persist(run_dir, state)
    return state
