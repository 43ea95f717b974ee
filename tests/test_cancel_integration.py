from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from devpipe.config.schema import PipelineSpec, TaskSpec
from devpipe.dag.schedule import resolve
from devpipe.dag.store import TaskStore
from devpipe.exec.cancel import cancel_mode, write_cancel_request
from devpipe.exec.runner import CANCELED_EXIT_CODE, exit_code_for_state, run_pipeline
from devpipe.state.model import RunState
from devpipe.util.paths import ensure_run_layout


def _start(tmp_path: Path, sleep_sec: float) -> tuple[Path, asyncio.Task[RunState]]:
    run_dir = tmp_path / ".devpipe" / "runs" / "run_cancel"
    workdir = tmp_path / "wd"
    workdir.mkdir(parents=True)
    ensure_run_layout(run_dir)
    tasks = [
        TaskSpec(
            name="long",
            commands=[[sys.executable, "-c", f"import time; time.sleep({sleep_sec})"]],
        ),
        TaskSpec(
            name="downstream",
            commands=[[sys.executable, "-c", "print('never')"]],
            depends_on=["long"],
        ),
    ]
    store = TaskStore.from_plan(PipelineSpec(tasks=tasks, pipeline=["downstream"]))
    run_future = asyncio.create_task(
        run_pipeline(resolve(store), store, run_dir, workdir=workdir, max_parallel=1)
    )
    return run_dir, run_future


@pytest.mark.asyncio
async def test_graceful_cancel_lets_running_instance_finish(tmp_path: Path) -> None:
    run_dir, run_future = _start(tmp_path, 1.0)
    await asyncio.sleep(0.4)
    write_cancel_request(run_dir)
    state = await run_future

    assert state.status == "CANCELED"
    assert state.instances["long"].status == "SUCCESS"
    assert state.instances["downstream"].status == "CANCELED"
    assert state.instances["downstream"].skip_reason == "run_canceled"
    assert exit_code_for_state(state) == CANCELED_EXIT_CODE


@pytest.mark.asyncio
async def test_force_cancel_terminates_running_instance(tmp_path: Path) -> None:
    run_dir, run_future = _start(tmp_path, 30)
    await asyncio.sleep(0.4)
    started = time.monotonic()
    write_cancel_request(run_dir, force=True)
    state = await run_future

    assert time.monotonic() - started < 10
    assert state.status == "CANCELED"
    assert state.instances["long"].status == "CANCELED"
    assert state.instances["long"].canceled is True
    assert state.instances["downstream"].status == "CANCELED"
    assert exit_code_for_state(state) == CANCELED_EXIT_CODE


def test_graceful_request_never_downgrades_force(tmp_path: Path) -> None:
    assert cancel_mode(tmp_path) is None
    write_cancel_request(tmp_path, force=True)
    write_cancel_request(tmp_path)
    assert cancel_mode(tmp_path) == "force"
    (tmp_path / "cancel.request").unlink()
    write_cancel_request(tmp_path)
    assert cancel_mode(tmp_path) == "graceful"
