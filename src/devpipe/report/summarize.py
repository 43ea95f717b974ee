from __future__ import annotations

from pathlib import Path

from devpipe.exec.runner import exit_code_for_state
from devpipe.state.model import RunState
from devpipe.util.tail import tail_lines


def root_cause(state: RunState, instance_id: str) -> str | None:
    """Follow ``blocked_by`` links from a skipped instance to the failure behind it."""
    seen: set[str] = set()
    current = state.instances[instance_id].blocked_by
    while current is not None and current not in seen:
        seen.add(current)
        blocker = state.instances.get(current)
        if blocker is None or blocker.blocked_by is None:
            return current
        current = blocker.blocked_by
    return current


def build_summary(state: RunState, run_dir: Path) -> dict[str, object]:
    instance_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []
    artifact_rows: list[dict[str, object]] = []
    counts: dict[str, int] = {}

    ordered = state.order or list(state.instances)
    for inst_id in ordered:
        inst = state.instances[inst_id]
        counts[inst.status] = counts.get(inst.status, 0) + 1
        instance_rows.append(
            {
                "id": inst_id,
                "task": inst.task,
                "params": inst.params,
                "status": inst.status,
                "duration_sec": inst.duration_sec,
                "exit_code": inst.exit_code,
                "timed_out": inst.timed_out,
                "stdout_path": inst.stdout_path,
                "stderr_path": inst.stderr_path,
            }
        )
        if inst.status == "FAILED" or inst.missing_inputs:
            stderr_tail = (
                tail_lines(run_dir / inst.stderr_path, 50) if inst.stderr_path is not None else []
            )
            problem_rows.append(
                {
                    "id": inst_id,
                    "status": inst.status,
                    "skip_reason": inst.skip_reason,
                    "exit_code": inst.exit_code,
                    "missing_inputs": inst.missing_inputs,
                    "stderr_tail": stderr_tail,
                }
            )

        for artifact in inst.artifact_paths:
            artifact_rows.append({"instance": inst_id, "path": artifact})

    skipped_rows = [
        {
            "id": inst_id,
            "status": state.instances[inst_id].status,
            "skip_reason": state.instances[inst_id].skip_reason,
            "blocked_by": state.instances[inst_id].blocked_by,
            "root_cause": root_cause(state, inst_id),
        }
        for inst_id in ordered
        if state.instances[inst_id].status in {"SKIPPED", "CANCELED"}
    ]

    return {
        "run": {
            "run_id": state.run_id,
            "target": state.target,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
            "status": state.status,
            "exit_code": exit_code_for_state(state),
            "max_parallel": state.max_parallel,
            "workdir": state.workdir,
            "counts": counts,
        },
        "instances": instance_rows,
        "problems": problem_rows,
        "skipped": skipped_rows,
        "artifacts": artifact_rows,
    }
