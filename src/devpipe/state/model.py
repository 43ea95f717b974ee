from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

RunStatus = Literal["PENDING", "RUNNING", "SUCCESS", "FAILED", "CANCELED"]
InstanceStatus = Literal["PENDING", "RUNNING", "SUCCESS", "FAILED", "SKIPPED", "CANCELED"]
RUN_STATUS_VALUES: set[str] = {"PENDING", "RUNNING", "SUCCESS", "FAILED", "CANCELED"}
INSTANCE_STATUS_VALUES: set[str] = {
    "PENDING",
    "RUNNING",
    "SUCCESS",
    "FAILED",
    "SKIPPED",
    "CANCELED",
}
TERMINAL_STATUSES: frozenset[str] = frozenset({"SUCCESS", "FAILED", "SKIPPED", "CANCELED"})


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_int(value: object, default: int = 0) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else default


def _as_optional_int(value: object) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _as_str_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if isinstance(k, str) and isinstance(v, str)}


def _parse_status(value: object, allowed: set[str]) -> str:
    status = _as_str(value, "PENDING")
    return status if status in allowed else "PENDING"


@dataclass(slots=True)
class InstanceState:
    task: str
    status: InstanceStatus = "PENDING"
    params: dict[str, str] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    exit_code: int | None = None
    timed_out: bool = False
    canceled: bool = False
    skip_reason: str | None = None
    blocked_by: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    artifact_paths: list[str] = field(default_factory=list)
    missing_inputs: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, object]:
        return {
            "task": self.task,
            "status": self.status,
            "params": self.params,
            "depends_on": self.depends_on,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "canceled": self.canceled,
            "skip_reason": self.skip_reason,
            "blocked_by": self.blocked_by,
            "stdout_path": self.stdout_path,
            "stderr_path": self.stderr_path,
            "artifact_paths": self.artifact_paths,
            "missing_inputs": self.missing_inputs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> InstanceState:
        return cls(
            task=_as_str(data.get("task")),
            status=cast(InstanceStatus, _parse_status(data.get("status"), INSTANCE_STATUS_VALUES)),
            params=_as_str_map(data.get("params")),
            depends_on=_as_list_str(data.get("depends_on")),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            exit_code=_as_optional_int(data.get("exit_code")),
            timed_out=_as_bool(data.get("timed_out")),
            canceled=_as_bool(data.get("canceled")),
            skip_reason=_as_optional_str(data.get("skip_reason")),
            blocked_by=_as_optional_str(data.get("blocked_by")),
            stdout_path=_as_optional_str(data.get("stdout_path")),
            stderr_path=_as_optional_str(data.get("stderr_path")),
            artifact_paths=_as_list_str(data.get("artifact_paths")),
            missing_inputs=_as_list_str(data.get("missing_inputs")),
        )


@dataclass(slots=True)
class RunState:
    run_id: str
    created_at: str
    updated_at: str
    status: RunStatus
    target: str | None
    home: str
    workdir: str
    max_parallel: int
    order: list[str]
    instances: dict[str, InstanceState]

    def failed_instances(self) -> list[str]:
        """Failed instance ids in scheduled order."""
        return [
            inst_id
            for inst_id in self.order
            if inst_id in self.instances and self.instances[inst_id].status == "FAILED"
        ]

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status,
            "target": self.target,
            "home": self.home,
            "workdir": self.workdir,
            "max_parallel": self.max_parallel,
            "order": self.order,
            "instances": {inst_id: inst.to_dict() for inst_id, inst in self.instances.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunState:
        raw_instances = data.get("instances")
        instances: dict[str, InstanceState] = {}
        if isinstance(raw_instances, dict):
            for inst_id, inst_data in raw_instances.items():
                if isinstance(inst_id, str) and isinstance(inst_data, dict):
                    instances[inst_id] = InstanceState.from_dict(inst_data)
        return cls(
            run_id=_as_str(data.get("run_id")),
            created_at=_as_str(data.get("created_at")),
            updated_at=_as_str(data.get("updated_at")),
            status=cast(RunStatus, _parse_status(data.get("status"), RUN_STATUS_VALUES)),
            target=_as_optional_str(data.get("target")),
            home=_as_str(data.get("home")),
            workdir=_as_str(data.get("workdir")),
            max_parallel=_as_int(data.get("max_parallel"), 1),
            order=[item for item in _as_list_str(data.get("order")) if item in instances],
            instances=instances,
        )
