from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

LifecycleState = Literal["ABSENT", "CREATED", "POPULATED"]
LIFECYCLE_STATES: set[str] = {"ABSENT", "CREATED", "POPULATED"}


def _as_str_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {k: v for k, v in value.items() if isinstance(k, str) and isinstance(v, str)}


@dataclass(slots=True)
class EnvironmentState:
    """Lifecycle record of one named environment on one platform variant.

    ``exported`` is an overlay on top of CREATED/POPULATED: it is set by
    ``export`` and cleared as soon as the installed manifest changes.
    """

    name: str
    platform: str
    state: LifecycleState = "ABSENT"
    runtime_version: str | None = None
    params: dict[str, str] = field(default_factory=dict)
    requirements: list[str] = field(default_factory=list)
    installed: dict[str, str] = field(default_factory=dict)
    exported: bool = False
    exported_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def states(self) -> set[str]:
        states = {self.state}
        if self.exported and self.state != "ABSENT":
            states.add("EXPORTED")
        return states

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "platform": self.platform,
            "state": self.state,
            "runtime_version": self.runtime_version,
            "params": self.params,
            "requirements": self.requirements,
            "installed": self.installed,
            "exported": self.exported,
            "exported_at": self.exported_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> EnvironmentState:
        state = data.get("state")
        raw_requirements = data.get("requirements")
        runtime = data.get("runtime_version")
        return cls(
            name=str(data.get("name", "")),
            platform=str(data.get("platform", "")),
            state=cast(LifecycleState, state if state in LIFECYCLE_STATES else "ABSENT"),
            runtime_version=runtime if isinstance(runtime, str) else None,
            params=_as_str_map(data.get("params")),
            requirements=[r for r in raw_requirements if isinstance(r, str)]
            if isinstance(raw_requirements, list)
            else [],
            installed=_as_str_map(data.get("installed")),
            exported=data.get("exported") is True,
            exported_at=data.get("exported_at") if isinstance(data.get("exported_at"), str) else None,
            created_at=data.get("created_at") if isinstance(data.get("created_at"), str) else None,
            updated_at=data.get("updated_at") if isinstance(data.get("updated_at"), str) else None,
        )
