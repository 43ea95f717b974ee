from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

InstallStrategy = Literal["skip", "dev", "extras", "tool"]
LifecycleOp = Literal["create", "remove", "provision", "install", "uninstall", "export", "import"]
INSTALL_STRATEGIES: tuple[str, ...] = ("skip", "dev", "extras", "tool")
LIFECYCLE_OPS: tuple[str, ...] = (
    "create",
    "remove",
    "provision",
    "install",
    "uninstall",
    "export",
    "import",
)
DEFAULT_INSTALLER: tuple[str, ...] = ("python", "-m", "pip", "install")


@dataclass(slots=True)
class AggregateSpec:
    source: str
    relaxed: bool = False


@dataclass(slots=True)
class LifecycleSpec:
    op: LifecycleOp
    environment: str
    source: str | None = None


@dataclass(slots=True)
class TaskSpec:
    name: str
    commands: list[list[str]] = field(default_factory=list)
    description: str | None = None
    depends_on: list[str] = field(default_factory=list)
    parameters: dict[str, list[str]] = field(default_factory=dict)
    install: InstallStrategy = "skip"
    skip_install: bool = False
    extras: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    fail_fast: bool = True
    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout_sec: float | None = None
    outputs: list[str] = field(default_factory=list)
    aggregate: AggregateSpec | None = None
    lifecycle: LifecycleSpec | None = None


@dataclass(slots=True)
class EnvironmentSpec:
    name: str
    runtime: str
    platforms: list[str] = field(default_factory=list)
    install: InstallStrategy = "dev"
    extras: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    params: dict[str, str] = field(default_factory=dict)

    def supports(self, platform: str) -> bool:
        return not self.platforms or platform in self.platforms


@dataclass(slots=True)
class ProjectSpec:
    name: str | None = None
    dependencies: list[str] = field(default_factory=list)
    extras: dict[str, list[str]] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class PipelineSpec:
    tasks: list[TaskSpec]
    pipeline: list[str] = field(default_factory=list)
    environments: list[EnvironmentSpec] = field(default_factory=list)
    project: ProjectSpec = field(default_factory=ProjectSpec)
    artifacts_dir: str | None = None
    installer: list[str] = field(default_factory=lambda: list(DEFAULT_INSTALLER))

    def environment(self, name: str) -> EnvironmentSpec | None:
        for env in self.environments:
            if env.name == name:
                return env
        return None
