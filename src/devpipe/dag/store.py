"""Static task declarations, validated once at load time."""

from __future__ import annotations

from devpipe.config.schema import PipelineSpec, TaskSpec
from devpipe.util.errors import ConfigurationError


def _check_install(task: TaskSpec) -> None:
    if task.skip_install and task.install != "skip":
        raise ConfigurationError(
            f"task '{task.name}' sets skip_install together with install strategy "
            f"'{task.install}'"
        )


def find_cycle(depends_on: dict[str, list[str]]) -> list[str] | None:
    """Depth-first search over the dependency relation; return the first cycle found."""
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(depends_on, white)
    for root in depends_on:
        if color[root] != white:
            continue
        path: list[str] = [root]
        stack = [iter(depends_on[root])]
        color[root] = grey
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = black
                stack.pop()
                continue
            if color.get(nxt, black) == grey:
                return [*path[path.index(nxt) :], nxt]
            if color.get(nxt) == white:
                color[nxt] = grey
                path.append(nxt)
                stack.append(iter(depends_on[nxt]))
    return None


class TaskStore:
    """Holds every task declaration plus the default pipeline order."""

    def __init__(self, pipeline: list[str] | None = None) -> None:
        self._tasks: dict[str, TaskSpec] = {}
        self._pipeline: list[str] = list(pipeline or [])

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def register(self, task: TaskSpec) -> None:
        _check_install(task)
        if task.name in self._tasks:
            raise ConfigurationError(f"task '{task.name}' is already registered")
        if task.name in task.depends_on:
            raise ConfigurationError(f"cyclic dependency: {task.name} -> {task.name}")
        unknown = [dep for dep in task.depends_on if dep not in self._tasks]
        if unknown:
            raise ConfigurationError(f"task '{task.name}' has unknown dependencies: {unknown}")
        if len(set(task.depends_on)) != len(task.depends_on):
            raise ConfigurationError(f"task '{task.name}' has duplicate dependencies")
        self._tasks[task.name] = task

    def get(self, name: str) -> TaskSpec:
        try:
            return self._tasks[name]
        except KeyError:
            raise ConfigurationError(f"unknown task: {name}") from None

    def tasks(self) -> list[TaskSpec]:
        return list(self._tasks.values())

    def pipeline_order(self) -> list[str]:
        return list(self._pipeline)

    @classmethod
    def from_plan(cls, plan: PipelineSpec) -> TaskStore:
        """Load a whole manifest; declaration order does not matter, cycles do."""
        names = [task.name for task in plan.tasks]
        if len(set(names)) != len(names):
            raise ConfigurationError("task.name must be unique")
        folded = [name.casefold() for name in names]
        if len(set(folded)) != len(folded):
            raise ConfigurationError("task.name must be unique (case-insensitive)")

        known = set(names)
        for task in plan.tasks:
            _check_install(task)
            unknown = [dep for dep in task.depends_on if dep not in known]
            if unknown:
                raise ConfigurationError(f"task '{task.name}' has unknown dependencies: {unknown}")
            if len(set(task.depends_on)) != len(task.depends_on):
                raise ConfigurationError(f"task '{task.name}' has duplicate dependencies")
        missing = [name for name in plan.pipeline if name not in known]
        if missing:
            raise ConfigurationError(f"pipeline references unknown tasks: {missing}")
        if len(set(plan.pipeline)) != len(plan.pipeline):
            raise ConfigurationError("pipeline must not list a task twice")

        cycle = find_cycle({task.name: list(task.depends_on) for task in plan.tasks})
        if cycle is not None:
            raise ConfigurationError(f"cyclic dependency: {' -> '.join(cycle)}")

        store = cls(plan.pipeline)
        for task in plan.tasks:
            store._tasks[task.name] = task
        return store
