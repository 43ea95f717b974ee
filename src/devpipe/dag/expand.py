"""Expand parameterized tasks into instances and build the instance graph."""

from __future__ import annotations

import itertools
from collections import defaultdict
from dataclasses import dataclass, field

from devpipe.config.schema import TaskSpec
from devpipe.dag.store import TaskStore
from devpipe.util.errors import ConfigurationError


@dataclass(slots=True, frozen=True)
class TaskInstance:
    id: str
    task: str
    params: tuple[tuple[str, str], ...] = ()
    order_key: tuple[int, ...] = ()

    @property
    def values(self) -> dict[str, str]:
        return dict(self.params)


@dataclass(slots=True)
class InstanceGraph:
    instances: dict[str, TaskInstance] = field(default_factory=dict)
    depends_on: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)


def instance_id(task_name: str, values: list[str]) -> str:
    return "-".join([*values, task_name])


def expand_task(task: TaskSpec) -> list[TaskInstance]:
    """One instance per point of the axis cross product, in declared order."""
    axes = list(task.parameters.items())
    if not axes:
        return [TaskInstance(id=task.name, task=task.name)]
    instances: list[TaskInstance] = []
    index_ranges = [range(len(values)) for _, values in axes]
    for indices in itertools.product(*index_ranges):
        params = tuple((axis, values[i]) for (axis, values), i in zip(axes, indices, strict=True))
        instances.append(
            TaskInstance(
                id=instance_id(task.name, [value for _, value in params]),
                task=task.name,
                params=params,
                order_key=tuple(indices),
            )
        )
    return instances


def dependency_closure(store: TaskStore, roots: list[str]) -> list[str]:
    """Requested tasks plus their transitive dependencies, in first-seen order."""
    seen: dict[str, None] = {}
    stack = list(reversed(roots))
    while stack:
        name = stack.pop()
        if name in seen:
            continue
        seen[name] = None
        stack.extend(reversed(store.get(name).depends_on))
    return list(seen)


def _shared_axes(downstream: TaskSpec, upstream: TaskSpec) -> list[str]:
    return [
        axis
        for axis, values in downstream.parameters.items()
        if upstream.parameters.get(axis) == values
    ]


def expand_graph(store: TaskStore, roots: list[str]) -> InstanceGraph:
    graph = InstanceGraph()
    task_names = dependency_closure(store, roots)
    by_task: dict[str, list[TaskInstance]] = {}
    for name in task_names:
        by_task[name] = expand_task(store.get(name))
        for inst in by_task[name]:
            if inst.id in graph.instances:
                raise ConfigurationError(
                    f"instance id '{inst.id}' of task '{name}' collides with task "
                    f"'{graph.instances[inst.id].task}'"
                )
            graph.instances[inst.id] = inst

    dependents: dict[str, list[str]] = defaultdict(list)
    for name in task_names:
        task = store.get(name)
        for inst in by_task[name]:
            deps: list[str] = []
            for dep_name in task.depends_on:
                shared = _shared_axes(task, store.get(dep_name))
                values = inst.values
                for upstream in by_task[dep_name]:
                    upstream_values = upstream.values
                    if all(upstream_values[axis] == values[axis] for axis in shared):
                        deps.append(upstream.id)
                        dependents[upstream.id].append(inst.id)
            graph.depends_on[inst.id] = deps
    graph.dependents = {inst_id: dependents.get(inst_id, []) for inst_id in graph.instances}
    return graph
