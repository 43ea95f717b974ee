"""Deterministic execution order over the instance graph."""

from __future__ import annotations

import heapq
from dataclasses import dataclass

from devpipe.dag.expand import InstanceGraph, expand_graph
from devpipe.dag.store import TaskStore
from devpipe.util.errors import ConfigurationError


@dataclass(slots=True)
class ExecutionPlan:
    target: str | None
    graph: InstanceGraph
    order: list[str]


def topological_order(graph: InstanceGraph) -> list[str]:
    """Kahn's algorithm; ties break on declared parameter order, then instance id."""
    remaining = {inst_id: len(deps) for inst_id, deps in graph.depends_on.items()}
    heap = [
        (graph.instances[inst_id].order_key, inst_id)
        for inst_id, count in remaining.items()
        if count == 0
    ]
    heapq.heapify(heap)
    order: list[str] = []

    while heap:
        _, current = heapq.heappop(heap)
        order.append(current)
        for nxt in graph.dependents.get(current, []):
            remaining[nxt] -= 1
            if remaining[nxt] == 0:
                heapq.heappush(heap, (graph.instances[nxt].order_key, nxt))

    if len(order) != len(graph.instances):
        raise ConfigurationError("instance graph has cyclic dependencies")
    return order


def resolve(store: TaskStore, target: str | None = None) -> ExecutionPlan:
    """Expand ``target`` (``None`` = the declared pipeline) into an ordered plan."""
    if target is None:
        roots = store.pipeline_order()
        if not roots:
            raise ConfigurationError("pipeline is empty")
    else:
        if target not in store:
            raise ConfigurationError(f"unknown task: {target}")
        roots = [target]
    graph = expand_graph(store, roots)
    return ExecutionPlan(target=target, graph=graph, order=topological_order(graph))
