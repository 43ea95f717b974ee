from __future__ import annotations

import pytest

from devpipe.config.schema import PipelineSpec, TaskSpec
from devpipe.dag.store import TaskStore, find_cycle
from devpipe.util.errors import ConfigurationError


def _task(name: str, *deps: str, **kwargs: object) -> TaskSpec:
    return TaskSpec(name=name, commands=[["echo", name]], depends_on=list(deps), **kwargs)


def test_register_and_get() -> None:
    store = TaskStore(["lint"])
    store.register(_task("lint"))
    store.register(_task("test", "lint"))

    assert "test" in store
    assert store.get("test").depends_on == ["lint"]
    assert store.pipeline_order() == ["lint"]


def test_register_rejects_unknown_dependency() -> None:
    store = TaskStore()
    with pytest.raises(ConfigurationError, match="unknown dependencies"):
        store.register(_task("test", "lint"))


def test_register_rejects_duplicate_and_self_dependency() -> None:
    store = TaskStore()
    store.register(_task("lint"))
    with pytest.raises(ConfigurationError, match="already registered"):
        store.register(_task("lint"))
    with pytest.raises(ConfigurationError, match="cyclic"):
        store.register(_task("loop", "loop"))


def test_register_rejects_skip_install_with_strategy() -> None:
    store = TaskStore()
    with pytest.raises(ConfigurationError, match="skip_install"):
        store.register(_task("test", install="dev", skip_install=True))


def test_get_unknown_task_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="unknown task: nope"):
        TaskStore().get("nope")


def test_from_plan_accepts_any_declaration_order() -> None:
    plan = PipelineSpec(
        tasks=[_task("coverage", "test"), _task("test", "lint"), _task("lint")],
        pipeline=["coverage"],
    )
    store = TaskStore.from_plan(plan)
    assert [t.name for t in store.tasks()] == ["coverage", "test", "lint"]


def test_from_plan_names_the_cycle() -> None:
    plan = PipelineSpec(tasks=[_task("a", "c"), _task("b", "a"), _task("c", "b"), _task("d")])
    with pytest.raises(ConfigurationError, match="cyclic dependency: a -> c -> b -> a"):
        TaskStore.from_plan(plan)


def test_from_plan_rejects_unknown_pipeline_entry() -> None:
    plan = PipelineSpec(tasks=[_task("lint")], pipeline=["lint", "docs"])
    with pytest.raises(ConfigurationError, match="pipeline references unknown tasks"):
        TaskStore.from_plan(plan)


def test_from_plan_rejects_case_insensitive_duplicates() -> None:
    plan = PipelineSpec(tasks=[_task("Lint"), _task("lint")])
    with pytest.raises(ConfigurationError, match="case-insensitive"):
        TaskStore.from_plan(plan)


def test_find_cycle_returns_none_for_dag() -> None:
    assert find_cycle({"a": [], "b": ["a"], "c": ["a", "b"]}) is None
    assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]
