from __future__ import annotations

import math
import re
import shlex
import string
from pathlib import Path
from typing import Any, cast

import yaml

from devpipe.config.project import load_pyproject
from devpipe.config.schema import (
    DEFAULT_INSTALLER,
    INSTALL_STRATEGIES,
    LIFECYCLE_OPS,
    AggregateSpec,
    EnvironmentSpec,
    InstallStrategy,
    LifecycleOp,
    LifecycleSpec,
    PipelineSpec,
    ProjectSpec,
    TaskSpec,
)
from devpipe.dag.expand import expand_graph
from devpipe.dag.store import TaskStore
from devpipe.util.errors import ConfigurationError
from devpipe.util.ids import ID_MAX_LEN, is_safe_id

CONTEXT_PLACEHOLDERS = frozenset(
    {"instance", "task", "artifact_dir", "tmp_dir", "merge_dir", "workdir"}
)
_AXIS_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ALLOWED_ROOT_KEYS = {"project", "environments", "tasks", "pipeline", "artifacts_dir", "installer"}
_ALLOWED_PROJECT_KEYS = {"name", "pyproject", "dependencies", "extras", "groups"}
_ALLOWED_ENV_KEYS = {"name", "runtime", "platforms", "install", "extras", "dependencies", "params"}
_ALLOWED_TASK_KEYS = {
    "name",
    "description",
    "depends_on",
    "parameters",
    "install",
    "skip_install",
    "extras",
    "tools",
    "commands",
    "fail_fast",
    "cwd",
    "env",
    "timeout_sec",
    "outputs",
    "aggregate",
    "lifecycle",
}


def _is_finite_real_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def _is_valid_env_key(value: object) -> bool:
    return _is_non_blank_str(value) and "=" not in cast(str, value)


def normalize_cmd(cmd: str | list[str]) -> list[str]:
    if isinstance(cmd, str):
        try:
            parts = shlex.split(cmd)
        except ValueError as exc:
            raise ConfigurationError(f"invalid command string: {exc}") from exc
        if not parts:
            raise ConfigurationError("command string must not be empty")
        if any("\x00" in part for part in parts):
            raise ConfigurationError("command must not contain null bytes")
        return parts
    if isinstance(cmd, list) and cmd and all(_is_non_blank_str(p) for p in cmd):
        return list(cmd)
    raise ConfigurationError("command must be str or non-empty list[str]")


def _ensure_list_str(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(_is_non_blank_str(v) for v in value):
        raise ConfigurationError(f"{name} must be list of non-empty strings")
    return list(value)


def _ensure_mapping(name: str, value: Any, allowed: set[str] | None = None) -> dict[str, Any]:
    if not isinstance(value, dict) or any(not isinstance(key, str) for key in value):
        raise ConfigurationError(f"{name} must be a mapping with string keys")
    if allowed is not None:
        unknown = set(value) - allowed
        if unknown:
            raise ConfigurationError(f"{name} has unknown fields: {sorted(unknown)}")
    return value


def _ensure_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{name} must be bool")
    return value


def _parse_install(where: str, value: Any, default: str) -> InstallStrategy:
    strategy = default if value is None else value
    if strategy not in INSTALL_STRATEGIES:
        raise ConfigurationError(f"{where}.install must be one of {list(INSTALL_STRATEGIES)}")
    return cast(InstallStrategy, strategy)


def _parse_parameters(task_name: str, value: Any) -> dict[str, list[str]]:
    if value is None:
        return {}
    raw = _ensure_mapping(f"task '{task_name}' parameters", value)
    axes: dict[str, list[str]] = {}
    for axis, values in raw.items():
        if _AXIS_NAME_PATTERN.fullmatch(axis) is None:
            raise ConfigurationError(f"task '{task_name}' has invalid axis name: {axis!r}")
        if axis in CONTEXT_PLACEHOLDERS:
            raise ConfigurationError(f"task '{task_name}' axis name is reserved: {axis}")
        if not isinstance(values, list) or not values:
            raise ConfigurationError(f"task '{task_name}' axis '{axis}' must be non-empty list")
        if not all(is_safe_id(v) for v in values):
            raise ConfigurationError(
                f"task '{task_name}' axis '{axis}' values must be strings matching "
                "^[A-Za-z0-9][A-Za-z0-9._-]*$"
            )
        if len(set(values)) != len(values):
            raise ConfigurationError(f"task '{task_name}' axis '{axis}' has duplicate values")
        axes[axis] = list(values)
    return axes


def _parse_aggregate(task_name: str, value: Any) -> AggregateSpec | None:
    if value is None:
        return None
    raw = _ensure_mapping(f"task '{task_name}' aggregate", value, {"source", "relaxed"})
    if not _is_non_blank_str(raw.get("source")):
        raise ConfigurationError(f"task '{task_name}' aggregate.source is required")
    return AggregateSpec(
        source=raw["source"],
        relaxed=_ensure_bool(f"task '{task_name}' aggregate.relaxed", raw.get("relaxed", False)),
    )


def _parse_lifecycle(task_name: str, value: Any) -> LifecycleSpec | None:
    if value is None:
        return None
    raw = _ensure_mapping(
        f"task '{task_name}' lifecycle", value, {"op", "environment", "source"}
    )
    if raw.get("op") not in LIFECYCLE_OPS:
        raise ConfigurationError(
            f"task '{task_name}' lifecycle.op must be one of {list(LIFECYCLE_OPS)}"
        )
    if not is_safe_id(raw.get("environment")):
        raise ConfigurationError(f"task '{task_name}' lifecycle.environment is required")
    source = raw.get("source")
    if source is not None and not is_safe_id(source):
        raise ConfigurationError(f"task '{task_name}' lifecycle.source must be an environment name")
    return LifecycleSpec(op=cast(LifecycleOp, raw["op"]), environment=raw["environment"], source=source)


def _parse_task(raw: Any) -> TaskSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError("task must be mapping")
    if any(not isinstance(key, str) for key in raw):
        raise ConfigurationError("task fields must use string keys")
    name = raw.get("name")
    if not _is_non_blank_str(name):
        raise ConfigurationError("task.name is required and must be non-empty string")
    if len(name) > ID_MAX_LEN:
        raise ConfigurationError(f"task.name must be <= {ID_MAX_LEN} characters")
    if not is_safe_id(name):
        raise ConfigurationError("task.name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    unknown = set(raw.keys()) - _ALLOWED_TASK_KEYS
    if unknown:
        raise ConfigurationError(f"task '{name}' has unknown fields: {sorted(unknown)}")

    raw_commands = raw.get("commands", [])
    if not isinstance(raw_commands, list):
        raise ConfigurationError(f"task '{name}' commands must be a list")
    commands = [normalize_cmd(cmd) for cmd in raw_commands]
    lifecycle = _parse_lifecycle(name, raw.get("lifecycle"))
    if lifecycle is not None and commands:
        raise ConfigurationError(f"task '{name}' must not declare both commands and lifecycle")
    if lifecycle is None and not commands:
        raise ConfigurationError(f"task '{name}' must declare commands or lifecycle")

    timeout_sec = raw.get("timeout_sec")
    if timeout_sec is not None:
        if not _is_finite_real_number(timeout_sec) or timeout_sec <= 0:
            raise ConfigurationError(f"task '{name}' timeout_sec must be > 0")
        timeout_sec = float(timeout_sec)

    description = raw.get("description")
    if description is not None and not isinstance(description, str):
        raise ConfigurationError(f"task '{name}' description must be string")

    cwd = raw.get("cwd")
    if cwd is not None and not _is_non_blank_str(cwd):
        raise ConfigurationError(f"task '{name}' cwd must be non-empty string")

    env = raw.get("env")
    if env is not None and (
        not isinstance(env, dict)
        or not all(
            _is_valid_env_key(k) and isinstance(v, str) and "\x00" not in v for k, v in env.items()
        )
    ):
        raise ConfigurationError(f"task '{name}' env must be dict[str, str]")

    return TaskSpec(
        name=name,
        commands=commands,
        description=description,
        depends_on=_ensure_list_str(f"task '{name}' depends_on", raw.get("depends_on")),
        parameters=_parse_parameters(name, raw.get("parameters")),
        install=_parse_install(f"task '{name}'", raw.get("install"), "skip"),
        skip_install=_ensure_bool(f"task '{name}' skip_install", raw.get("skip_install", False)),
        extras=_ensure_list_str(f"task '{name}' extras", raw.get("extras")),
        tools=_ensure_list_str(f"task '{name}' tools", raw.get("tools")),
        fail_fast=_ensure_bool(f"task '{name}' fail_fast", raw.get("fail_fast", True)),
        cwd=cwd,
        env=env,
        timeout_sec=timeout_sec,
        outputs=_ensure_list_str(f"task '{name}' outputs", raw.get("outputs")),
        aggregate=_parse_aggregate(name, raw.get("aggregate")),
        lifecycle=lifecycle,
    )


def _parse_environment(raw: Any) -> EnvironmentSpec:
    data = _ensure_mapping("environment", raw, _ALLOWED_ENV_KEYS)
    name = data.get("name")
    if not is_safe_id(name):
        raise ConfigurationError("environment.name must match ^[A-Za-z0-9][A-Za-z0-9._-]*$")
    runtime = data.get("runtime")
    if not _is_non_blank_str(runtime):
        raise ConfigurationError(f"environment '{name}' runtime must be a version string")
    params = _ensure_mapping(f"environment '{name}' params", data.get("params", {}))
    if not all(isinstance(v, str) for v in params.values()):
        raise ConfigurationError(f"environment '{name}' params must be dict[str, str]")
    return EnvironmentSpec(
        name=name,
        runtime=runtime,
        platforms=_ensure_list_str(f"environment '{name}' platforms", data.get("platforms")),
        install=_parse_install(f"environment '{name}'", data.get("install"), "dev"),
        extras=_ensure_list_str(f"environment '{name}' extras", data.get("extras")),
        dependencies=_ensure_list_str(
            f"environment '{name}' dependencies", data.get("dependencies")
        ),
        params=dict(params),
    )


def _parse_groups(name: str, value: Any) -> dict[str, list[str]]:
    raw = _ensure_mapping(name, value if value is not None else {})
    return {key: _ensure_list_str(f"{name}.{key}", items) for key, items in raw.items()}


def _parse_project(raw: Any, base_dir: Path) -> ProjectSpec:
    if raw is None:
        return ProjectSpec()
    data = _ensure_mapping("project", raw, _ALLOWED_PROJECT_KEYS)
    pyproject = data.get("pyproject")
    if pyproject is not None:
        if not _is_non_blank_str(pyproject):
            raise ConfigurationError("project.pyproject must be a path string")
        path = Path(pyproject)
        return load_pyproject(path if path.is_absolute() else base_dir / path)
    name = data.get("name")
    if name is not None and not _is_non_blank_str(name):
        raise ConfigurationError("project.name must be non-empty string when provided")
    return ProjectSpec(
        name=name,
        dependencies=_ensure_list_str("project.dependencies", data.get("dependencies")),
        extras=_parse_groups("project.extras", data.get("extras")),
        groups=_parse_groups("project.groups", data.get("groups")),
    )


def _placeholders(value: str, where: str) -> set[str]:
    try:
        return {field for _, field, _, _ in string.Formatter().parse(value) if field is not None}
    except ValueError as exc:
        raise ConfigurationError(f"{where} has malformed placeholder: {value!r}") from exc


def _validate_placeholders(task: TaskSpec) -> None:
    allowed = CONTEXT_PLACEHOLDERS | set(task.parameters)
    values: list[str] = [arg for cmd in task.commands for arg in cmd]
    if task.cwd is not None:
        values.append(task.cwd)
    if task.env:
        values.extend(task.env.values())
    values.extend(task.outputs)
    for value in values:
        unknown = _placeholders(value, f"task '{task.name}'") - allowed
        if unknown:
            raise ConfigurationError(
                f"task '{task.name}' uses unknown placeholders: {sorted(unknown)}"
            )


def validate_plan(plan: PipelineSpec) -> TaskStore:
    """Validate every cross-reference of the manifest and return the populated store."""
    if not plan.tasks:
        raise ConfigurationError("tasks must contain at least one task")
    names = [env.name for env in plan.environments]
    if len(set(names)) != len(names):
        raise ConfigurationError("environment.name must be unique")
    if not plan.installer:
        raise ConfigurationError("installer must be a non-empty command")

    store = TaskStore.from_plan(plan)
    for task in plan.tasks:
        _validate_placeholders(task)
        if task.aggregate is not None and task.aggregate.source not in task.depends_on:
            raise ConfigurationError(
                f"task '{task.name}' aggregate.source '{task.aggregate.source}' "
                "must be one of its dependencies"
            )
        if task.lifecycle is not None:
            lifecycle = task.lifecycle
            if lifecycle.op != "import" and plan.environment(lifecycle.environment) is None:
                raise ConfigurationError(
                    f"task '{task.name}' references unknown environment "
                    f"'{lifecycle.environment}'"
                )
            if lifecycle.source is not None and lifecycle.op != "import":
                raise ConfigurationError(
                    f"task '{task.name}' lifecycle.source is only valid for import"
                )
    # instance ids must stay unique once every task is expanded
    expand_graph(store, [task.name for task in plan.tasks])
    return store


def parse_manifest(raw: Any, base_dir: Path) -> PipelineSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError("manifest root must be a mapping")
    if any(not isinstance(key, str) for key in raw):
        raise ConfigurationError("manifest root keys must be strings")
    unknown_root = set(raw.keys()) - _ALLOWED_ROOT_KEYS
    if unknown_root:
        raise ConfigurationError(f"manifest contains unknown fields: {sorted(unknown_root)}")

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raise ConfigurationError("tasks must be a list")
    raw_envs = raw.get("environments", [])
    if not isinstance(raw_envs, list):
        raise ConfigurationError("environments must be a list")

    artifacts_dir = raw.get("artifacts_dir")
    if artifacts_dir is not None and not _is_non_blank_str(artifacts_dir):
        raise ConfigurationError("artifacts_dir must be non-empty string when provided")

    raw_installer = raw.get("installer")
    installer = (
        list(DEFAULT_INSTALLER) if raw_installer is None else normalize_cmd(raw_installer)
    )

    tasks = [_parse_task(task) for task in raw_tasks]
    pipeline = _ensure_list_str("pipeline", raw.get("pipeline"))
    return PipelineSpec(
        tasks=tasks,
        pipeline=pipeline or [task.name for task in tasks],
        environments=[_parse_environment(env) for env in raw_envs],
        project=_parse_project(raw.get("project"), base_dir),
        artifacts_dir=artifacts_dir,
        installer=installer,
    )


def load_manifest(path: Path) -> tuple[PipelineSpec, TaskStore]:
    """Read, parse and fully validate a manifest before anything runs."""
    if path.is_symlink():
        raise ConfigurationError(f"manifest file must not be symlink: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(f"manifest file not found: {path}") from exc
    except UnicodeError as exc:
        raise ConfigurationError(f"failed to decode manifest file as utf-8: {path}") from exc
    except OSError as exc:
        raise ConfigurationError(f"failed to read manifest file: {path}") from exc

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"failed to parse yaml: {exc}") from exc

    plan = parse_manifest(raw, path.parent)
    store = validate_plan(plan)
    return plan, store
