"""Install-strategy inputs read from the project's dependency declarations."""

from __future__ import annotations

import re
import tomllib
from pathlib import Path

from devpipe.config.schema import EnvironmentSpec, ProjectSpec, TaskSpec
from devpipe.util.errors import ConfigurationError

_REQ_NAME_PATTERN = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


def requirement_name(requirement: str) -> str | None:
    """Return the normalized distribution name of a requirement line."""
    if requirement.lstrip().startswith("-"):
        return None
    match = _REQ_NAME_PATTERN.match(requirement)
    if match is None:
        return None
    return re.sub(r"[-_.]+", "-", match.group(1)).lower()


def _string_list(value: object, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{where} must be list[str]")
    # dependency-groups may contain {include-group = ...} tables; those are not requirements
    return [item for item in value if isinstance(item, str)]


def load_pyproject(path: Path) -> ProjectSpec:
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"pyproject file not found: {path}") from exc
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"failed to read pyproject file: {path}: {exc}") from exc

    project = data.get("project", {})
    if not isinstance(project, dict):
        raise ConfigurationError("[project] must be a table")
    name = project.get("name")
    raw_extras = project.get("optional-dependencies", {})
    raw_groups = data.get("dependency-groups", {})
    if not isinstance(raw_extras, dict) or not isinstance(raw_groups, dict):
        raise ConfigurationError("optional-dependencies and dependency-groups must be tables")
    return ProjectSpec(
        name=name if isinstance(name, str) else None,
        dependencies=_string_list(project.get("dependencies"), "project.dependencies"),
        extras={
            str(key): _string_list(value, f"optional-dependencies.{key}")
            for key, value in raw_extras.items()
        },
        groups={
            str(key): _string_list(value, f"dependency-groups.{key}")
            for key, value in raw_groups.items()
        },
    )


def _project_line(extras: list[str]) -> str:
    if extras:
        return f"-e .[{','.join(extras)}]"
    return "-e ."


def requirements_for_task(task: TaskSpec, project: ProjectSpec) -> list[str]:
    """Requirement lines an instance of ``task`` installs before its commands."""
    if task.skip_install or task.install == "skip":
        return []
    if task.install == "tool":
        return list(task.tools)
    if task.install == "dev":
        return [_project_line([]), *project.dependencies, *project.groups.get("dev", [])]
    extras = task.extras or sorted(project.extras)
    lines = [_project_line(extras), *project.dependencies]
    for extra in extras:
        lines.extend(project.extras.get(extra, []))
    return lines


def requirements_for_environment(env: EnvironmentSpec, project: ProjectSpec) -> list[str]:
    """Requirement lines installed into a persistent environment.

    The editable project line is only emitted when the project has a name.
    """
    if env.install in ("skip", "tool"):
        return list(env.dependencies)
    lines: list[str] = []
    if env.install == "dev":
        if project.name is not None:
            lines.append(_project_line([]))
        lines.extend(project.dependencies)
        lines.extend(project.groups.get("dev", []))
    else:
        extras = env.extras or sorted(project.extras)
        if project.name is not None:
            lines.append(_project_line(extras))
        lines.extend(project.dependencies)
        for extra in extras:
            lines.extend(project.extras.get(extra, []))
    lines.extend(env.dependencies)
    return list(dict.fromkeys(lines))
