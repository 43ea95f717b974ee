from __future__ import annotations

from typing import Any


def _params_label(params: dict[str, str]) -> str:
    if not params:
        return "-"
    return ", ".join(f"{axis}={value}" for axis, value in params.items())


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    instances = summary["instances"]
    problems = summary["problems"]
    skipped = summary["skipped"]
    artifacts = summary["artifacts"]

    lines: list[str] = []
    lines.append("# Pipeline Run Report")
    lines.append("")
    lines.append("## Run Overview")
    lines.append("")
    lines.append(f"- run_id: `{run['run_id']}`")
    lines.append(f"- target: {run['target'] or '(pipeline)'}")
    lines.append(f"- status: **{run['status']}**")
    lines.append(f"- exit_code: {run['exit_code']}")
    lines.append(f"- started: {run['created_at']}")
    lines.append(f"- ended: {run['updated_at']}")
    lines.append(f"- max_parallel: {run['max_parallel']}")
    lines.append(f"- workdir: `{run['workdir']}`")
    counts = ", ".join(f"{status}: {count}" for status, count in sorted(run["counts"].items()))
    lines.append(f"- instances: {counts or '(none)'}")
    lines.append("")
    lines.append("## Instance Results")
    lines.append("")
    lines.append("| instance | task | params | status | duration_sec | exit_code | logs |")
    lines.append("|---|---|---|---:|---:|---:|---|")
    for row in instances:
        logs = f"`{row['stdout_path']}` / `{row['stderr_path']}`"
        lines.append(
            f"| {row['id']} | {row['task']} | {_params_label(row['params'])} | {row['status']} | "
            f"{row['duration_sec']} | {row['exit_code']} | {logs} |"
        )
    lines.append("")
    lines.append("## Failures")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['id']} ({row['status']})")
            if row["skip_reason"]:
                lines.append(f"- reason: `{row['skip_reason']}`")
            lines.append(f"- exit_code: {row['exit_code']}")
            if row["missing_inputs"]:
                lines.append(f"- missing inputs: {', '.join(row['missing_inputs'])}")
            lines.append("- stderr tail:")
            lines.append("```")
            lines.extend(row["stderr_tail"] or ["(empty)"])
            lines.append("```")
            lines.append("")
    else:
        lines.append("No failed instances.")
        lines.append("")
    lines.append("## Skipped / Canceled")
    lines.append("")
    if skipped:
        for row in skipped:
            detail = f"- {row['id']} ({row['status']}): `{row['skip_reason']}`"
            if row["root_cause"]:
                detail += f", root cause `{row['root_cause']}`"
            lines.append(detail)
    else:
        lines.append("- (none)")
    lines.append("")
    lines.append("## Artifacts")
    lines.append("")
    if artifacts:
        for artifact in artifacts:
            lines.append(f"- `{artifact['path']}` (instance: `{artifact['instance']}`)")
    else:
        lines.append("- (none)")
    lines.append("")
    return "\n".join(lines)
