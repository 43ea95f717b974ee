"""Merge per-instance artifacts into one input set for a downstream merge task."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from devpipe.exec.context import artifact_files
from devpipe.state.store import write_json_atomic
from devpipe.util.errors import AggregationError

log = logging.getLogger(__name__)


@dataclass(slots=True)
class Contribution:
    instance_id: str
    params: dict[str, str]
    status: str
    artifact_dir: Path


@dataclass(slots=True)
class AggregationReport:
    merge_dir: Path
    included: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.missing)


def _label(contribution: Contribution) -> str:
    if not contribution.params:
        return contribution.instance_id
    values = ",".join(f"{axis}={value}" for axis, value in contribution.params.items())
    return f"{contribution.instance_id} ({values})"


def aggregate_inputs(
    target_id: str,
    contributions: list[Contribution],
    *,
    merge_root: Path,
    relaxed: bool = False,
) -> AggregationReport:
    """Gather contributor artifacts under ``merge_root/<target_id>``.

    Strict policy requires every contributor to have succeeded with at least one
    artifact. The relaxed policy merges whatever is available and flags the rest.
    """
    if not contributions:
        raise AggregationError(f"merge '{target_id}' has no contributing instances")

    usable: list[tuple[Contribution, list[Path]]] = []
    missing: list[str] = []
    for contribution in contributions:
        files = artifact_files(contribution.artifact_dir)
        if contribution.status == "SUCCESS" and files:
            usable.append((contribution, files))
        else:
            missing.append(contribution.instance_id)

    if missing and not relaxed:
        raise AggregationError(
            f"merge '{target_id}' is missing required inputs: {missing}", missing=missing
        )
    if not usable:
        raise AggregationError(
            f"merge '{target_id}' has no usable inputs (missing: {missing})", missing=missing
        )

    merge_dir = merge_root / target_id
    merge_dir.mkdir(parents=True, exist_ok=True)
    report = AggregationReport(merge_dir=merge_dir, missing=missing)
    for contribution, files in usable:
        dest_root = merge_dir / contribution.instance_id
        for src in files:
            dest = dest_root / src.relative_to(contribution.artifact_dir)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
            report.files.append(str(dest.relative_to(merge_dir)))
        report.included.append(contribution.instance_id)

    by_id = {c.instance_id: c for c in contributions}
    write_json_atomic(
        merge_dir / "inputs.json",
        {
            "target": target_id,
            "relaxed": relaxed,
            "included": [
                {"instance": inst_id, "params": by_id[inst_id].params}
                for inst_id in report.included
            ],
            "missing": [
                {"instance": inst_id, "params": by_id[inst_id].params, "status": by_id[inst_id].status}
                for inst_id in report.missing
            ],
        },
    )
    if report.partial:
        log.warning(
            "merge %s proceeds without %s",
            target_id,
            ", ".join(_label(by_id[inst_id]) for inst_id in report.missing),
        )
    return report
