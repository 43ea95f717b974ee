from __future__ import annotations

import json
from pathlib import Path

import pytest

from devpipe.exec.aggregate import Contribution, aggregate_inputs
from devpipe.util.errors import AggregationError


def _contribution(root: Path, inst_id: str, status: str = "SUCCESS", *files: str) -> Contribution:
    artifact_dir = root / "artifacts" / inst_id
    artifact_dir.mkdir(parents=True, exist_ok=True)
    for name in files:
        (artifact_dir / name).parent.mkdir(parents=True, exist_ok=True)
        (artifact_dir / name).write_text(inst_id, encoding="utf-8")
    return Contribution(
        instance_id=inst_id,
        params={"py": inst_id.split("-")[0]},
        status=status,
        artifact_dir=artifact_dir,
    )


def test_strict_merge_copies_every_contributor(tmp_path: Path) -> None:
    contributions = [
        _contribution(tmp_path, "a-build", "SUCCESS", "cov.xml"),
        _contribution(tmp_path, "b-build", "SUCCESS", "nested/cov.xml"),
    ]
    report = aggregate_inputs("merge", contributions, merge_root=tmp_path / "merge")

    assert not report.partial
    assert report.included == ["a-build", "b-build"]
    assert report.files == ["a-build/cov.xml", "b-build/nested/cov.xml"]
    assert (report.merge_dir / "b-build" / "nested" / "cov.xml").read_text() == "b-build"
    inputs = json.loads((report.merge_dir / "inputs.json").read_text())
    assert inputs["included"][0] == {"instance": "a-build", "params": {"py": "a"}}


def test_strict_merge_rejects_contributor_without_artifacts(tmp_path: Path) -> None:
    contributions = [
        _contribution(tmp_path, "a-build", "SUCCESS", "cov.xml"),
        _contribution(tmp_path, "b-build", "SUCCESS"),
    ]
    with pytest.raises(AggregationError) as excinfo:
        aggregate_inputs("merge", contributions, merge_root=tmp_path / "merge")
    assert excinfo.value.missing == ["b-build"]
    assert not (tmp_path / "merge" / "merge").exists()


def test_relaxed_merge_flags_missing_contributors(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    contributions = [
        _contribution(tmp_path, "a-build", "FAILED", "cov.xml"),
        _contribution(tmp_path, "b-build", "SUCCESS", "cov.xml"),
    ]
    with caplog.at_level("WARNING", logger="devpipe.exec.aggregate"):
        report = aggregate_inputs(
            "merge", contributions, merge_root=tmp_path / "merge", relaxed=True
        )

    assert report.partial
    assert report.missing == ["a-build"]
    assert report.included == ["b-build"]
    assert not (report.merge_dir / "a-build").exists()
    assert "a-build (py=a)" in caplog.text
    inputs = json.loads((report.merge_dir / "inputs.json").read_text())
    assert inputs["missing"] == [{"instance": "a-build", "params": {"py": "a"}, "status": "FAILED"}]


def test_relaxed_merge_with_nothing_usable_fails(tmp_path: Path) -> None:
    contributions = [_contribution(tmp_path, "a-build", "SKIPPED")]
    with pytest.raises(AggregationError, match="no usable inputs"):
        aggregate_inputs("merge", contributions, merge_root=tmp_path / "merge", relaxed=True)


def test_merge_without_contributors_fails(tmp_path: Path) -> None:
    with pytest.raises(AggregationError, match="no contributing instances"):
        aggregate_inputs("merge", [], merge_root=tmp_path / "merge", relaxed=True)
