from __future__ import annotations

import os
from pathlib import Path

from devpipe.config.schema import TaskSpec
from devpipe.dag.expand import expand_task
from devpipe.exec.context import collect_outputs, instance_context, venv_bin_dir


def _task(**kwargs: object) -> TaskSpec:
    return TaskSpec(
        name="test",
        commands=[["pytest", "--out={artifact_dir}/{py}.xml", "{instance}"]],
        parameters={"py": ["v311", "v312"]},
        **kwargs,
    )


def test_context_renders_placeholders_and_environment(tmp_path: Path) -> None:
    task = _task(env={"REPORT": "{tmp_dir}/{py}"}, cwd="src/{py}")
    instance = expand_task(task)[1]
    with instance_context(instance, task, tmp_path / "run", tmp_path / "wd") as ctx:
        assert ctx.commands() == [
            ["pytest", f"--out={ctx.artifact_dir}/v312.xml", "v312-test"],
        ]
        assert ctx.cwd() == tmp_path / "wd" / "src" / "v312"
        env = ctx.environ()
        assert env["DEVPIPE_PARAM_PY"] == "v312"
        assert env["DEVPIPE_INSTANCE"] == "v312-test"
        assert env["TMPDIR"] == str(ctx.tmp_dir)
        assert env["REPORT"] == f"{ctx.tmp_dir}/v312"
        assert "DEVPIPE_MERGE_DIR" not in env
        tmp_dir = ctx.tmp_dir
        assert tmp_dir.is_dir()
    assert not tmp_dir.exists()
    assert (tmp_path / "run" / "artifacts" / "v312-test").is_dir()


def test_collect_outputs_is_append_only(tmp_path: Path) -> None:
    workdir = tmp_path / "wd"
    (workdir / "reports").mkdir(parents=True)
    (workdir / "reports" / "v311.txt").write_text("new", encoding="utf-8")
    task = _task(outputs=["reports/{py}.txt"])
    instance = expand_task(task)[0]
    run_dir = tmp_path / "run"
    existing = run_dir / "artifacts" / "v311-test" / "reports" / "v311.txt"
    existing.parent.mkdir(parents=True)
    existing.write_text("old", encoding="utf-8")

    with instance_context(instance, task, run_dir, workdir) as ctx:
        assert collect_outputs(ctx) == []
    assert existing.read_text(encoding="utf-8") == "old"

    existing.unlink()
    with instance_context(instance, task, run_dir, workdir) as ctx:
        assert collect_outputs(ctx) == ["artifacts/v311-test/reports/v311.txt"]
    assert existing.read_text(encoding="utf-8") == "new"


def test_private_venv_is_first_on_path(tmp_path: Path) -> None:
    task = _task(install="tool", tools=["black==24.1.0"])
    instance = expand_task(task)[0]
    run_dir, workdir = tmp_path / "run", tmp_path / "wd"
    with instance_context(instance, task, run_dir, workdir, private_venv=True) as ctx:
        assert ctx.venv_dir == ctx.tmp_dir / "venv"
        env = ctx.environ()
        assert env["VIRTUAL_ENV"] == str(ctx.venv_dir)
        assert env["PATH"].split(os.pathsep)[0] == str(venv_bin_dir(ctx.venv_dir))
        assert "PYTHONHOME" not in env

    with instance_context(instance, task, tmp_path / "run", tmp_path / "wd") as ctx:
        assert ctx.venv_dir is None
        assert ctx.environ().get("PATH") == os.environ.get("PATH")
