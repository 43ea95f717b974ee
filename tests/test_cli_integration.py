from __future__ import annotations

import json
import os
import re
import subprocess
import sys
from pathlib import Path

import yaml

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def _write_manifest(path: Path, tasks: list[dict[str, object]], **extra: object) -> Path:
    path.write_text(yaml.safe_dump({"tasks": tasks, **extra}, sort_keys=False), encoding="utf-8")
    return path


def _cli(*args: str, cwd: Path) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))
    env["COLUMNS"] = "200"
    return subprocess.run(
        [sys.executable, "-m", "devpipe.cli", *args],
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def _extract_run_id(output: str) -> str:
    match = re.search(r"run_id:\s*([0-9]{8}_[0-9]{6}_[0-9a-f]{6})", output)
    assert match is not None, output
    return match.group(1)


def _cascade(tmp_path: Path) -> Path:
    return _write_manifest(
        tmp_path / "devpipe.yaml",
        [
            {"name": "lint", "commands": [_py("import sys; print('linting'); sys.exit(3)")]},
            {"name": "stubs", "commands": [_py("print('stubs')")], "depends_on": ["lint"]},
            {
                "name": "test",
                "commands": [_py("print('test')")],
                "depends_on": ["stubs"],
                "parameters": {"py": ["v311", "v312"]},
            },
            {"name": "coverage", "commands": [_py("print('cov')")], "depends_on": ["test"]},
        ],
    )


def test_cli_dry_run_lists_instances_in_order(tmp_path: Path) -> None:
    _cascade(tmp_path)
    proc = _cli("run", "--dry-run", cwd=tmp_path)

    assert proc.returncode == 0, proc.stdout + proc.stderr
    assert "Dry Run" in proc.stdout
    positions = [proc.stdout.index(name) for name in ("lint", "stubs", "v311-test", "v312-test")]
    assert positions == sorted(positions)
    assert not (tmp_path / ".devpipe").exists()


def test_cli_run_failure_returns_lint_exit_code_and_writes_report(tmp_path: Path) -> None:
    _cascade(tmp_path)
    proc = _cli("run", cwd=tmp_path)

    assert proc.returncode == 3, proc.stdout + proc.stderr
    run_id = _extract_run_id(proc.stdout)
    run_dir = tmp_path / ".devpipe" / "runs" / run_id
    state = json.loads((run_dir / "state.json").read_text(encoding="utf-8"))
    assert state["status"] == "FAILED"
    assert state["instances"]["lint"]["status"] == "FAILED"
    assert state["instances"]["v312-test"]["status"] == "SKIPPED"
    assert state["instances"]["coverage"]["skip_reason"] == "dependency_not_success"
    report = (run_dir / "report" / "final_report.md").read_text(encoding="utf-8")
    assert "root cause `lint`" in report
    assert (run_dir / "manifest.yaml").is_file()

    status = _cli("status", run_id, "--json", cwd=tmp_path)
    assert status.returncode == 0
    assert json.loads(status.stdout)["instances"]["lint"]["exit_code"] == 3

    logs = _cli("logs", run_id, "--instance", "lint", cwd=tmp_path)
    assert logs.returncode == 0
    assert "linting" in logs.stdout


def test_cli_run_single_task_succeeds(tmp_path: Path) -> None:
    manifest = _write_manifest(
        tmp_path / "pipeline.yaml",
        [
            {"name": "lint", "commands": [_py("import sys; sys.exit(3)")]},
            {"name": "docs", "commands": [_py("print('docs')")]},
        ],
    )
    home = tmp_path / "state"
    proc = _cli("run", "docs", "--manifest", str(manifest), "--home", str(home), cwd=tmp_path)

    assert proc.returncode == 0, proc.stdout + proc.stderr
    run_id = _extract_run_id(proc.stdout)
    state = json.loads((home / "runs" / run_id / "state.json").read_text(encoding="utf-8"))
    assert list(state["instances"]) == ["docs"]


def test_cli_rejects_cyclic_manifest_before_running(tmp_path: Path) -> None:
    _write_manifest(
        tmp_path / "devpipe.yaml",
        [
            {"name": "a", "commands": [_py("print('a')")], "depends_on": ["b"]},
            {"name": "b", "commands": [_py("print('b')")], "depends_on": ["a"]},
        ],
    )
    proc = _cli("run", cwd=tmp_path)

    assert proc.returncode == 2
    assert "cyclic dependency" in proc.stdout
    assert not (tmp_path / ".devpipe").exists()


def test_cli_unknown_target_returns_two(tmp_path: Path) -> None:
    _cascade(tmp_path)
    proc = _cli("run", "nope", cwd=tmp_path)
    assert proc.returncode == 2
    assert "unknown task" in proc.stdout


def test_cli_list_shows_tasks_and_pipeline(tmp_path: Path) -> None:
    _cascade(tmp_path)
    proc = _cli("list", cwd=tmp_path)
    assert proc.returncode == 0
    assert "py=v311,v312" in proc.stdout
    assert "pipeline: lint -> stubs -> test -> coverage" in proc.stdout


def test_cli_status_and_cancel_unknown_run(tmp_path: Path) -> None:
    assert _cli("status", "20260101_000000_abcdef", cwd=tmp_path).returncode == 2
    assert _cli("cancel", "20260101_000000_abcdef", cwd=tmp_path).returncode == 2
    assert _cli("status", "../escape", cwd=tmp_path).returncode == 2


def test_cli_cancel_writes_request(tmp_path: Path) -> None:
    _cascade(tmp_path)
    run_id = _extract_run_id(_cli("run", cwd=tmp_path).stdout)
    proc = _cli("cancel", run_id, "--force", cwd=tmp_path)

    assert proc.returncode == 0
    request = tmp_path / ".devpipe" / "runs" / run_id / "cancel.request"
    assert request.read_text(encoding="utf-8").strip() == "force"


def test_cli_env_errors_map_to_exit_codes(tmp_path: Path) -> None:
    _write_manifest(
        tmp_path / "devpipe.yaml",
        [{"name": "lint", "commands": [_py("print('lint')")]}],
        environments=[{"name": "dev", "runtime": "3.12"}],
    )

    show = _cli("env", "show", "dev", "--platform", "linux", cwd=tmp_path)
    assert show.returncode == 0
    assert json.loads(show.stdout)["state"] == "ABSENT"

    undeclared = _cli("env", "create", "scratch", cwd=tmp_path)
    assert undeclared.returncode == 2
    assert "runtime version is required" in undeclared.stdout

    install = _cli("env", "install", "dev", "--platform", "linux", cwd=tmp_path)
    assert install.returncode == 2
    assert "absent" in install.stdout

    lock_dir = tmp_path / ".devpipe" / "envs" / "linux" / "dev"
    lock_dir.mkdir(parents=True, exist_ok=True)
    (lock_dir / ".lock").write_text("1", encoding="utf-8")
    busy = _cli("env", "remove", "dev", "--platform", "linux", cwd=tmp_path)
    assert busy.returncode == 3

    listing = _cli("env", "list", "--platform", "linux", cwd=tmp_path)
    assert listing.returncode == 0
    assert "dev" in listing.stdout


def test_cli_env_rejects_path_like_names(tmp_path: Path) -> None:
    victim = tmp_path / ".devpipe" / "victim" / "runtime"
    victim.mkdir(parents=True)

    removed = _cli("env", "remove", "../../victim", "--platform", "linux", cwd=tmp_path)
    assert removed.returncode == 2
    assert "invalid environment name" in removed.stdout
    assert victim.is_dir()

    imported = _cli("env", "import", "dev", "--from", "../x", "--platform", "linux", cwd=tmp_path)
    assert imported.returncode == 2

    platform = _cli("env", "list", "--platform", "../up", cwd=tmp_path)
    assert platform.returncode == 2
    assert "invalid platform" in platform.stdout
