from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from devpipe.exec.cancel import cancel_mode, write_cancel_request
from devpipe.exec.capture import append_text, stream_to_file


@pytest.mark.asyncio
async def test_stream_to_file_writes_all_stream_data(tmp_path: Path) -> None:
    file_path = tmp_path / "logs" / "capture.log"
    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        "print('line-a');print('line-b')",
        stdout=asyncio.subprocess.PIPE,
    )
    await stream_to_file(proc.stdout, file_path)
    await proc.wait()
    content = file_path.read_text(encoding="utf-8")
    assert "line-a" in content
    assert "line-b" in content


@pytest.mark.asyncio
async def test_stream_to_file_drains_when_target_cannot_open(tmp_path: Path) -> None:
    blocker = tmp_path / "capture.log"
    blocker.mkdir()
    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        "import sys; sys.stdout.write('x' * 200000)",
        stdout=asyncio.subprocess.PIPE,
    )
    await asyncio.wait_for(stream_to_file(proc.stdout, blocker), timeout=10)
    assert await proc.wait() == 0


@pytest.mark.asyncio
async def test_stream_to_file_accepts_missing_stream(tmp_path: Path) -> None:
    await stream_to_file(None, tmp_path / "none.log")
    assert not (tmp_path / "none.log").exists()


def test_append_text_appends(tmp_path: Path) -> None:
    log = tmp_path / "err.log"
    append_text(log, "one\n")
    append_text(log, "two\n")
    assert log.read_text(encoding="utf-8") == "one\ntwo\n"
    append_text(tmp_path / "missing" / "err.log", "ignored")


def test_cancel_request_helpers(tmp_path: Path) -> None:
    assert cancel_mode(tmp_path) is None
    write_cancel_request(tmp_path)
    assert cancel_mode(tmp_path) == "graceful"
    write_cancel_request(tmp_path, force=True)
    assert cancel_mode(tmp_path) == "force"


def test_cancel_mode_ignores_directory_and_symlink(tmp_path: Path) -> None:
    (tmp_path / "cancel.request").mkdir()
    assert cancel_mode(tmp_path) is None
    with pytest.raises(OSError, match="regular file"):
        write_cancel_request(tmp_path)
    assert (tmp_path / "cancel.request").is_dir()

    other = tmp_path / "other"
    other.mkdir()
    target = tmp_path / "target"
    target.write_text("force\n", encoding="utf-8")
    (other / "cancel.request").symlink_to(target)
    assert cancel_mode(other) is None
    with pytest.raises(OSError, match="symlink"):
        write_cancel_request(other)
    assert target.read_text(encoding="utf-8") == "force\n"
