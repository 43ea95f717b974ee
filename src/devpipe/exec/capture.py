from __future__ import annotations

import asyncio
from pathlib import Path


async def stream_to_file(stream: asyncio.StreamReader | None, file_path: Path) -> None:
    """Append a subprocess stream to a log file until EOF."""
    if stream is None:
        return
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        f = file_path.open("ab")
    except OSError:
        # keep draining so the child never blocks on a full pipe
        while await stream.read(4096):
            pass
        return
    with f:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            try:
                f.write(chunk)
                f.flush()
            except OSError:
                continue


def append_text(log_path: Path, text: str) -> None:
    try:
        with log_path.open("a", encoding="utf-8") as f:
            f.write(text)
    except OSError:
        return
