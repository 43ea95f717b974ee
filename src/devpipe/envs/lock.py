from __future__ import annotations

import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from devpipe.util.errors import EnvironmentConflictError

LOCK_NAME = ".lock"


@contextmanager
def env_lock(env_dir: Path, stale_sec: int = 3600) -> Iterator[None]:
    """Hold the per-environment mutation lock; a held lock fails immediately."""
    if env_dir.is_symlink():
        raise OSError(f"environment directory must not be symlink: {env_dir}")
    env_dir.mkdir(parents=True, exist_ok=True)
    lock_path = env_dir / LOCK_NAME
    open_flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW

    def _is_stale() -> bool:
        try:
            lock_meta = lock_path.lstat()
        except OSError:
            return False
        if not stat.S_ISREG(lock_meta.st_mode):
            return False
        return time.time() - lock_meta.st_mtime > stale_sec

    while True:
        try:
            fd = os.open(lock_path, open_flags)
        except FileExistsError as err:
            if _is_stale():
                with suppress(OSError):
                    lock_path.unlink(missing_ok=True)
                continue
            raise EnvironmentConflictError(
                f"environment '{env_dir.name}' is being modified by another operation"
            ) from err
        try:
            owned = os.fstat(fd)
            os.write(fd, str(os.getpid()).encode("utf-8"))
        except OSError:
            with suppress(OSError):
                os.close(fd)
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)
            raise
        break

    try:
        yield
    finally:
        with suppress(OSError):
            os.close(fd)
        try:
            current: os.stat_result | None = lock_path.lstat()
        except OSError:
            current = None
        # only remove the lock we created, never one reclaimed by someone else
        if (
            current is not None
            and current.st_ino == owned.st_ino
            and current.st_dev == owned.st_dev
        ):
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)
