from __future__ import annotations

from pathlib import Path


def run_dir(home: Path, run_id: str) -> Path:
    """Return run directory path."""
    return home / "runs" / run_id


def envs_root(home: Path, platform: str) -> Path:
    """Return the registry directory for one platform variant."""
    return home / "envs" / platform


def exports_dir(home: Path) -> Path:
    return home / "exports"


def _ensure_directory(path: Path, *, parents: bool = False) -> None:
    if path.is_symlink():
        raise OSError(f"path must not be symlink: {path}")
    try:
        path.mkdir(parents=parents, exist_ok=True)
    except OSError as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    if not path.is_dir():
        raise OSError(f"path must be directory: {path}")


def ensure_run_layout(run_dir: Path) -> None:
    """Ensure all directories required by the run layout exist."""
    _ensure_directory(run_dir, parents=True)
    _ensure_directory(run_dir / "logs")
    _ensure_directory(run_dir / "artifacts")
    _ensure_directory(run_dir / "merge")
    _ensure_directory(run_dir / "report")
