"""Filesystem helpers for voicetoggle.

Per-session working files share a timestamp-derived prefix, e.g.
recording-20250101-120000.wav, recording-20250101-120000.log
"""

from __future__ import annotations

from pathlib import Path
import time


def ensure_dirs(*dirs: Path) -> None:
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)


def session_base_id(work_dir: str | Path, ts: float | None = None) -> str:
    """Return a base id not used by any file in `work_dir`.

    Format: recording-YYYYmmdd-HHMMSS, then recording-YYYYmmdd-HHMMSS-1, -2...
    when a file with that prefix already exists.
    """
    d = Path(work_dir)
    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(time.time() if ts is None else ts))
    base = f"recording-{stamp}"
    if not _prefix_taken(d, base):
        return base

    n = 1
    while True:
        candidate = f"{base}-{n}"
        if not _prefix_taken(d, candidate):
            return candidate
        n += 1


def _prefix_taken(d: Path, base: str) -> bool:
    if not d.exists():
        return False
    return any(p.name == base or p.name.startswith(base + ".") for p in d.iterdir())


def file_size(path: Path) -> int:
    """Return the size of `path` in bytes, 0 if it does not exist."""
    try:
        return path.stat().st_size
    except OSError:
        return 0


def safe_unlink(p: Path | None) -> None:
    if p is None:
        return
    try:
        p.unlink(missing_ok=True)
    except OSError:
        pass
