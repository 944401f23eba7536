"""
Crash-safe file writes.

Content is written to a temp file in the destination directory, flushed
and fsynced, then moved into place with a single rename (or hard link for
exclusive creates). A reader therefore sees either the previous file or
the complete new one, never a partial write. A process killed mid-write
leaves only a `*.tmp` file behind, which `sweep_temp_files` removes later.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_PREFIX = "."
TEMP_SUFFIX = ".tmp"


def _fsync_dir(directory: Path) -> None:
    # Directory fsync is unsupported on some platforms (Windows)
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(
    path: Path, data: bytes, *, exclusive: bool = False, fsync: bool = True
) -> None:
    """
    Atomically write `data` to `path`.

    Args:
        path: Destination file
        data: Full file content
        exclusive: Fail if `path` already exists instead of replacing it
        fsync: Flush file and directory to durable storage

    Raises:
        FileExistsError: If `exclusive` and the destination exists
        OSError: On any other filesystem failure (the destination is untouched)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent, prefix=f"{TEMP_PREFIX}{path.name}.", suffix=TEMP_SUFFIX
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            if fsync:
                os.fsync(f.fileno())

        if exclusive:
            # link() refuses to overwrite, which makes the create race-free
            os.link(temp_path, path)
            os.unlink(temp_path)
        else:
            os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    if fsync:
        _fsync_dir(path.parent)


def atomic_write_text(
    path: Path, text: str, *, exclusive: bool = False, fsync: bool = True
) -> None:
    """Atomically write UTF-8 `text` to `path`."""
    atomic_write_bytes(path, text.encode("utf-8"), exclusive=exclusive, fsync=fsync)


def is_temp_file(path: Path) -> bool:
    return path.name.startswith(TEMP_PREFIX) and path.name.endswith(TEMP_SUFFIX)


def sweep_temp_files(root: Path, max_age_seconds: float, now: float | None = None) -> list[Path]:
    """
    Remove abandoned temp files under `root` older than `max_age_seconds`.

    Younger temp files may belong to a write still in progress in another
    process and are left alone.

    Returns:
        Paths that were removed
    """
    if not root.exists():
        return []
    if now is None:
        now = time.time()

    removed: list[Path] = []
    for candidate in root.rglob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
        try:
            age = now - candidate.stat().st_mtime
        except FileNotFoundError:
            continue
        if age < max_age_seconds:
            continue
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        logger.warning("Removed abandoned temp file %s", candidate)
        removed.append(candidate)
    return removed
