from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _fsync_dir(dir_path: Path) -> None:
    """Persist a rename; filesystems that refuse directory fsync are skipped."""
    try:
        dir_fd = os.open(dir_path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def atomic_write_text(
    path: Path,
    content: str,
    *,
    encoding: str = "utf-8",
    mode: int | None = None,
) -> None:
    """Write *content* to a sibling temp file, fsync it, then rename over *path*.

    Readers see either the old document or the new one, never a torn write.
    ``mode`` restricts permissions of the new file (e.g. ``0o600`` for secrets).
    """
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)

    fd, scratch = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
    try:
        if mode is not None:
            os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(scratch, path)
    except BaseException:
        if os.path.exists(scratch):
            os.unlink(scratch)
        raise
    _fsync_dir(directory)


def atomic_write_json(path: Path, data: Any, *, mode: int | None = None) -> None:
    atomic_write_text(path, json.dumps(data, indent=2) + "\n", mode=mode)


def read_json(path: Path) -> Any | None:
    """Return the parsed document, or None when the file does not exist."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return json.loads(raw)


async def atomic_write_json_async(path: Path, data: Any, *, mode: int | None = None) -> None:
    await asyncio.to_thread(atomic_write_json, path, data, mode=mode)


async def read_json_async(path: Path) -> Any | None:
    return await asyncio.to_thread(read_json, path)
