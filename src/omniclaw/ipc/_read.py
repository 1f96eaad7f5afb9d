"""IPC file reading: hardened reads, ordered draining, quarantine.

Consumers process ``*.json`` files in filename order (filenames start with
a millisecond timestamp), delete each after it was handled, and move
anything malformed or unsafe into ``errors/`` so it is never retried.
"""

from __future__ import annotations

import json
import os
import stat
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from omniclaw.logger import logger

MAX_IPC_FILE_SIZE = 1024 * 1024  # 1 MiB


class IpcFileError(ValueError):
    """An IPC file was unsafe or malformed."""


def read_ipc_file(path: Path, max_size: int = MAX_IPC_FILE_SIZE) -> dict[str, Any]:
    """Read and validate one IPC JSON file.

    Rejects symlinks, non-regular files, files above *max_size*, and payloads
    that are not a JSON object with a ``type`` field.
    """
    try:
        st = path.lstat()
    except OSError as exc:
        raise IpcFileError(f"lstat failed: {exc}") from exc
    if stat.S_ISLNK(st.st_mode):
        raise IpcFileError("symlink rejected")
    if not stat.S_ISREG(st.st_mode):
        raise IpcFileError(f"not a regular file (mode: {st.st_mode:o})")
    if st.st_size > max_size:
        raise IpcFileError(f"file too large ({st.st_size} > {max_size} bytes)")

    flags = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0)
    try:
        fd = os.open(path, flags)
    except OSError as exc:
        raise IpcFileError(f"open failed: {exc}") from exc
    with os.fdopen(fd, "rb") as f:
        if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
            raise IpcFileError("file changed type after open")
        # One byte past the cap detects growth between lstat and read
        raw = f.read(max_size + 1)
    if len(raw) > max_size:
        raise IpcFileError(f"file grew past {max_size} bytes during read")

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise IpcFileError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise IpcFileError(f"expected a JSON object, got {type(data).__name__}")
    if not isinstance(data.get("type"), str):
        raise IpcFileError("missing 'type' field")
    return data


def list_ipc_files(directory: Path) -> list[Path]:
    """Regular ``*.json`` files in *directory*, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir() if p.suffix == ".json" and not p.is_symlink() and p.is_file()
    )


def quarantine_ipc_file(path: Path, errors_dir: Path, source: str) -> Path | None:
    """Move a failed IPC file to *errors_dir* for later inspection."""
    errors_dir.mkdir(parents=True, exist_ok=True)
    target = errors_dir / f"{source}-{path.name}"
    try:
        path.rename(target)
    except OSError as exc:
        logger.error("Failed to quarantine IPC file", file=path.name, err=str(exc))
        try:
            path.unlink()
        except OSError:
            logger.error("Failed to remove unquarantinable IPC file", file=path.name)
        return None
    return target


async def drain_ipc_dir(
    directory: Path,
    handler: Callable[[dict[str, Any]], Awaitable[None]],
    *,
    errors_dir: Path,
    source: str,
) -> int:
    """Process every pending file in *directory* once, in order.

    Returns how many files were handled successfully.
    """
    handled = 0
    for file_path in list_ipc_files(directory):
        try:
            data = read_ipc_file(file_path)
            await handler(data)
            file_path.unlink()
            handled += 1
        except Exception as exc:
            logger.error(
                "Error processing IPC file",
                file=file_path.name,
                source=source,
                err=str(exc),
            )
            quarantine_ipc_file(file_path, errors_dir, source)
    return handled
