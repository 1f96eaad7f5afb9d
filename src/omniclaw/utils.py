"""Shared utility functions.

Small helpers used across multiple modules: atomic file writes, IPC file
naming and fire-and-forget task creation with logged failures.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from omniclaw.logger import logger


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Ensures the target file is never partially written: readers either
    see the old content or the complete new content.

    Creates parent directories if they don't exist.
    """
    write_bytes_atomic(path, json.dumps(data, indent=indent).encode())


def write_bytes_atomic(path: Path, content: bytes) -> None:
    """Byte-level variant of :func:`write_json_atomic`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(content)
    tmp.rename(path)


def generate_ipc_filename() -> str:
    """``{ms}-{rand}.json``: sorts chronologically, unique across writers."""
    return f"{int(time.time() * 1000)}-{random.randbytes(3).hex()}.json"


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (container stops, sandbox teardown) where we don't await the result
    but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # exc_info carries the traceback; logger.exception() only works
        # inside an except handler, not a done-callback.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
