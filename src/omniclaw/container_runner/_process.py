"""Process handles and stream pumping.

Provides:
  - ContainerProcessHandle: wraps a local ``container run`` subprocess
  - DetachedProcessHandle: stand-in for backends with no local process
  - graceful_stop(): stops a container gracefully with fallback to kill
  - pump_stream(): reads a subprocess pipe into a feed callback
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from omniclaw.logger import logger
from omniclaw.runtime import ContainerRuntime
from omniclaw.utils import create_background_task

READ_CHUNK_SIZE = 8192


class ContainerProcessHandle:
    """ProcessHandle for a local container subprocess.

    ``kill()`` asks the runtime to stop the container (which ends the
    attached ``run`` process) and falls back to killing the CLI process.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        container_name: str,
        runtime: ContainerRuntime,
    ) -> None:
        self._proc = proc
        self.container_name = container_name
        self._runtime = runtime
        self._killed = False
        self.stop_task: asyncio.Task[Any] | None = None

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def killed(self) -> bool:
        return self._killed

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self.stop_task = create_background_task(
            graceful_stop(self._proc, self.container_name, self._runtime),
            name=f"stop-{self.container_name}",
        )


class DetachedProcessHandle:
    """ProcessHandle for sandbox and server backends.

    ``pid`` is always ``0``. ``kill()`` flips the flag and runs the
    backend's teardown once; an async teardown runs as a background task.
    """

    def __init__(self, teardown: Callable[[], Awaitable[None] | None] | None = None) -> None:
        self._teardown = teardown
        self._killed = False

    @property
    def pid(self) -> int:
        return 0

    @property
    def killed(self) -> bool:
        return self._killed

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        if self._teardown is None:
            return
        result = self._teardown()
        if inspect.isawaitable(result):
            create_background_task(_await(result), name="detached-teardown")


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable


async def graceful_stop(
    proc: asyncio.subprocess.Process,
    container_name: str,
    runtime: ContainerRuntime,
) -> None:
    """Stop container gracefully with short timeout, fallback to kill."""
    try:
        stop_proc = await asyncio.create_subprocess_exec(
            *runtime.stop_args(container_name),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(stop_proc.wait(), timeout=7.0)
        except TimeoutError:
            logger.warning("Graceful stop timed out, force killing", container=container_name)
            _kill_quietly(proc)
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=15.0)
            except TimeoutError:
                logger.warning(
                    "Container stop did not end the run process, force killing",
                    container=container_name,
                )
                _kill_quietly(proc)
    except Exception as exc:
        logger.exception(
            "Graceful stop failed, force killing",
            container=container_name,
            error=str(exc),
        )
        _kill_quietly(proc)


def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
    # Already exited between the check and the kill
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def pump_stream(
    stream: asyncio.StreamReader | None,
    feed: Callable[[bytes], object],
) -> None:
    """Read *stream* until EOF, handing each chunk to *feed*."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        feed(chunk)
