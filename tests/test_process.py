"""Tests for process handles, graceful stop and runtime selection."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import make_settings

from omniclaw.config import ContainerConfig
from omniclaw.container_runner import (
    ContainerProcessHandle,
    DetachedProcessHandle,
    graceful_stop,
    pump_stream,
)
from omniclaw.runtime import ContainerRuntime, get_runtime
from omniclaw.types import ProcessHandle

DOCKER = ContainerRuntime(name="docker", cli="docker")


class _Proc:
    def __init__(self, exits_on_stop: bool = True) -> None:
        self.pid = 99
        self.returncode: int | None = None
        self.kill = MagicMock()
        self._exits_on_stop = exits_on_stop
        self._done = asyncio.Event()

    def finish(self, code: int) -> None:
        self.returncode = code
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        return self.returncode  # type: ignore[return-value]


class TestDetachedProcessHandle:
    def test_pid_zero_and_kill_flag(self):
        handle = DetachedProcessHandle()
        assert handle.pid == 0
        assert not handle.killed
        handle.kill()
        assert handle.killed
        assert isinstance(handle, ProcessHandle)

    def test_sync_teardown_runs_once(self):
        teardown = MagicMock(return_value=None)
        handle = DetachedProcessHandle(teardown)
        handle.kill()
        handle.kill()
        teardown.assert_called_once()

    async def test_async_teardown_scheduled(self):
        done = asyncio.Event()

        async def teardown() -> None:
            done.set()

        DetachedProcessHandle(teardown).kill()
        await asyncio.wait_for(done.wait(), 1)


class TestContainerProcessHandle:
    async def test_kill_runs_graceful_stop_once(self):
        proc = _Proc()
        stop = AsyncMock()
        with patch("omniclaw.container_runner._process.graceful_stop", stop):
            handle = ContainerProcessHandle(proc, "omniclaw-x-1", DOCKER)  # type: ignore[arg-type]
            handle.kill()
            handle.kill()
            await handle.stop_task
        assert handle.killed
        assert handle.pid == 99
        stop.assert_awaited_once_with(proc, "omniclaw-x-1", DOCKER)


class TestGracefulStop:
    async def test_stop_command_ends_process(self):
        proc = _Proc()
        stop_proc = MagicMock()

        async def _stop_wait() -> int:
            proc.finish(137)
            return 0

        stop_proc.wait = _stop_wait
        calls: list[tuple] = []

        async def _fake_exec(*args: Any, **kwargs: Any) -> MagicMock:
            calls.append(args)
            return stop_proc

        with patch("omniclaw.container_runner._process.asyncio.create_subprocess_exec", _fake_exec):
            await graceful_stop(proc, "omniclaw-x-1", DOCKER)  # type: ignore[arg-type]

        assert calls == [("docker", "stop", "-t", "5", "omniclaw-x-1")]
        proc.kill.assert_not_called()

    async def test_stop_command_failure_kills(self):
        proc = _Proc()

        async def _boom(*args: Any, **kwargs: Any) -> None:
            raise FileNotFoundError("docker")

        with patch("omniclaw.container_runner._process.asyncio.create_subprocess_exec", _boom):
            await graceful_stop(proc, "omniclaw-x-1", DOCKER)  # type: ignore[arg-type]

        proc.kill.assert_called_once()


class TestPumpStream:
    async def test_reads_until_eof(self):
        stream = asyncio.StreamReader()
        stream.feed_data(b"abc")
        stream.feed_data(b"def")
        stream.feed_eof()
        chunks: list[bytes] = []
        await pump_stream(stream, chunks.append)
        assert b"".join(chunks) == b"abcdef"

    async def test_none_stream(self):
        await pump_stream(None, lambda chunk: None)


class TestRuntime:
    def test_backend_type_selects_runtime(self):
        assert get_runtime("docker") == ContainerRuntime(name="docker", cli="docker")
        assert get_runtime("apple-container") == ContainerRuntime(name="apple", cli="container")

    def test_config_selects_runtime(self):
        s = make_settings(container=ContainerConfig(runtime="docker"))
        with patch("omniclaw.config._settings", s):
            assert get_runtime().cli == "docker"

    async def test_list_docker_containers(self):
        with patch("omniclaw.runtime._capture", AsyncMock(return_value="omniclaw-a-1\nother\nomniclaw-b-2\n")):
            names = await DOCKER.list_running_containers("omniclaw-")
        assert names == ["omniclaw-a-1", "omniclaw-b-2"]

    async def test_list_apple_containers(self):
        payload = (
            '[{"status": "running", "configuration": {"id": "omniclaw-a-1"}},'
            ' {"status": "stopped", "configuration": {"id": "omniclaw-b-2"}},'
            ' {"status": "running", "configuration": {"id": "unrelated"}}]'
        )
        apple = ContainerRuntime(name="apple", cli="container")
        with patch("omniclaw.runtime._capture", AsyncMock(return_value=payload)):
            assert await apple.list_running_containers("omniclaw-") == ["omniclaw-a-1"]

    async def test_list_failure_returns_empty(self):
        with patch("omniclaw.runtime._capture", AsyncMock(side_effect=RuntimeError("daemon down"))):
            assert await DOCKER.list_running_containers() == []
