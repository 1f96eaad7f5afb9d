"""Tests for the local container backend. Uses FakeProcess to simulate subprocess behavior."""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_settings

from omniclaw.backends.local import LocalBackend
from omniclaw.config import ContainerConfig as ContainerSettings
from omniclaw.container_runner import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from omniclaw.container_runner._mounts import (
    build_container_args,
    build_volume_mounts,
    make_container_name,
    resolve_container_timeout,
)
from omniclaw.path_security import PathTraversalError
from omniclaw.runtime import ContainerRuntime
from omniclaw.types import (
    AdditionalMount,
    AgentInput,
    ContainerConfig,
    OutputRecord,
    RegisteredGroup,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

DOCKER = ContainerRuntime(name="docker", cli="docker")
APPLE = ContainerRuntime(name="apple", cli="container")

TEST_GROUP = RegisteredGroup(
    name="Test Group",
    folder="test-group",
    trigger="@omniclaw",
    added_at="2024-01-01T00:00:00.000Z",
)

TEST_INPUT = AgentInput(
    prompt="Hello",
    group_folder="test-group",
    chat_jid="test@g.us",
    is_main=False,
)


def _unit(**payload: Any) -> bytes:
    return f"{OUTPUT_START_MARKER}\n{json.dumps(payload)}\n{OUTPUT_END_MARKER}\n".encode()


class FakeStdin:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Simulates asyncio.subprocess.Process for testing."""

    def __init__(self) -> None:
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()
        self.pid = 12345
        self._killed = False

    def emit_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def emit_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def close(self, code: int = 0) -> None:
        """Simulate process exit."""
        if self._returncode is not None:
            return
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def kill(self) -> None:
        self._killed = True

    @property
    def returncode(self) -> int | None:
        return self._returncode


@contextlib.contextmanager
def _patch_settings(tmp_path: Path, **overrides: Any):
    """Point the Settings singleton at *tmp_path*."""
    s = make_settings(project_root=tmp_path, **overrides)
    with patch("omniclaw.config._settings", s):
        yield s


@contextlib.contextmanager
def _patch_subprocess(fake_proc: FakeProcess, calls: list | None = None):
    async def _fake_create(*args: Any, **kwargs: Any) -> FakeProcess:
        assert kwargs.get("stdin") == asyncio.subprocess.PIPE
        if calls is not None:
            calls.append(args)
        return fake_proc

    with patch("omniclaw.backends.local.asyncio.create_subprocess_exec", _fake_create):
        yield


@pytest.fixture
async def fake_proc():
    """Must be async so StreamReader is created on the test's event loop."""
    return FakeProcess()


async def _start_run(backend: LocalBackend, on_output=None, group=TEST_GROUP, agent_input=TEST_INPUT):
    processes: list[tuple[Any, str]] = []
    task = asyncio.create_task(
        backend.run_agent(group, agent_input, lambda h, name: processes.append((h, name)), on_output)
    )
    # Let run_agent reach the stream pumps
    for _ in range(5):
        await asyncio.sleep(0)
    return task, processes


# ---------------------------------------------------------------------------
# run_agent with FakeProcess
# ---------------------------------------------------------------------------


class TestRunAgent:
    async def test_streamed_output_resolves_success(self, tmp_path, fake_proc):
        delivered: list[OutputRecord] = []

        async def on_output(record: OutputRecord) -> None:
            delivered.append(record)

        calls: list = []
        with _patch_settings(tmp_path), _patch_subprocess(fake_proc, calls):
            backend = LocalBackend("docker", runtime=DOCKER)
            task, processes = await _start_run(backend, on_output)
            fake_proc.emit_stderr(b"agent starting\n")
            fake_proc.emit_stdout(b"some log\n" + _unit(status="success", result="Hi!", newSessionId="s-1"))
            await asyncio.sleep(0.01)
            fake_proc.close(0)
            result = await asyncio.wait_for(task, 2)

        assert result.status == "success"
        assert result.result == "Hi!"
        assert result.new_session_id == "s-1"
        assert [r.result for r in delivered] == ["Hi!"]

        cli, *args = calls[0]
        assert cli == "docker"
        assert args[:3] == ["run", "-i", "--rm"]
        assert args[-1] == "omniclaw-agent:latest"

        handle, name = processes[0]
        assert name.startswith("omniclaw-test-group-")
        assert handle.pid == 12345

        sent = json.loads(fake_proc.stdin.data)
        assert sent["prompt"] == "Hello"
        assert sent["groupFolder"] == "test-group"
        assert fake_proc.stdin.closed

        logs = list((tmp_path / "groups" / "test-group" / "logs").glob("container-*.log"))
        assert len(logs) == 1

    async def test_nonzero_exit_without_output(self, tmp_path, fake_proc):
        with _patch_settings(tmp_path), _patch_subprocess(fake_proc):
            backend = LocalBackend("docker", runtime=DOCKER)
            task, _ = await _start_run(backend, AsyncMock())
            fake_proc.emit_stderr(b"Error: image not found\n")
            fake_proc.close(125)
            result = await asyncio.wait_for(task, 2)

        assert result.status == "error"
        assert "code 125" in result.error
        assert "image not found" in result.error

    async def test_output_then_killed_exit_is_success(self, tmp_path, fake_proc):
        with _patch_settings(tmp_path), _patch_subprocess(fake_proc):
            backend = LocalBackend("docker", runtime=DOCKER)
            task, _ = await _start_run(backend, AsyncMock())
            fake_proc.emit_stdout(_unit(status="success", result="done"))
            await asyncio.sleep(0.01)
            fake_proc.close(137)
            result = await asyncio.wait_for(task, 2)

        assert result.status == "success"
        assert result.result == "done"

    async def test_no_callback_mode_parses_stdout(self, tmp_path, fake_proc):
        with _patch_settings(tmp_path), _patch_subprocess(fake_proc):
            backend = LocalBackend("docker", runtime=DOCKER)
            task, _ = await _start_run(backend, None)
            fake_proc.emit_stdout(_unit(status="success", result="final"))
            fake_proc.close(0)
            result = await asyncio.wait_for(task, 2)

        assert result.result == "final"

    async def test_spawn_error(self, tmp_path):
        async def _boom(*args: Any, **kwargs: Any) -> None:
            raise FileNotFoundError("docker")

        with _patch_settings(tmp_path), patch("omniclaw.backends.local.asyncio.create_subprocess_exec", _boom):
            backend = LocalBackend("docker", runtime=DOCKER)
            result = await backend.run_agent(TEST_GROUP, TEST_INPUT, lambda h, n: None, AsyncMock())

        assert result.status == "error"
        assert "Container spawn error" in result.error

    async def test_failing_process_callback_stops_run(self, tmp_path, fake_proc):
        stopped: list[str] = []

        async def _fake_stop(proc, name, runtime):
            stopped.append(name)
            proc.close(137)

        def _explode(handle, name):
            raise RuntimeError("registry full")

        with (
            _patch_settings(tmp_path),
            _patch_subprocess(fake_proc),
            patch("omniclaw.container_runner._process.graceful_stop", _fake_stop),
        ):
            backend = LocalBackend("docker", runtime=DOCKER)
            result = await asyncio.wait_for(backend.run_agent(TEST_GROUP, TEST_INPUT, _explode, AsyncMock()), 2)
            await asyncio.sleep(0.01)

        assert result.status == "error"
        assert "Process callback failed: registry full" in result.error
        assert fake_proc.stdin.data == b""
        assert len(stopped) == 1

    async def test_startup_timeout_stops_container(self, tmp_path, fake_proc):
        container = ContainerSettings(startup_timeout_ms=50)

        async def _fake_stop(proc, name, runtime):
            proc.close(137)

        with (
            _patch_settings(tmp_path, container=container, startup_timeout=0.05),
            _patch_subprocess(fake_proc),
            patch("omniclaw.container_runner._process.graceful_stop", _fake_stop),
        ):
            backend = LocalBackend("docker", runtime=DOCKER)
            task, processes = await _start_run(backend, AsyncMock())
            result = await asyncio.wait_for(task, 2)

        assert result.status == "error"
        assert "during startup" in result.error
        assert processes[0][0].killed

    async def test_invalid_folder_fails_before_spawn(self, tmp_path, fake_proc):
        bad_group = RegisteredGroup(name="Bad", folder="../escape", trigger="@x")
        calls: list = []
        with _patch_settings(tmp_path), _patch_subprocess(fake_proc, calls):
            backend = LocalBackend("docker", runtime=DOCKER)
            result = await backend.run_agent(bad_group, TEST_INPUT, lambda h, n: None)

        assert result.status == "error"
        assert "mounts" in result.error
        assert calls == []


# ---------------------------------------------------------------------------
# Mounts and args
# ---------------------------------------------------------------------------


class TestMounts:
    def test_non_main_group(self, tmp_path):
        (tmp_path / "groups" / "global").mkdir(parents=True)
        with _patch_settings(tmp_path):
            mounts = build_volume_mounts(TEST_GROUP, TEST_INPUT, DOCKER)

        targets = {m.container_path: m for m in mounts}
        assert "/workspace/project" not in targets
        assert targets["/workspace/group"].readonly is False
        assert targets["/workspace/global"].readonly is True
        assert "/home/bun/.claude" in targets
        assert "/workspace/ipc" in targets
        ipc = Path(targets["/workspace/ipc"].host_path)
        for sub in ("messages", "tasks", "input", "input-task"):
            assert (ipc / sub).is_dir()
        settings_json = Path(targets["/home/bun/.claude"].host_path) / "settings.json"
        assert json.loads(settings_json.read_text())["env"]

    def test_main_group_gets_project_read_only(self, tmp_path):
        (tmp_path / ".env").write_text("ANTHROPIC_API_KEY=sk-test\nUNRELATED=1\n")
        main_input = AgentInput(prompt="x", group_folder="main", chat_jid="c", is_main=True)
        main_group = RegisteredGroup(name="Main", folder="main", trigger="@x")
        with _patch_settings(tmp_path):
            mounts = build_volume_mounts(main_group, main_input, DOCKER)

        targets = {m.container_path: m for m in mounts}
        assert targets["/workspace/project"].readonly is True
        assert targets["/workspace/project/.env"].host_path == "/dev/null"
        env_file = Path(targets["/workspace/env-dir"].host_path) / "env"
        assert env_file.read_text() == "ANTHROPIC_API_KEY=sk-test\n"

    def test_env_shadow_only_on_docker(self, tmp_path):
        (tmp_path / ".env").write_text("X=1\n")
        main_input = AgentInput(prompt="x", group_folder="main", chat_jid="c", is_main=True)
        main_group = RegisteredGroup(name="Main", folder="main", trigger="@x")
        with _patch_settings(tmp_path):
            mounts = build_volume_mounts(main_group, main_input, APPLE)
        assert all(m.container_path != "/workspace/project/.env" for m in mounts)

    def test_additional_mounts_forced_read_only_for_non_main(self, tmp_path):
        shared = tmp_path / "shared"
        shared.mkdir()
        group = RegisteredGroup(
            name="G",
            folder="g",
            trigger="@x",
            container_config=ContainerConfig(
                additional_mounts=[
                    AdditionalMount(host_path=str(shared), readonly=False),
                    AdditionalMount(host_path=str(tmp_path / "missing")),
                    AdditionalMount(host_path=str(shared), container_path="../../etc"),
                ]
            ),
        )
        with _patch_settings(tmp_path):
            mounts = build_volume_mounts(group, TEST_INPUT, DOCKER)
        extra = [m for m in mounts if m.container_path.startswith("/workspace/extra")]
        assert len(extra) == 1
        assert extra[0].container_path == "/workspace/extra/shared"
        assert extra[0].readonly is True

    def test_runtime_folder_isolates_ipc(self, tmp_path):
        task_input = AgentInput(
            prompt="x", group_folder="test-group", chat_jid="c", is_main=False, runtime_folder="test-group-task"
        )
        with _patch_settings(tmp_path):
            mounts = build_volume_mounts(TEST_GROUP, task_input, DOCKER)
        ipc = next(m for m in mounts if m.container_path == "/workspace/ipc")
        assert Path(ipc.host_path).name == "test-group-task"

    def test_server_folder_traversal_rejected(self, tmp_path):
        group = RegisteredGroup(name="G", folder="g", trigger="@x", server_folder="../../etc")
        with _patch_settings(tmp_path), pytest.raises(PathTraversalError):
            build_volume_mounts(group, TEST_INPUT, DOCKER)


class TestContainerArgs:
    def test_docker_non_main_isolated(self, tmp_path):
        with _patch_settings(tmp_path):
            args = build_container_args([], "omniclaw-x-1", runtime=DOCKER, is_main=False)
        assert args[args.index("--network") + 1] == "none"
        assert "--pids-limit" in args
        assert args[args.index("--memory") + 1] == "4G"
        assert "TZ=UTC" in args

    def test_docker_main_has_network(self, tmp_path):
        with _patch_settings(tmp_path):
            args = build_container_args([], "n", runtime=DOCKER, is_main=True)
        assert "--network" not in args

    def test_apple_has_no_docker_flags(self, tmp_path):
        with _patch_settings(tmp_path):
            args = build_container_args([], "n", runtime=APPLE, is_main=False, memory="512M")
        assert "--pids-limit" not in args
        assert args[args.index("--memory") + 1] == "512M"

    def test_mount_flags(self, tmp_path):
        from omniclaw.types import VolumeMount

        mounts = [VolumeMount("/a", "/workspace/a", readonly=True), VolumeMount("/b", "/workspace/b")]
        with _patch_settings(tmp_path):
            args = build_container_args(mounts, "n", runtime=DOCKER, is_main=True)
        assert "type=bind,source=/a,target=/workspace/a,readonly" in args
        assert "/b:/workspace/b" in args


class TestNamingAndTimeouts:
    def test_container_name(self):
        name = make_container_name("team/alpha")
        assert name.startswith("omniclaw-team-alpha-")

    def test_runtime_folder_adds_digest(self):
        a = make_container_name("grp", "grp-task-1")
        b = make_container_name("grp", "grp-task-2")
        assert "-d" in a
        assert a.rsplit("-", 1)[0] != b.rsplit("-", 1)[0]

    def test_timeout_floor_is_idle_plus_30(self, tmp_path):
        group = RegisteredGroup(name="G", folder="g", trigger="@x", container_config=ContainerConfig(timeout=10))
        with _patch_settings(tmp_path, idle_timeout=100.0):
            assert resolve_container_timeout(group) == 130.0

    def test_group_timeout_overrides_global(self, tmp_path):
        group = RegisteredGroup(name="G", folder="g", trigger="@x", container_config=ContainerConfig(timeout=900))
        with _patch_settings(tmp_path, idle_timeout=60.0, container_timeout=300.0):
            assert resolve_container_timeout(group) == 900


# ---------------------------------------------------------------------------
# Startup and host-side IPC / files
# ---------------------------------------------------------------------------


class TestInitialize:
    async def test_missing_cli_marks_unavailable(self, tmp_path):
        runtime = ContainerRuntime(name="docker", cli="definitely-not-a-real-cli")
        backend = LocalBackend("docker", runtime=runtime)
        await backend.initialize()
        assert backend.available is False

    async def test_cleanup_orphans_stops_prefixed(self, tmp_path):
        backend = LocalBackend("docker", runtime=DOCKER)
        stopped: list[tuple] = []

        async def _fake_run_quiet(*args: str) -> int:
            stopped.append(args)
            return 0

        with (
            patch.object(ContainerRuntime, "list_running_containers", AsyncMock(return_value=["omniclaw-a-1"])),
            patch("omniclaw.backends.local._run_quiet", _fake_run_quiet),
        ):
            orphans = await backend.cleanup_orphans()

        assert orphans == ["omniclaw-a-1"]
        assert stopped == [("docker", "stop", "-t", "5", "omniclaw-a-1")]

    async def test_probe_failure_on_docker_marks_unavailable(self, tmp_path):
        backend = LocalBackend("docker", runtime=DOCKER)
        with (
            patch.object(ContainerRuntime, "is_available", return_value=True),
            patch.object(LocalBackend, "_probe", AsyncMock(return_value=False)),
        ):
            await backend.initialize()
        assert backend.available is False


class TestHostFiles:
    async def test_send_message_and_close(self, tmp_path):
        with _patch_settings(tmp_path) as s:
            backend = LocalBackend("docker", runtime=DOCKER)
            assert await backend.send_message("grp", "follow up", chat_jid="c@g.us")
            await backend.close_stdin("grp")
            input_dir = s.ipc_dir / "grp" / "input"
            files = sorted(p.name for p in input_dir.iterdir())
        assert "_close" in files
        msg = next(p for p in input_dir.iterdir() if p.suffix == ".json")
        assert json.loads(msg.read_text())["text"] == "follow up"

    async def test_send_message_invalid_folder_returns_false(self, tmp_path):
        with _patch_settings(tmp_path):
            backend = LocalBackend("docker", runtime=DOCKER)
            assert await backend.send_message("../bad", "x") is False

    async def test_write_ipc_data(self, tmp_path):
        with _patch_settings(tmp_path) as s:
            backend = LocalBackend("docker", runtime=DOCKER)
            await backend.write_ipc_data("grp", "current_tasks.json", "[]")
            assert (s.ipc_dir / "grp" / "current_tasks.json").read_text() == "[]"
            with pytest.raises(PathTraversalError):
                await backend.write_ipc_data("grp", "../../x.json", "{}")

    async def test_read_write_file(self, tmp_path):
        with _patch_settings(tmp_path):
            backend = LocalBackend("docker", runtime=DOCKER)
            await backend.write_file("grp", "notes/todo.md", "buy milk")
            assert await backend.read_file("grp", "notes/todo.md") == b"buy milk"
            assert await backend.read_file("grp", "missing.md") is None
            with pytest.raises(PathTraversalError):
                await backend.read_file("grp", "../other/secret")
