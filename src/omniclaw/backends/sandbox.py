"""Sandbox backend: runs agents in a Daytona cloud sandbox, one per group.

There is no local process: the agent command runs in a sandbox session and
its log stream is fed into the LifecycleController. IPC goes through the
sandbox filesystem, so every file operation here is remote. A
SandboxIpcPoller pulls the agent's outgoing messages/tasks back to the host.

The ``daytona`` SDK is an optional dependency and is imported lazily.
"""

from __future__ import annotations

import asyncio
import json
import posixpath
import shlex
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from omniclaw.backends.base import AgentBackend, BackendUnavailableError, OnProcess
from omniclaw.config import get_settings
from omniclaw.container_runner import DetachedProcessHandle, OnOutput, input_to_dict
from omniclaw.container_runner._mounts import resolve_container_timeout
from omniclaw.ipc import CLOSE_SENTINEL, MAX_IPC_FILE_SIZE, IpcFileError
from omniclaw.logger import logger
from omniclaw.path_security import assert_safe_folder, reject_traversal_segments
from omniclaw.types import AgentInput, OutputRecord, RegisteredGroup
from omniclaw.utils import generate_ipc_filename

StreamCallback = Callable[[str], None]


class RemoteSandbox(Protocol):
    """What the backend needs from a sandbox. Paths are relative to its working dir."""

    async def upload(self, path: str, content: bytes) -> None: ...

    async def download(self, path: str) -> bytes: ...

    async def list_dir(self, path: str) -> list[tuple[str, bool]]: ...

    async def delete(self, path: str) -> None: ...

    async def move(self, src: str, dst: str) -> None: ...

    async def run(self, command: str, on_stdout: StreamCallback, on_stderr: StreamCallback) -> int:
        """Run *command* to completion, streaming its output. Returns the exit code."""
        ...

    async def stop(self) -> None: ...


class SandboxProvider(Protocol):
    async def create(self, name: str) -> RemoteSandbox: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Daytona implementation
# ---------------------------------------------------------------------------


def _import_daytona() -> Any:
    try:
        import daytona
    except ImportError as exc:
        raise BackendUnavailableError(
            "The daytona SDK is not installed. Install with: pip install 'omniclaw[daytona]'"
        ) from exc
    return daytona


class DaytonaSandbox:
    """RemoteSandbox over an ``AsyncSandbox`` from the daytona SDK."""

    def __init__(self, sandbox: Any, name: str) -> None:
        self._sandbox = sandbox
        self.name = name
        self._command: tuple[str, str] | None = None

    async def upload(self, path: str, content: bytes) -> None:
        await self._sandbox.fs.upload_file(content, path)

    async def download(self, path: str) -> bytes:
        return await self._sandbox.fs.download_file(path)

    async def list_dir(self, path: str) -> list[tuple[str, bool]]:
        files = await self._sandbox.fs.list_files(path)
        return [(f.name, bool(f.is_dir)) for f in files]

    async def delete(self, path: str) -> None:
        await self._sandbox.fs.delete_file(path)

    async def move(self, src: str, dst: str) -> None:
        await self._sandbox.fs.move_files(src, dst)

    async def run(self, command: str, on_stdout: StreamCallback, on_stderr: StreamCallback) -> int:
        daytona = _import_daytona()
        process = self._sandbox.process
        session_id = f"{self.name}-{int(time.time() * 1000)}"
        await process.create_session(session_id)
        try:
            resp = await process.execute_session_command(
                session_id, daytona.SessionExecuteRequest(command=command, run_async=True)
            )
            self._command = (session_id, resp.cmd_id)
            await process.get_session_command_logs_async(session_id, resp.cmd_id, on_stdout, on_stderr)
            cmd = await process.get_session_command(session_id, resp.cmd_id)
            return cmd.exit_code if cmd.exit_code is not None else -1
        finally:
            self._command = None
            try:
                await process.delete_session(session_id)
            except Exception as exc:
                logger.debug("Failed to delete sandbox session", sandbox=self.name, err=str(exc))

    async def cancel(self) -> None:
        """Stop the running agent command, if any, by dropping its session."""
        if self._command is None:
            return
        session_id, _ = self._command
        await self._sandbox.process.delete_session(session_id)

    async def stop(self) -> None:
        await self._sandbox.stop()


class DaytonaSandboxProvider:
    """Creates sandboxes through ``AsyncDaytona``; the client is built lazily."""

    def __init__(self) -> None:
        self._client: Any = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is not None:
                return self._client
            daytona = _import_daytona()
            cfg = get_settings().sandbox
            if cfg.api_key is None:
                raise BackendUnavailableError("SANDBOX__API_KEY is not set")
            self._client = daytona.AsyncDaytona(
                daytona.DaytonaConfig(
                    api_key=cfg.api_key.get_secret_value(),
                    api_url=cfg.api_url,
                    target=cfg.target,
                )
            )
        return self._client

    async def create(self, name: str) -> DaytonaSandbox:
        daytona = _import_daytona()
        client = await self._get_client()
        cfg = get_settings().sandbox
        params = daytona.CreateSandboxFromImageParams(
            image=cfg.image,
            labels={"omniclaw-group": name},
        )
        logger.info("Creating Daytona sandbox", sandbox=name, image=cfg.image)
        sandbox = await client.create(params, timeout=120)
        return DaytonaSandbox(sandbox, name)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

_IPC_ROOT = "workspace/ipc"


def _ipc_path(*parts: str) -> str:
    return posixpath.join(_IPC_ROOT, *parts)


class SandboxBackend(AgentBackend):
    backend_type = "daytona"

    def __init__(self, provider: SandboxProvider | None = None) -> None:
        self._provider: SandboxProvider = provider or DaytonaSandboxProvider()
        self._sandboxes: dict[str, RemoteSandbox] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.available = True

    async def get_sandbox(self, group_folder: str) -> RemoteSandbox:
        """Return the group's sandbox, creating it on first use."""
        assert_safe_folder(group_folder)
        lock = self._locks.setdefault(group_folder, asyncio.Lock())
        async with lock:
            sandbox = self._sandboxes.get(group_folder)
            if sandbox is None:
                sandbox = await self._provider.create(f"omniclaw-{group_folder}")
                self._sandboxes[group_folder] = sandbox
            return sandbox

    async def _upload_atomic(self, sandbox: RemoteSandbox, path: str, content: bytes) -> None:
        tmp = f"{path}.tmp"
        await sandbox.upload(tmp, content)
        await sandbox.move(tmp, path)

    # -- Runs ----------------------------------------------------------------------

    async def run_agent(
        self,
        group: RegisteredGroup,
        agent_input: AgentInput,
        on_process: OnProcess,
        on_output: OnOutput | None = None,
    ) -> OutputRecord:
        folder = group.folder
        controller = self._new_controller(
            group, idle_timeout=resolve_container_timeout(group), on_output=on_output
        )
        log = logger.bind(group=group.name, backend=self.backend_type)

        try:
            sandbox = await self.get_sandbox(folder)
        except Exception as exc:
            return controller.fail(f"Failed to start sandbox: {exc}")

        input_name = f"input-{generate_ipc_filename()}"
        try:
            await self._upload_atomic(
                sandbox,
                _ipc_path(input_name),
                json.dumps(input_to_dict(agent_input)).encode(),
            )
        except Exception as exc:
            return controller.fail(f"Failed to upload agent input: {exc}")

        handle = DetachedProcessHandle(lambda: _cancel_command(sandbox))
        controller.attach(handle)
        name = f"daytona-{folder}-{int(time.time() * 1000)}"
        failed = await self._announce_process(controller, handle, name, on_process)
        if failed is not None:
            return failed

        cwd = get_settings().sandbox.working_dir
        input_path = posixpath.join(cwd, _IPC_ROOT, input_name)
        command = f"{get_settings().sandbox.agent_command} < {shlex.quote(input_path)}"
        log.info("Running agent in sandbox", is_main=agent_input.is_main)

        try:
            exit_code = await sandbox.run(command, controller.feed_stdout, controller.feed_stderr)
        except Exception as exc:
            controller.cleanup()
            return await controller.finish(None, error=f"Sandbox agent error: {exc}")
        controller.cleanup()
        return await controller.finish(exit_code)

    # -- IPC (remote) -------------------------------------------------------------

    async def send_message(self, group_folder: str, text: str, *, chat_jid: str | None = None) -> bool:
        data: dict[str, Any] = {"type": "message", "text": text}
        if chat_jid:
            data["chatJid"] = chat_jid
        try:
            sandbox = await self.get_sandbox(group_folder)
            await self._upload_atomic(
                sandbox, _ipc_path("input", generate_ipc_filename()), json.dumps(data).encode()
            )
        except Exception as exc:
            logger.warning("Failed to send message to sandbox", group=group_folder, err=str(exc))
            return False
        return True

    async def close_stdin(self, group_folder: str, input_subdir: str = "input") -> None:
        reject_traversal_segments(input_subdir, "ipc subdir")
        try:
            sandbox = await self.get_sandbox(group_folder)
            await sandbox.upload(_ipc_path(input_subdir, CLOSE_SENTINEL), b"")
        except Exception as exc:
            logger.warning("Failed to write close sentinel to sandbox", group=group_folder, err=str(exc))

    async def write_ipc_data(self, group_folder: str, filename: str, data: str) -> None:
        reject_traversal_segments(filename, "ipc data file")
        sandbox = await self.get_sandbox(group_folder)
        await self._upload_atomic(sandbox, _ipc_path(filename), data.encode())

    async def read_file(self, group_folder: str, relative_path: str) -> bytes | None:
        reject_traversal_segments(relative_path, "group file")
        sandbox = await self.get_sandbox(group_folder)
        try:
            return await sandbox.download(posixpath.join("workspace/group", relative_path))
        except Exception as exc:
            logger.debug("Sandbox file read failed", group=group_folder, path=relative_path, err=str(exc))
            return None

    async def write_file(self, group_folder: str, relative_path: str, content: bytes | str) -> None:
        reject_traversal_segments(relative_path, "group file")
        sandbox = await self.get_sandbox(group_folder)
        await self._upload_atomic(
            sandbox,
            posixpath.join("workspace/group", relative_path),
            content.encode() if isinstance(content, str) else content,
        )

    # -- Startup / shutdown --------------------------------------------------------

    async def initialize(self) -> None:
        if isinstance(self._provider, DaytonaSandboxProvider):
            try:
                _import_daytona()
                if get_settings().sandbox.api_key is None:
                    raise BackendUnavailableError("SANDBOX__API_KEY is not set")
            except BackendUnavailableError as exc:
                self.available = False
                logger.warning("Daytona backend unavailable", err=str(exc))
                return
        logger.info("Daytona backend initialized")

    async def shutdown(self) -> None:
        """Stop every sandbox this backend created."""
        for folder, sandbox in list(self._sandboxes.items()):
            try:
                await sandbox.stop()
            except Exception as exc:
                logger.warning("Error stopping sandbox", group=folder, err=str(exc))
        self._sandboxes.clear()
        await self._provider.close()
        logger.info("Daytona backend shutdown")

    @property
    def sandboxes(self) -> dict[str, RemoteSandbox]:
        return dict(self._sandboxes)


async def _cancel_command(sandbox: RemoteSandbox) -> None:
    cancel = getattr(sandbox, "cancel", None)
    try:
        if cancel is not None:
            await cancel()
        else:
            await sandbox.stop()
    except Exception as exc:
        logger.warning("Failed to stop sandbox command", err=str(exc))


# ---------------------------------------------------------------------------
# IPC poller
# ---------------------------------------------------------------------------

IpcHandler = Callable[[str, str, dict[str, Any]], Awaitable[None]]


class SandboxIpcPoller:
    """Pulls the agent's outgoing IPC files out of each group's sandbox.

    Files in ``workspace/ipc/messages`` and ``workspace/ipc/tasks`` are
    handled in name order, then deleted. Oversized or malformed files, and
    files whose handler raises, are moved to ``workspace/ipc/errors``.
    """

    SUBDIRS = ("messages", "tasks")

    def __init__(self, backend: SandboxBackend, handler: IpcHandler, interval: float | None = None) -> None:
        self._backend = backend
        self._handler = handler
        self._interval = interval if interval is not None else get_settings().intervals.ipc_poll
        self._task: asyncio.Task[None] | None = None

    async def poll_once(self) -> int:
        """One pass over every live sandbox. Returns how many files were handled."""
        handled = 0
        for folder, sandbox in self._backend.sandboxes.items():
            for subdir in self.SUBDIRS:
                handled += await self._drain(folder, sandbox, subdir)
        return handled

    async def _drain(self, folder: str, sandbox: RemoteSandbox, subdir: str) -> int:
        directory = _ipc_path(subdir)
        try:
            entries = await sandbox.list_dir(directory)
        except Exception as exc:
            if "not found" not in str(exc).lower() and "404" not in str(exc):
                logger.warning("Failed to list sandbox IPC dir", group=folder, dir=directory, err=str(exc))
            return 0

        handled = 0
        for name in sorted(n for n, is_dir in entries if not is_dir and n.endswith(".json")):
            path = posixpath.join(directory, name)
            try:
                raw = await sandbox.download(path)
                if len(raw) > MAX_IPC_FILE_SIZE:
                    raise IpcFileError(f"file too large ({len(raw)} > {MAX_IPC_FILE_SIZE} bytes)")
                data = json.loads(raw)
                if not isinstance(data, dict) or not isinstance(data.get("type"), str):
                    raise IpcFileError("IPC file is not an object with a 'type' field")
                await self._handler(folder, subdir, data)
                await sandbox.delete(path)
                handled += 1
            except Exception as exc:
                logger.error("Error processing sandbox IPC file", group=folder, file=name, err=str(exc))
                await self._quarantine(folder, sandbox, path, f"{subdir}-{name}")
        return handled

    async def _quarantine(self, folder: str, sandbox: RemoteSandbox, path: str, name: str) -> None:
        try:
            await sandbox.move(path, _ipc_path("errors", name))
        except Exception as exc:
            logger.error("Failed to quarantine sandbox IPC file", group=folder, file=path, err=str(exc))

    async def _loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Sandbox IPC poll failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="sandbox-ipc-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
