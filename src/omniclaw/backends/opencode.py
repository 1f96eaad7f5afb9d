"""OpenCode backend: one ``opencode serve`` HTTP server per group.

Instead of a container speaking the marker protocol on stdout, each group
gets a long-lived OpenCode server running in its workspace directory. Runs
talk to it over HTTP (sessions + prompts) and the response is fed into the
same LifecycleController as a structured record.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import shutil
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from omniclaw.backends.base import AgentBackend, BackendUnavailableError, OnProcess
from omniclaw.config import get_settings
from omniclaw.container_runner import DetachedProcessHandle, LifecycleController, OnOutput
from omniclaw.container_runner._mounts import resolve_container_timeout
from omniclaw.logger import logger
from omniclaw.path_security import assert_safe_folder
from omniclaw.types import AgentInput, OutputRecord, RegisteredGroup
from omniclaw.utils import create_background_task

# ---------------------------------------------------------------------------
# Port allocation
# ---------------------------------------------------------------------------


class PortAllocator:
    """Hands out server ports from a monotonic counter.

    A port is never handed out twice, so a port still bound by a live (or
    dying) server can't be given to another group.
    """

    def __init__(self, base: int) -> None:
        self._next = base
        self._live: dict[str, int] = {}

    def allocate(self, owner: str) -> int:
        port = self._next
        self._next += 1
        self._live[owner] = port
        return port

    def release(self, owner: str) -> None:
        self._live.pop(owner, None)

    def port_for(self, owner: str) -> int | None:
        return self._live.get(owner)

    @property
    def live(self) -> dict[str, int]:
        return dict(self._live)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class OpenCodeClient:
    """Minimal async client for the OpenCode server API."""

    def __init__(self, base_url: str, *, timeout: float | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(self, method: str, path: str, *, timeout: float | None = None, **kwargs: Any) -> Any:
        req_timeout = aiohttp.ClientTimeout(total=timeout) if timeout is not None else None
        async with self._http().request(
            method, f"{self.base_url}{path}", timeout=req_timeout, **kwargs
        ) as resp:
            resp.raise_for_status()
            if resp.content_type == "application/json":
                return await resp.json()
            text = await resp.text()
            return json.loads(text) if text.strip() else None

    async def health(self, timeout: float = 5.0) -> Any:
        return await self._request("GET", "/global/health", timeout=timeout)

    async def get_session(self, session_id: str) -> Any:
        return await self._request("GET", f"/session/{session_id}")

    async def create_session(self) -> Any:
        return await self._request("POST", "/session", json={})

    async def prompt(self, session_id: str, text: str, *, no_reply: bool = False) -> Any:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if no_reply:
            body["noReply"] = True
        return await self._request("POST", f"/session/{session_id}/message", json=body)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


def extract_response_text(data: Any) -> str | None:
    """Pull the reply text out of a prompt response.

    Known shapes, in order: ``text``; ``content`` as a string;
    ``info.structured_output``; text ``parts``; the last assistant entry of
    ``messages``. Anything else yields None and logs the keys it saw.
    """
    if not isinstance(data, dict):
        return None

    match data:
        case {"text": str(text)} if text:
            return text
        case {"content": str(content)} if content:
            return content
        case {"info": {"structured_output": structured}} if structured:
            return json.dumps(structured)
        case _:
            pass

    parts = data.get("parts")
    if isinstance(parts, list):
        texts = [p["text"] for p in parts if isinstance(p, dict) and p.get("type") == "text" and "text" in p]
        if texts:
            return "\n".join(texts)

    messages = data.get("messages")
    if isinstance(messages, list):
        for msg in reversed(messages):
            if not isinstance(msg, dict) or msg.get("role") != "assistant":
                continue
            content = msg.get("content")
            if isinstance(content, str) and content:
                return content
            if isinstance(content, list):
                text = "\n".join(
                    c["text"] for c in content if isinstance(c, dict) and c.get("type") == "text" and "text" in c
                )
                if text:
                    return text

    logger.debug("Unknown OpenCode result shape", result_keys=sorted(data))
    return None


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


@dataclass
class OpenCodeServer:
    group_folder: str
    port: int
    client: OpenCodeClient
    process: asyncio.subprocess.Process | None = None
    session_id: str | None = None


ClientFactory = Callable[[str], OpenCodeClient]


class OpenCodeBackend(AgentBackend):
    backend_type = "opencode"

    def __init__(
        self,
        port_allocator: PortAllocator | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._ports = port_allocator or PortAllocator(get_settings().opencode.port_base)
        self._client_factory = client_factory or (lambda url: OpenCodeClient(url))
        self._servers: dict[str, OpenCodeServer] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.available = True

    # -- Server management --------------------------------------------------------

    async def _get_server(self, group_folder: str) -> OpenCodeServer:
        """Return a healthy server for the group, (re)starting it if needed."""
        lock = self._locks.setdefault(group_folder, asyncio.Lock())
        async with lock:
            cached = self._servers.get(group_folder)
            if cached is not None:
                try:
                    await cached.client.health(get_settings().opencode.health_timeout)
                    return cached
                except (aiohttp.ClientError, TimeoutError, OSError):
                    logger.info("OpenCode server no longer responsive, restarting", group=group_folder)
                    await self._stop_server(group_folder)

            s = get_settings()
            group_dir = s.groups_dir / assert_safe_folder(group_folder)
            group_dir.mkdir(parents=True, exist_ok=True)
            port = self._ports.allocate(group_folder)
            logger.info("Starting OpenCode server", group=group_folder, port=port, cwd=str(group_dir))

            try:
                process = await self._spawn_server(group_dir, port)
            except OSError:
                self._ports.release(group_folder)
                raise
            server = OpenCodeServer(
                group_folder=group_folder,
                port=port,
                client=self._client_factory(f"http://{s.opencode.hostname}:{port}"),
                process=process,
            )
            self._servers[group_folder] = server
            try:
                await self._wait_healthy(server)
            except Exception:
                await self._stop_server(group_folder)
                raise
            return server

    async def _spawn_server(self, cwd: os.PathLike[str], port: int) -> asyncio.subprocess.Process | None:
        cfg = get_settings().opencode
        env = dict(os.environ)
        if cfg.model:
            env["OPENCODE_CONFIG_CONTENT"] = json.dumps({"model": cfg.model})
        return await asyncio.create_subprocess_exec(
            cfg.command,
            "serve",
            "--port",
            str(port),
            "--hostname",
            cfg.hostname,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def _wait_healthy(self, server: OpenCodeServer) -> None:
        cfg = get_settings().opencode
        deadline = time.monotonic() + cfg.startup_wait
        last_error: Exception | None = None
        while time.monotonic() < deadline:
            if server.process is not None and server.process.returncode is not None:
                raise RuntimeError(f"OpenCode server exited with code {server.process.returncode}")
            try:
                await server.client.health(cfg.health_timeout)
                return
            except (aiohttp.ClientError, TimeoutError, OSError) as exc:
                last_error = exc
            await asyncio.sleep(0.25)
        raise TimeoutError(f"OpenCode server not healthy after {cfg.startup_wait}s: {last_error}")

    async def _stop_server(self, group_folder: str) -> None:
        server = self._servers.pop(group_folder, None)
        self._ports.release(group_folder)
        if server is None:
            return
        await server.client.close()
        proc = server.process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except TimeoutError:
                logger.warning("OpenCode server did not exit, killing", group=group_folder)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        logger.debug("Stopped OpenCode server", group=group_folder, port=server.port)

    # -- Runs ----------------------------------------------------------------------

    async def run_agent(
        self,
        group: RegisteredGroup,
        agent_input: AgentInput,
        on_process: OnProcess,
        on_output: OnOutput | None = None,
    ) -> OutputRecord:
        s = get_settings()
        folder = group.folder
        controller = self._new_controller(
            group, idle_timeout=resolve_container_timeout(group), on_output=on_output
        )
        logger.info("Running agent on OpenCode", group=group.name, is_main=agent_input.is_main)

        try:
            server = await self._get_server(folder)
        except (aiohttp.ClientError, OSError, RuntimeError, TimeoutError, ValueError) as exc:
            return controller.fail(f"Failed to start OpenCode server: {exc}")
        controller.mark_started()

        handle = DetachedProcessHandle(lambda: self._stop_server(folder))
        controller.attach(handle)
        name = f"opencode-{folder}-{int(time.time() * 1000)}"
        failed = await self._announce_process(controller, handle, name, on_process)
        if failed is not None:
            return failed

        group_ipc_dir = s.ipc_dir / folder
        for sub in ("messages", "tasks", "input", "input-task"):
            (group_ipc_dir / sub).mkdir(parents=True, exist_ok=True)

        try:
            session_id = await self._resolve_session(server, agent_input.session_id)
            server.session_id = session_id
            context = self.build_system_context(group, agent_input)
            if context:
                await server.client.prompt(session_id, context, no_reply=True)
            data = await _race_expiry(controller, server.client.prompt(session_id, agent_input.prompt))
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            return await controller.finish(None, error=f"OpenCode agent error: {exc}")

        if data is _EXPIRED:
            return await controller.finish(None)

        text = extract_response_text(data)
        controller.accept_output(
            OutputRecord(status="success", result=text, new_session_id=session_id)
        )
        logger.info(
            "OpenCode agent completed",
            group=group.name,
            session_id=session_id,
            has_result=bool(text),
            duration_ms=round(controller.duration_ms),
        )
        return await controller.finish(0)

    async def _resolve_session(self, server: OpenCodeServer, session_id: str | None) -> str:
        if session_id:
            try:
                existing = await server.client.get_session(session_id)
                if isinstance(existing, dict) and existing.get("id"):
                    return existing["id"]
                return session_id
            except aiohttp.ClientResponseError as exc:
                logger.info("OpenCode session not found, creating a new one", session_id=session_id, status=exc.status)
        created = await server.client.create_session()
        new_id = created.get("id") if isinstance(created, dict) else None
        if not new_id:
            raise ValueError("OpenCode did not return a session id")
        return new_id

    def build_system_context(self, group: RegisteredGroup, agent_input: AgentInput) -> str | None:
        """Group CLAUDE.md, plus the global one for non-main groups."""
        groups_dir = get_settings().groups_dir
        parts = []
        group_md = groups_dir / group.folder / "CLAUDE.md"
        if group_md.exists():
            parts.append(group_md.read_text())
        if not agent_input.is_main:
            global_md = groups_dir / "global" / "CLAUDE.md"
            if global_md.exists():
                parts.append(global_md.read_text())
        if not parts:
            return None
        return "\n\n---\n\n".join(parts)

    # -- IPC ---------------------------------------------------------------------

    async def send_message(self, group_folder: str, text: str, *, chat_jid: str | None = None) -> bool:
        """Prompt the live session directly; fall back to an IPC file."""
        server = self._servers.get(group_folder)
        if server is not None and server.session_id:
            create_background_task(
                self._send_direct(server, text, chat_jid),
                name=f"opencode-send-{group_folder}",
            )
            return True
        return await super().send_message(group_folder, text, chat_jid=chat_jid)

    async def _send_direct(self, server: OpenCodeServer, text: str, chat_jid: str | None) -> None:
        try:
            await server.client.prompt(server.session_id, text)
        except (aiohttp.ClientError, OSError) as exc:
            logger.warning(
                "Failed to send message via OpenCode, falling back to IPC file",
                group=server.group_folder,
                err=str(exc),
            )
            await super().send_message(server.group_folder, text, chat_jid=chat_jid)

    # -- Startup / shutdown --------------------------------------------------------

    async def initialize(self) -> None:
        try:
            _require_binary(get_settings().opencode.command)
        except BackendUnavailableError as exc:
            self.available = False
            logger.warning("OpenCode backend unavailable", err=str(exc))
            return
        logger.info("OpenCode backend initialized")

    async def shutdown(self) -> None:
        """Stop every running OpenCode server."""
        for folder in list(self._servers):
            try:
                await self._stop_server(folder)
            except Exception as exc:
                logger.warning("Error stopping OpenCode server", group=folder, err=str(exc))
        logger.info("OpenCode backend shutdown")

    @property
    def servers(self) -> dict[str, OpenCodeServer]:
        return dict(self._servers)


def _require_binary(command: str) -> str:
    path = shutil.which(command)
    if path is None:
        raise BackendUnavailableError(f"'{command}' not found on PATH. Install OpenCode to enable this backend.")
    return path


_EXPIRED = object()


async def _race_expiry(controller: LifecycleController, request: Awaitable[Any]) -> Any:
    """Await *request* unless the run times out (or is killed) first."""
    request_task = asyncio.ensure_future(request)
    expiry_task = asyncio.ensure_future(controller.wait_expired())
    try:
        done, _ = await asyncio.wait({request_task, expiry_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        expiry_task.cancel()
    if request_task in done:
        return request_task.result()
    request_task.cancel()
    with contextlib.suppress(asyncio.CancelledError, aiohttp.ClientError, OSError):
        await request_task
    return _EXPIRED
