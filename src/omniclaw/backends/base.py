"""Backend interface shared by every way of running an agent.

A backend turns ``run_agent(group, input, ...)`` into a process (or
something that behaves like one), feeds a LifecycleController and returns
the resolved OutputRecord. The host-filesystem IPC and workspace file
operations live here; backends whose workspace is remote override them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from omniclaw.config import get_settings
from omniclaw.container_runner import LifecycleController, OnOutput, OnTimeout
from omniclaw.ipc import write_ipc_close_sentinel, write_ipc_message
from omniclaw.logger import logger
from omniclaw.path_security import assert_path_within, assert_safe_folder
from omniclaw.types import (
    AgentInput,
    BackendType,
    OutputRecord,
    ProcessHandle,
    RegisteredGroup,
)
from omniclaw.utils import write_bytes_atomic

OnProcess = Callable[[ProcessHandle, str], None]


class BackendUnavailableError(RuntimeError):
    """An optional dependency of a backend (SDK, binary) is missing."""


class AgentBackend(ABC):
    backend_type: BackendType

    @abstractmethod
    async def run_agent(
        self,
        group: RegisteredGroup,
        agent_input: AgentInput,
        on_process: OnProcess,
        on_output: OnOutput | None = None,
    ) -> OutputRecord:
        """Run an agent for *group* and return once it has finished."""

    async def initialize(self) -> None:
        """Process-wide setup, called once at startup."""

    async def shutdown(self) -> None:
        """Process-wide teardown."""

    # -- Controller construction ------------------------------------------------

    def _new_controller(
        self,
        group: RegisteredGroup,
        *,
        idle_timeout: float,
        on_output: OnOutput | None,
        on_timeout: OnTimeout | None = None,
    ) -> LifecycleController:
        s = get_settings()
        return LifecycleController(
            group.name,
            startup_timeout=s.startup_timeout,
            idle_timeout=idle_timeout,
            max_output_size=s.container.max_output_size,
            on_output=on_output,
            on_timeout=on_timeout,
            timeout_after_output=s.container.timeout_after_output,
        )

    async def _announce_process(
        self,
        controller: LifecycleController,
        handle: ProcessHandle,
        name: str,
        on_process: OnProcess,
    ) -> OutputRecord | None:
        """Pass the handle to the caller. If the callback raises, stop the run and resolve it."""
        try:
            on_process(handle, name)
        except Exception as exc:
            logger.exception("on_process callback failed", group=controller.group_name)
            controller.kill()
            return await controller.finish(None, error=f"Process callback failed: {exc}")
        return None

    # -- IPC (host filesystem) ---------------------------------------------------

    async def send_message(self, group_folder: str, text: str, *, chat_jid: str | None = None) -> bool:
        """Queue a follow-up message for a running agent. True if it was written."""
        try:
            write_ipc_message(get_settings().ipc_dir, group_folder, text, chat_jid=chat_jid)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to write IPC message", group=group_folder, err=str(exc))
            return False
        return True

    async def close_stdin(self, group_folder: str, input_subdir: str = "input") -> None:
        """Signal a running agent that no more input is coming."""
        try:
            write_ipc_close_sentinel(get_settings().ipc_dir, group_folder, input_subdir)
        except OSError as exc:
            logger.warning("Failed to write close sentinel", group=group_folder, err=str(exc))

    async def write_ipc_data(self, group_folder: str, filename: str, data: str) -> None:
        """Drop a data file (snapshots, registries) into the group's IPC dir."""
        group_ipc_dir = get_settings().ipc_dir / assert_safe_folder(group_folder)
        target = assert_path_within(group_ipc_dir, filename, "ipc data file")
        write_bytes_atomic(target, data.encode())

    # -- Workspace files ---------------------------------------------------------

    def _group_path(self, group_folder: str, relative_path: str) -> Path:
        group_dir = get_settings().groups_dir / assert_safe_folder(group_folder)
        return assert_path_within(group_dir, relative_path, "group file")

    async def read_file(self, group_folder: str, relative_path: str) -> bytes | None:
        """Read a file relative to the group's workspace; None if it is missing."""
        path = self._group_path(group_folder, relative_path)
        try:
            return path.read_bytes()
        except OSError:
            return None

    async def write_file(self, group_folder: str, relative_path: str, content: bytes | str) -> None:
        """Write a file relative to the group's workspace."""
        path = self._group_path(group_folder, relative_path)
        write_bytes_atomic(path, content.encode() if isinstance(content, str) else content)
