"""Type definitions for the agent runner core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

BackendType = Literal["apple-container", "docker", "daytona", "opencode"]
AgentRuntime = Literal["claude-agent-sdk", "opencode"]


@dataclass
class AdditionalMount:
    host_path: str  # Absolute path on host (supports ~)
    container_path: str | None = None  # Defaults to basename, under /workspace/extra/
    readonly: bool = True


@dataclass
class ContainerConfig:
    additional_mounts: list[AdditionalMount] = field(default_factory=list)
    timeout: float | None = None  # Seconds (default: settings.container_timeout)
    memory: int | None = None  # MB (default: settings.container.memory)
    network_mode: Literal["full", "none"] | None = None  # None: "none" unless main

    @classmethod
    def from_dict(cls, raw: dict) -> ContainerConfig:
        return cls(
            additional_mounts=[AdditionalMount(**m) for m in raw.get("additional_mounts", [])],
            timeout=raw.get("timeout"),
            memory=raw.get("memory"),
            network_mode=raw.get("network_mode"),
        )


@dataclass
class RegisteredGroup:
    """A conversation group with its own workspace folder and agent."""

    name: str
    folder: str  # Folder under groups/, unique
    trigger: str  # @mention to activate
    added_at: str = ""
    container_config: ContainerConfig | None = None
    requires_trigger: bool = True
    server_folder: str | None = None  # Shared across channels of one server
    backend: BackendType = "apple-container"
    agent_runtime: AgentRuntime = "claude-agent-sdk"


@dataclass
class ChannelInfo:
    id: str
    jid: str
    name: str


@dataclass
class AgentInput:
    """Everything the agent process needs for one run."""

    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    resume_at: str | None = None
    runtime_folder: str | None = None  # Host-side IPC/session key (defaults to group_folder)
    is_scheduled_task: bool = False
    server_folder: str | None = None
    agent_runtime: AgentRuntime | None = None
    agent_name: str | None = None
    agent_trigger: str | None = None
    channels: list[ChannelInfo] | None = None


@dataclass(frozen=True)
class OutputRecord:
    """One structured result unit emitted by an agent between output markers."""

    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
    chat_jid: str | None = None  # Routing hint for multi-channel agents
    intermediate: bool = False
    resume_at: str | None = None
    # Unknown wire keys, passed through untouched
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@runtime_checkable
class ProcessHandle(Protocol):
    """A running thing that can be killed, real OS process or not.

    ``pid`` is ``0`` for backends without a local process. ``kill()`` must be
    idempotent: the timeout path, explicit shutdown and run cleanup may all
    call it.
    """

    @property
    def pid(self) -> int: ...

    @property
    def killed(self) -> bool: ...

    def kill(self) -> None: ...
