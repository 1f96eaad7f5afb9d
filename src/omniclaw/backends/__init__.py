"""Agent backends and the registry that hands them out.

Usage::

    from omniclaw.backends import get_backend, initialize_backends

    await initialize_backends()
    backend = get_backend(group.backend)
    result = await backend.run_agent(group, agent_input, on_process, on_output)
"""

from __future__ import annotations

from omniclaw.backends.base import AgentBackend, BackendUnavailableError, OnProcess
from omniclaw.config import get_settings
from omniclaw.logger import logger, set_log_level

_backends: dict[str, AgentBackend] = {}


def _create_backend(backend_type: str) -> AgentBackend:
    match backend_type:
        case "apple-container" | "docker":
            from omniclaw.backends.local import LocalBackend

            return LocalBackend(backend_type)
        case "daytona":
            from omniclaw.backends.sandbox import SandboxBackend

            return SandboxBackend()
        case "opencode":
            from omniclaw.backends.opencode import OpenCodeBackend

            return OpenCodeBackend()
        case _:
            raise ValueError(f"Unknown backend type: {backend_type}")


def get_backend(backend_type: str) -> AgentBackend:
    """Return the backend for *backend_type*, creating it on first use."""
    backend = _backends.get(backend_type)
    if backend is None:
        backend = _create_backend(backend_type)
        _backends[backend_type] = backend
    return backend


async def initialize_backends(*backend_types: str) -> list[AgentBackend]:
    """Create and initialize backends (the local default when none are named)."""
    set_log_level(get_settings().logging.level)
    if not backend_types:
        runtime = get_settings().container.runtime
        backend_types = ("docker" if runtime == "docker" else "apple-container",)
    initialized = []
    for backend_type in backend_types:
        backend = get_backend(backend_type)
        await backend.initialize()
        initialized.append(backend)
    return initialized


async def shutdown_backends() -> None:
    """Shut down every backend created so far."""
    for backend_type, backend in list(_backends.items()):
        try:
            await backend.shutdown()
        except Exception:
            logger.exception("Backend shutdown failed", backend=backend_type)
    _backends.clear()


def reset_backends() -> None:
    """Forget all created backends (for tests)."""
    _backends.clear()


__all__ = [
    "AgentBackend",
    "BackendUnavailableError",
    "OnProcess",
    "get_backend",
    "initialize_backends",
    "reset_backends",
    "shutdown_backends",
]
