"""Container runtime selection: Apple Container or Docker.

The runtime is chosen by ``container.runtime`` in config ("container" for
Apple Container, "docker" for Docker) and provides the CLI name plus the
runtime-specific bits: listing running containers and stopping them.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from dataclasses import dataclass
from typing import Literal

from omniclaw.config import get_settings
from omniclaw.logger import logger


@dataclass(frozen=True)
class ContainerRuntime:
    """Selected container runtime (Apple Container or Docker)."""

    name: Literal["apple", "docker"]
    cli: str  # "container" or "docker"

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def stop_args(self, container_name: str, grace_seconds: int = 5) -> list[str]:
        return [self.cli, "stop", "-t", str(grace_seconds), container_name]

    async def list_running_containers(self, prefix: str = "omniclaw-") -> list[str]:
        """Return names of running containers matching *prefix*."""
        try:
            if self.name == "apple":
                return await self._list_apple(prefix)
            return await self._list_docker(prefix)
        except Exception as exc:
            logger.warning("Failed to list containers", err=str(exc))
            return []

    async def _list_apple(self, prefix: str) -> list[str]:
        stdout = await _capture(self.cli, "ls", "--format", "json")
        containers = json.loads(stdout or "[]")
        return [
            c["configuration"]["id"]
            for c in containers
            if c.get("status") == "running"
            and c.get("configuration", {}).get("id", "").startswith(prefix)
        ]

    async def _list_docker(self, prefix: str) -> list[str]:
        stdout = await _capture(self.cli, "ps", "--filter", f"name={prefix}", "--format", "{{.Names}}")
        return [name.strip() for name in stdout.splitlines() if name.strip().startswith(prefix)]


async def _capture(*args: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await proc.communicate()
    if proc.returncode != 0:
        raise RuntimeError(f"{' '.join(args)} exited with code {proc.returncode}")
    return stdout.decode(errors="replace")


def get_runtime(backend_type: str | None = None) -> ContainerRuntime:
    """Runtime for *backend_type*, or the one configured in ``container.runtime``."""
    if backend_type is None:
        backend_type = "docker" if get_settings().container.runtime == "docker" else "apple-container"
    if backend_type == "docker":
        return ContainerRuntime(name="docker", cli="docker")
    return ContainerRuntime(name="apple", cli="container")
