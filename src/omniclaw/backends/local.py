"""Local backend: runs agents in Apple Container or Docker on this machine.

One ``<runtime> run -i --rm`` subprocess per agent run. The AgentInput is
written to stdin as JSON, stdout/stderr are pumped into a
LifecycleController, and a run log lands in ``groups/<folder>/logs/``.
"""

from __future__ import annotations

import asyncio
import json

from omniclaw.backends.base import AgentBackend, OnProcess
from omniclaw.config import get_settings
from omniclaw.container_runner import (
    ContainerProcessHandle,
    OnOutput,
    input_to_dict,
    pump_stream,
)
from omniclaw.container_runner._logging import write_run_log
from omniclaw.container_runner._mounts import (
    build_container_args,
    build_volume_mounts,
    make_container_name,
    resolve_container_timeout,
)
from omniclaw.logger import logger
from omniclaw.runtime import ContainerRuntime, get_runtime
from omniclaw.types import AgentInput, BackendType, OutputRecord, RegisteredGroup

_PROBE_TIMEOUT = 60.0


class LocalBackend(AgentBackend):
    def __init__(self, backend_type: BackendType = "apple-container", runtime: ContainerRuntime | None = None) -> None:
        self.backend_type = backend_type
        self.runtime = runtime or get_runtime(backend_type)
        self.available = True

    async def run_agent(
        self,
        group: RegisteredGroup,
        agent_input: AgentInput,
        on_process: OnProcess,
        on_output: OnOutput | None = None,
    ) -> OutputRecord:
        s = get_settings()
        cfg = group.container_config
        controller = self._new_controller(
            group, idle_timeout=resolve_container_timeout(group), on_output=on_output
        )

        try:
            mounts = build_volume_mounts(group, agent_input, self.runtime)
        except (OSError, ValueError) as exc:
            return controller.fail(f"Failed to prepare container mounts: {exc}")

        container_name = make_container_name(group.folder, agent_input.runtime_folder)
        container_args = build_container_args(
            mounts,
            container_name,
            runtime=self.runtime,
            is_main=agent_input.is_main,
            network_mode=cfg.network_mode if cfg else None,
            memory=f"{cfg.memory}M" if cfg and cfg.memory else None,
        )
        log = logger.bind(group=group.name, container=container_name, backend=self.backend_type)
        log.debug(
            "Container mount configuration",
            mounts=[
                f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                for m in mounts
            ],
            container_args=" ".join(container_args),
        )
        log.info("Spawning container agent", is_main=agent_input.is_main, mount_count=len(mounts))

        try:
            proc = await asyncio.create_subprocess_exec(
                self.runtime.cli,
                *container_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return controller.fail(f"Container spawn error: {exc}")

        handle = ContainerProcessHandle(proc, container_name, self.runtime)
        controller.attach(handle)
        failed = await self._announce_process(controller, handle, container_name, on_process)
        if failed is not None:
            return failed

        if proc.stdin is not None:
            proc.stdin.write(json.dumps(input_to_dict(agent_input)).encode())
            try:
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                log.warning("Container closed stdin early", err=str(exc))
            proc.stdin.close()

        await asyncio.gather(
            pump_stream(proc.stdout, controller.feed_stdout),
            pump_stream(proc.stderr, controller.feed_stderr),
        )
        exit_code = await proc.wait()
        controller.cleanup()

        result = await controller.finish(exit_code)
        try:
            write_run_log(
                logs_dir=s.groups_dir / group.folder / "logs",
                group_name=group.name,
                container_name=container_name,
                input_data=agent_input,
                container_args=container_args,
                mounts=mounts,
                state=controller.get_state(),
                duration_ms=controller.duration_ms,
                exit_code=exit_code,
            )
        except OSError as exc:
            log.warning("Failed to write container run log", err=str(exc))
        return result

    # -- Startup -----------------------------------------------------------------

    async def initialize(self) -> None:
        """Make sure the runtime works and stop containers left over from a crash.

        Problems are logged as warnings and mark the backend unavailable; the
        other backends keep working.
        """
        if not self.runtime.is_available():
            self.available = False
            logger.warning("Container runtime not found on PATH", cli=self.runtime.cli)
            return

        if self.runtime.name == "apple":
            # Idempotent start, a fast no-op if already running
            if await _run_quiet(self.runtime.cli, "system", "start") != 0:
                self.available = False
                logger.warning("Failed to start Apple Container system")
                return

        if not await self._probe():
            if self.runtime.name == "docker":
                self.available = False
                logger.warning("Docker container probe failed, check the image exists")
                return
            logger.warning("Container probe failed, performing full restart cycle")
            await _run_quiet(self.runtime.cli, "system", "stop")
            await asyncio.sleep(3)
            await _run_quiet(self.runtime.cli, "system", "start")
            if not await self._probe():
                self.available = False
                logger.warning("Container probe still failing after full restart")
                return
            logger.info("Container probe succeeded after full restart")
        else:
            logger.info("Container system ready (probe passed)")

        await self.cleanup_orphans()

    async def _probe(self) -> bool:
        image = get_settings().container.image
        try:
            proc = await asyncio.create_subprocess_exec(
                self.runtime.cli,
                "run",
                "--rm",
                "--entrypoint",
                "/bin/echo",
                image,
                "ok",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_PROBE_TIMEOUT)
        except (OSError, TimeoutError) as exc:
            logger.warning("Container probe could not run", err=str(exc))
            return False
        return proc.returncode == 0 and stdout.decode(errors="replace").strip() == "ok"

    async def cleanup_orphans(self) -> list[str]:
        """Stop running containers with our name prefix."""
        prefix = get_settings().CONTAINER_NAME_PREFIX
        orphans = await self.runtime.list_running_containers(prefix)
        await asyncio.gather(*(_run_quiet(*self.runtime.stop_args(name)) for name in orphans))
        if orphans:
            logger.info("Stopped orphaned containers", count=len(orphans), names=orphans)
        return orphans


async def _run_quiet(*args: str) -> int | None:
    """Run a CLI command, discarding output. Returns the exit code (None if it failed to start)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        return await proc.wait()
    except OSError as exc:
        logger.warning("Command failed to start", cmd=" ".join(args), err=str(exc))
        return None
