"""Volume mount list construction and container CLI arg building."""

from __future__ import annotations

import hashlib
import json
import os
import time
from pathlib import Path

from omniclaw.config import get_settings
from omniclaw.logger import logger
from omniclaw.path_security import assert_path_within, assert_safe_folder
from omniclaw.runtime import ContainerRuntime
from omniclaw.types import AdditionalMount, AgentInput, RegisteredGroup, VolumeMount

# Variables copied from the project .env into the container's env-dir.
_ALLOWED_ENV_VARS = (
    "CLAUDE_CODE_OAUTH_TOKEN",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "GITHUB_TOKEN",
    "GIT_AUTHOR_NAME",
    "GIT_AUTHOR_EMAIL",
    "CLAUDE_MODEL",
    "OPENCODE_MODEL",
    "OPENCODE_PROVIDER",
    "OPENCODE_MODEL_ID",
)

_SESSION_SETTINGS = {
    "env": {
        "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS": "1",
        "CLAUDE_CODE_ADDITIONAL_DIRECTORIES_CLAUDE_MD": "1",
        "CLAUDE_CODE_DISABLE_AUTO_MEMORY": "0",
    }
}

# The agent image runs as uid 1000; matching host users need no --user.
_CONTAINER_UID = 1000


def resolve_container_timeout(group: RegisteredGroup) -> float:
    """Return the hard idle timeout in seconds for a run.

    Per-group ``container_config.timeout`` takes priority over the global
    ``container.timeout_ms``; either way it is at least the idle timeout plus
    30s so the agent's own idle shutdown gets a chance to run first.
    """
    s = get_settings()
    configured = s.container_timeout
    if group.container_config and group.container_config.timeout:
        configured = group.container_config.timeout
    return max(configured, s.idle_timeout + 30)


def make_container_name(group_folder: str, runtime_folder: str | None = None) -> str:
    """Timestamped container name; a digest keeps runtime folders apart."""
    safe_name = "".join(c if c.isalnum() or c == "-" else "-" for c in group_folder)[:24]
    prefix = get_settings().CONTAINER_NAME_PREFIX
    ms = int(time.time() * 1000)
    if not runtime_folder or runtime_folder == group_folder:
        return f"{prefix}{safe_name}-{ms}"
    digest = hashlib.sha1(runtime_folder.encode()).hexdigest()[:8]
    return f"{prefix}{safe_name}-d{digest}-{ms}"


def build_volume_mounts(
    group: RegisteredGroup,
    agent_input: AgentInput,
    runtime: ContainerRuntime,
) -> list[VolumeMount]:
    """Build the mount list for a container invocation.

    Main gets the project root read-only plus its group folder. Other groups
    get their own folder, the shared ``global`` folder read-only and their
    server folder when one is set. Every group gets an isolated sessions dir
    and IPC namespace.
    """
    s = get_settings()
    mounts: list[VolumeMount] = []
    folder = assert_safe_folder(group.folder)
    runtime_folder = assert_safe_folder(agent_input.runtime_folder or folder, "runtime folder")

    group_dir = assert_path_within(s.groups_dir, folder, "group folder")
    group_dir.mkdir(parents=True, exist_ok=True)

    if agent_input.is_main:
        mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=True))
        # Apple Container only supports directory mounts
        if (s.project_root / ".env").exists() and runtime.name == "docker":
            mounts.append(VolumeMount("/dev/null", "/workspace/project/.env", readonly=True))
        mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))
    else:
        mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))
        global_dir = s.groups_dir / "global"
        if global_dir.exists():
            mounts.append(VolumeMount(str(global_dir), "/workspace/global", readonly=True))
        if group.server_folder:
            server_dir = assert_path_within(s.groups_dir, group.server_folder, "server folder")
            if server_dir.exists():
                mounts.append(VolumeMount(str(server_dir), "/workspace/server", readonly=False))

    session_dir = assert_path_within(s.sessions_dir, f"{runtime_folder}/.claude", "sessions directory")
    session_dir.mkdir(parents=True, exist_ok=True)
    settings_file = session_dir / "settings.json"
    if not settings_file.exists():
        settings_file.write_text(json.dumps(_SESSION_SETTINGS, indent=2) + "\n")
    mounts.append(VolumeMount(str(session_dir), "/home/bun/.claude", readonly=False))

    group_ipc_dir = assert_path_within(s.ipc_dir, runtime_folder, "IPC directory")
    for sub in ("messages", "tasks", "input", "input-task"):
        (group_ipc_dir / sub).mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(str(group_ipc_dir), "/workspace/ipc", readonly=False))

    env_dir = _write_env_dir(s.project_root, s.data_dir / "env")
    if env_dir is not None:
        mounts.append(VolumeMount(str(env_dir), "/workspace/env-dir", readonly=True))

    if group.container_config and group.container_config.additional_mounts:
        mounts.extend(
            _validate_additional_mounts(
                group.container_config.additional_mounts, group.name, agent_input.is_main
            )
        )
    return mounts


def _write_env_dir(project_root: Path, env_dir: Path) -> Path | None:
    """Copy allow-listed variables from the project .env; None when there are none."""
    env_file = project_root / ".env"
    if not env_file.exists():
        return None
    lines = [
        line.strip()
        for line in env_file.read_text().splitlines()
        if line.strip()
        and not line.strip().startswith("#")
        and any(line.strip().startswith(f"{v}=") for v in _ALLOWED_ENV_VARS)
    ]
    if not lines:
        return None
    env_dir.mkdir(parents=True, exist_ok=True)
    (env_dir / "env").write_text("\n".join(lines) + "\n")
    return env_dir


def _validate_additional_mounts(
    additional: list[AdditionalMount], group_name: str, is_main: bool
) -> list[VolumeMount]:
    """Keep mounts whose host path exists; non-main groups only get read-only."""
    extra_root = Path("/workspace/extra")
    mounts: list[VolumeMount] = []
    for m in additional:
        host = Path(m.host_path).expanduser()
        if not host.is_absolute() or not host.exists():
            logger.warning("Skipping additional mount", group=group_name, host_path=m.host_path)
            continue
        target_name = m.container_path or host.name
        try:
            target = assert_path_within(extra_root, target_name, "additional mount")
        except ValueError as exc:
            logger.warning("Rejected additional mount", group=group_name, err=str(exc))
            continue
        mounts.append(
            VolumeMount(str(host.resolve()), str(target), readonly=m.readonly or not is_main)
        )
    return mounts


def build_container_args(
    mounts: list[VolumeMount],
    container_name: str,
    *,
    runtime: ContainerRuntime,
    is_main: bool,
    network_mode: str | None = None,
    memory: str | None = None,
) -> list[str]:
    """Build CLI args for ``<runtime> run`` (the CLI itself not included)."""
    s = get_settings()
    args = ["run", "-i", "--rm", "--memory", memory or s.container.memory, "--name", container_name]

    if runtime.name == "docker":
        args.extend(["--pids-limit", "256"])
        args.extend(["--security-opt", "no-new-privileges:true"])
        # Non-main groups get no network unless configured otherwise
        effective_network = network_mode or ("full" if is_main else "none")
        if effective_network == "none":
            args.extend(["--network", "none"])

    args.extend(["-e", f"TZ={s.timezone}"])

    uid = os.getuid() if hasattr(os, "getuid") else None
    if uid is not None and uid not in (0, _CONTAINER_UID):
        args.extend(["--user", f"{uid}:{os.getgid()}"])
        args.extend(["-e", "HOME=/home/bun"])

    for m in mounts:
        if m.readonly:
            args.extend(
                [
                    "--mount",
                    f"type=bind,source={m.host_path},target={m.container_path},readonly",
                ]
            )
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])
    args.append(s.container.image)
    return args
