"""Run log file writing."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

from omniclaw.container_runner._lifecycle import StreamState
from omniclaw.container_runner._serialization import input_to_dict
from omniclaw.logger import logger
from omniclaw.types import AgentInput, VolumeMount


def write_run_log(
    *,
    logs_dir: Path,
    group_name: str,
    container_name: str,
    input_data: AgentInput,
    container_args: list[str],
    mounts: list[VolumeMount],
    state: StreamState,
    duration_ms: float,
    exit_code: int | None,
) -> Path:
    """Write a timestamped log file for a container run.

    Timed-out runs get a short header only. Failed runs (and any run at
    debug level) include input, args, mounts and both output buffers.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(UTC).isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"container-{ts}.log"

    if state.timed_out:
        lines = [
            "=== Container Run Log (TIMEOUT) ===",
            f"Timestamp: {datetime.now(UTC).isoformat()}",
            f"Group: {group_name}",
            f"Container: {container_name}",
            f"Duration: {duration_ms:.0f}ms",
            f"Exit Code: {exit_code}",
            f"Timeout Reason: {state.timeout_reason}",
            f"Had Streaming Output: {state.had_output}",
        ]
        log_file.write_text("\n".join(lines))
        return log_file

    level = os.environ.get("OMNICLAW_LOG_LEVEL", os.environ.get("LOG_LEVEL", ""))
    is_verbose = level.lower() in ("debug", "trace")
    is_error = exit_code != 0

    lines = [
        "=== Container Run Log ===",
        f"Timestamp: {datetime.now(UTC).isoformat()}",
        f"Group: {group_name}",
        f"IsMain: {input_data.is_main}",
        f"Duration: {duration_ms:.0f}ms",
        f"Exit Code: {exit_code}",
        f"Stdout Truncated: {state.stdout_truncated}",
        f"Stderr Truncated: {state.stderr_truncated}",
        "",
    ]

    if is_verbose or is_error:
        lines.extend(
            [
                "=== Input ===",
                json.dumps(input_to_dict(input_data), indent=2),
                "",
                "=== Container Args ===",
                " ".join(container_args),
                "",
                "=== Mounts ===",
                "\n".join(
                    f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                    for m in mounts
                ),
                "",
                f"=== Stderr{' (TRUNCATED)' if state.stderr_truncated else ''} ===",
                state.stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if state.stdout_truncated else ''} ===",
                state.stdout,
            ]
        )
    else:
        lines.extend(
            [
                "=== Input Summary ===",
                f"Prompt length: {len(input_data.prompt)} chars",
                f"Session ID: {input_data.session_id or 'new'}",
                "",
                "=== Mounts ===",
                "\n".join(f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts),
                "",
            ]
        )

    log_file.write_text("\n".join(lines))
    logger.debug("Container log written", log_file=str(log_file), verbose=is_verbose)
    return log_file
