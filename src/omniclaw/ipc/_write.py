"""IPC file writing: atomic message and signal delivery to agents.

Provides the write side of IPC: delivering messages and control signals
to running agents via their group's input directory. The read side lives
in :mod:`_read`.

All writes use atomic rename (tmp → final) so the agent's poller never
sees a partially-written file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from omniclaw.path_security import assert_path_within, assert_safe_folder
from omniclaw.utils import generate_ipc_filename, write_json_atomic

CLOSE_SENTINEL = "_close"


def ipc_group_dir(ipc_dir: Path, group_folder: str) -> Path:
    """Return ``<ipc_dir>/<group_folder>`` after validating the folder name."""
    return ipc_dir / assert_safe_folder(group_folder)


def _ipc_subdir(ipc_dir: Path, group_folder: str, subdir: str) -> Path:
    d = assert_path_within(ipc_group_dir(ipc_dir, group_folder), subdir, "ipc subdir")
    d.mkdir(parents=True, exist_ok=True)
    return d


def write_ipc_message(
    ipc_dir: Path,
    group_folder: str,
    text: str,
    *,
    chat_jid: str | None = None,
    subdir: str = "input",
) -> Path:
    """Write a JSON message file to a group's IPC input directory.

    Returns the final path of the written file.
    """
    data: dict[str, Any] = {"type": "message", "text": text}
    if chat_jid:
        data["chatJid"] = chat_jid
    filepath = _ipc_subdir(ipc_dir, group_folder, subdir) / generate_ipc_filename()
    write_json_atomic(filepath, data)
    return filepath


def write_ipc_close_sentinel(ipc_dir: Path, group_folder: str, subdir: str = "input") -> Path:
    """Write the zero-byte ``_close`` sentinel to signal end of input."""
    sentinel = _ipc_subdir(ipc_dir, group_folder, subdir) / CLOSE_SENTINEL
    sentinel.write_text("")
    return sentinel


def write_ipc_file(directory: Path, filename: str, data: Any) -> Path:
    """Write an arbitrary JSON payload into *directory* atomically."""
    filepath = assert_path_within(directory, filename, "ipc file")
    write_json_atomic(filepath, data, indent=2)
    return filepath
