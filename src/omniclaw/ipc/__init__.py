"""File-based IPC between host and agent processes."""

from omniclaw.ipc._read import (
    MAX_IPC_FILE_SIZE,
    IpcFileError,
    drain_ipc_dir,
    list_ipc_files,
    quarantine_ipc_file,
    read_ipc_file,
)
from omniclaw.ipc._write import (
    CLOSE_SENTINEL,
    ipc_group_dir,
    write_ipc_close_sentinel,
    write_ipc_file,
    write_ipc_message,
)

__all__ = [
    "CLOSE_SENTINEL",
    "MAX_IPC_FILE_SIZE",
    "IpcFileError",
    "drain_ipc_dir",
    "ipc_group_dir",
    "list_ipc_files",
    "quarantine_ipc_file",
    "read_ipc_file",
    "write_ipc_close_sentinel",
    "write_ipc_file",
    "write_ipc_message",
]
