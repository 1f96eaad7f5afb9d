"""Path validation for group-scoped file access.

Every backend file operation takes a path relative to a group workspace.
These helpers make sure the resolved path cannot leave that workspace,
whether through ``..`` segments, absolute paths or symlinks.
"""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath

_SAFE_FOLDER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*(/[A-Za-z0-9][A-Za-z0-9_\-]*)*$")


class PathTraversalError(ValueError):
    """A path tried to escape its allowed root."""

    def __init__(self, path: str, label: str, reason: str) -> None:
        super().__init__(reason)
        self.path = path
        self.label = label


def reject_traversal_segments(relative_path: str, label: str = "path") -> None:
    """Reject absolute paths and any ``..`` component."""
    if os.path.isabs(relative_path) or relative_path.startswith(("/", "\\")):
        raise PathTraversalError(
            relative_path,
            label,
            f"Absolute path rejected in {label}: {relative_path!r} must be relative",
        )
    parts = PurePosixPath(relative_path.replace("\\", "/")).parts
    if ".." in parts:
        raise PathTraversalError(
            relative_path,
            label,
            f"Path traversal detected in {label}: {relative_path!r} contains '..' segments",
        )


def assert_path_within(root: Path, relative_path: str, label: str = "path") -> Path:
    """Resolve *relative_path* under *root* and return it.

    Raises PathTraversalError if the result (after following symlinks) is not
    *root* itself or a descendant of it.
    """
    reject_traversal_segments(relative_path, label)
    resolved_root = root.resolve()
    resolved = (resolved_root / relative_path).resolve()
    if resolved != resolved_root and not resolved.is_relative_to(resolved_root):
        raise PathTraversalError(
            relative_path,
            label,
            f"Path escapes {label} root: {relative_path!r} resolves outside {resolved_root}",
        )
    return resolved


def assert_safe_folder(folder: str, label: str = "group folder") -> str:
    """Validate a group/server folder name used to build host paths."""
    if not folder or not _SAFE_FOLDER.match(folder):
        raise PathTraversalError(folder, label, f"Invalid {label}: {folder!r}")
    return folder
