"""Utility modules for forge-coordinator."""

from forge_coordinator.utils.fs import (
    FileSystemError,
    append_line,
    ensure_dir,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_line",
    "ensure_dir",
    "read_file",
    "safe_write",
]
