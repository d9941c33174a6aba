"""
File system utilities for forge-coordinator.

This module provides the file operations the state store needs:
- Atomic writes (write to temp file, then rename), blocking
- Append-only writes for JSONL journals (aiofiles)
- Directory creation
- File reading with encoding handling (aiofiles)
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path

import aiofiles


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist (like mkdir -p).

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    The content goes to a temp file in the same directory, is flushed to
    disk, and is then renamed over the target. Readers see either the old
    file or the new one, never a partial write. Blocking; callers on the
    event loop run it in a worker thread.

    Args:
        path: Path to the file to write.
        content: Content to write to the file.
        encoding: Character encoding to use. Defaults to utf-8.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    # Same directory as the target so the rename stays on one filesystem.
    temp_path = path.parent / f".{path.name}.{uuid.uuid4().hex[:8]}.tmp"
    try:
        try:
            with open(temp_path, "w", encoding=encoding) as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


async def append_line(path: str | Path, line: str, encoding: str = "utf-8") -> None:
    """
    Append one line to a file, creating it if needed.

    Raises:
        FileSystemError: If the append fails.
    """
    path = Path(path)
    ensure_dir(path.parent)
    try:
        async with aiofiles.open(path, "a", encoding=encoding) as f:
            await f.write(line.rstrip("\n") + "\n")
    except OSError as e:
        raise FileSystemError(f"Failed to append to {path}: {e}")


async def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents.

    Raises:
        FileSystemError: If the file is missing or cannot be decoded.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        async with aiofiles.open(path, "r", encoding=encoding) as f:
            return await f.read()
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")
