"""Utility modules for Andon."""

from andon.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "file_exists",
    "read_file",
    "safe_write",
]
