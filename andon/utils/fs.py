"""
Filesystem helpers for Andon state files.

Everything under .andon/ is written through safe_write so that an
interrupted run leaves either the previous ledger or the new one on disk.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when reading or writing a state file fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """mkdir -p, reporting failures as FileSystemError."""
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"Cannot create directory {directory}: {e}") from e
    return directory


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Replace the contents of path atomically.

    The text is written and fsynced to a hidden sibling temp file, which is
    then renamed over the target. The temp file never outlives a failed
    write.

    Raises:
        FileSystemError: If the directory, the temp file or the rename fails.
    """
    target = Path(path)
    ensure_dir(target.parent)

    try:
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    except OSError as e:
        raise FileSystemError(f"Cannot write {target}: {e}") from e

    tmp = Path(tmp_name)
    replaced = False
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, target)
        replaced = True
    except OSError as e:
        raise FileSystemError(f"Cannot write {target}: {e}") from e
    finally:
        if not replaced:
            tmp.unlink(missing_ok=True)


def file_exists(path: str | Path) -> bool:
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a whole text file.

    Raises:
        FileSystemError: If the file is missing, is a directory, or cannot
            be decoded.
    """
    source = Path(path)
    if not source.is_file():
        reason = "is not a file" if source.exists() else "not found"
        raise FileSystemError(f"{source} {reason}")
    try:
        return source.read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        raise FileSystemError(f"Cannot read {source}: {e}") from e
