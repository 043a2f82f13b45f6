"""Atomic file write utilities for Waypoint.

Uses the temp file + fsync + rename pattern, which is atomic on POSIX
systems: readers see either the previous file content or the complete new
content, never a partial write.

All functions return Result types for explicit error handling.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
- Temp files are dot-prefixed so directory globs never pick them up
- Temp files are cleaned up on failure
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from waypoint.errors import Err, Ok, Result, StoreIOError

logger = logging.getLogger(__name__)


def atomic_write_bytes(
    path: Path,
    content: bytes,
    mode: int = 0o600,
) -> Result[Path, StoreIOError]:
    """Atomically write bytes to a file.

    The data is flushed and fsynced before the rename and the directory is
    fsynced after it, so an Ok result means the new content is durable
    under its final name.

    Args:
        path: Target file path
        content: Bytes to write
        mode: File permissions (default 0o600 - owner read/write only)

    Returns:
        Ok(path) on success, Err(StoreIOError) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Temp file must live in the same directory for an atomic rename
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, path)
            temp_path = None
            _fsync_directory(path.parent)

            logger.debug(f"Atomic write complete: {path}")
            return Ok(path)

        except BaseException:
            _cleanup_temp(temp_path)
            raise

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            StoreIOError(
                f"Permission denied writing to {path}",
                code="ATOMIC_PERMISSION_DENIED",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            StoreIOError(
                f"Failed to write {path}: {e}",
                code="ATOMIC_WRITE_FAILED",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, StoreIOError]:
    """Atomically write UTF-8 text content to a file.

    Example:
        result = atomic_write_text(Path("/path/to/file.md"), "content")
        if result.is_ok():
            print(f"Written to {result.unwrap()}")
    """
    return atomic_write_bytes(path, content.encode("utf-8"), mode)


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
    default_flow_style: bool = False,
    sort_keys: bool = False,
    allow_unicode: bool = True,
) -> Result[Path, StoreIOError]:
    """Atomically write YAML data to a file.

    Uses yaml.safe_dump (no arbitrary Python objects).
    """
    try:
        content = yaml.safe_dump(
            data,
            default_flow_style=default_flow_style,
            sort_keys=sort_keys,
            allow_unicode=allow_unicode,
        )
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            StoreIOError(
                f"Failed to serialize data to YAML: {e}",
                code="YAML_SERIALIZATION_FAILED",
                context={"path": str(path), "error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def _fsync_directory(directory: Path) -> None:
    """Persist a rename by fsyncing the directory entry (POSIX only)."""
    if os.name != "posix":
        return
    dir_fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def _cleanup_temp(temp_path: str | None) -> None:
    """Clean up temporary file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Temp file may already be gone
        pass
