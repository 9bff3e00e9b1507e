"""Atomic file write utilities for aitrack.

Every file aitrack persists (checkpoint logs, snapshot blobs, config) goes
through these helpers. Content is written to a temp file in the target
directory and renamed into place, which is atomic on POSIX: a reader sees
either the old file or the new one, never a torn write.

All functions return Result types for explicit error handling.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from aitrack.errors import Err, Ok, Result, TrackError

logger = logging.getLogger(__name__)


def atomic_write_bytes(
    path: Path,
    data: bytes,
    mode: int = 0o644,
    fsync: bool = True,
) -> Result[Path, TrackError]:
    """Atomically write raw bytes to a file.

    Creates parent directories if they don't exist.

    Args:
        path: Target file path
        data: Bytes to write
        mode: File permissions applied before the rename
        fsync: Flush the temp file to disk before renaming

    Returns:
        Ok(path) on success, Err(TrackError) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        # Temp file must live in the same directory for rename to be atomic
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.stem}_",
            suffix=f"{path.suffix}.tmp",
        )

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                if fsync:
                    f.flush()
                    os.fsync(f.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, path)

            logger.debug(f"Atomic write complete: {path}")
            return Ok(path)

        except Exception:
            _cleanup_temp(temp_path)
            raise

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            TrackError(
                code="ATOMIC_PERMISSION_DENIED",
                message=f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            TrackError(
                code="ATOMIC_WRITE_FAILED",
                message=f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o644,
) -> Result[Path, TrackError]:
    """Atomically write UTF-8 text to a file."""
    return atomic_write_bytes(path, content.encode("utf-8"), mode)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o644,
    indent: int | None = 2,
    sort_keys: bool = False,
) -> Result[Path, TrackError]:
    """Atomically write JSON data to a file.

    Args:
        path: Target file path
        data: Data to serialize as JSON
        mode: File permissions
        indent: JSON indentation (None for compact)
        sort_keys: Emit keys in sorted order for byte-stable output

    Returns:
        Ok(path) on success, Err(TrackError) on failure
    """
    try:
        content = json.dumps(data, indent=indent, sort_keys=sort_keys, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization failed: {e}")
        return Err(
            TrackError(
                code="JSON_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to JSON: {e}",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content + "\n", mode)


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o644,
) -> Result[Path, TrackError]:
    """Atomically write YAML data to a file using yaml.safe_dump."""
    try:
        content = yaml.safe_dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            TrackError(
                code="YAML_SERIALIZATION_FAILED",
                message=f"Failed to serialize data to YAML: {e}",
                context={"error": str(e)},
            )
        )

    return atomic_write_text(path, content, mode)


def _cleanup_temp(temp_path: str | None) -> None:
    """Remove a leftover temp file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Already gone
        pass
