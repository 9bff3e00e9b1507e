"""Content-addressed snapshot store.

Blobs are stored under ``blobs/<sha256>`` inside a checkpoint log
directory. The hash is only used for deduplication and integrity: two files
(or two checkpoints) with identical bytes share one blob.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from aitrack.atomic import atomic_write_bytes
from aitrack.errors import IneligibleFileError, SnapshotMissingError, StorageCorruptionError
from aitrack.types import ContentHash

logger = logging.getLogger(__name__)

# git's own binary heuristic only inspects the first 8000 bytes
BINARY_SNIFF_BYTES = 8000


def content_hash(data: bytes) -> ContentHash:
    """SHA-256 hex digest of raw bytes."""
    return ContentHash(hashlib.sha256(data).hexdigest())


def is_text(data: bytes) -> bool:
    """Return True unless the content contains a NUL byte near the start."""
    return b"\0" not in data[:BINARY_SNIFF_BYTES]


class SnapshotStore:
    """Write-once blob storage scoped to one checkpoint log."""

    def __init__(self, blobs_dir: Path, max_file_bytes: int | None = None) -> None:
        self.blobs_dir = Path(blobs_dir)
        self.max_file_bytes = max_file_bytes

    def _blob_path(self, digest: str) -> Path:
        return self.blobs_dir / digest

    def put(self, path: str, data: bytes) -> ContentHash:
        """Store a file's content and return its hash.

        Args:
            path: Repository-relative path (for error reporting only)
            data: Raw file bytes

        Raises:
            IneligibleFileError: Binary or oversized content
            OSError: The blob could not be written
        """
        if not is_text(data):
            raise IneligibleFileError(f"Binary file skipped: {path}", path=path)
        if self.max_file_bytes is not None and len(data) > self.max_file_bytes:
            raise IneligibleFileError(
                f"File exceeds {self.max_file_bytes} bytes: {path}",
                path=path,
                size=len(data),
            )

        digest = content_hash(data)
        blob_path = self._blob_path(digest)
        if blob_path.exists():
            logger.debug(f"Blob already stored for {path}: {digest[:12]}")
            return digest

        result = atomic_write_bytes(blob_path, data, mode=0o444)
        if result.is_err():
            raise OSError(f"Failed to store snapshot of {path}: {result.unwrap_err().message}")

        logger.debug(f"Stored blob for {path}: {digest[:12]}")
        return digest

    def put_file(self, path: str, file_path: Path) -> ContentHash:
        """Read a working-tree file and store it.

        Raises:
            IneligibleFileError: Unreadable, binary or oversized file
        """
        try:
            if self.max_file_bytes is not None and file_path.stat().st_size > self.max_file_bytes:
                raise IneligibleFileError(f"File exceeds {self.max_file_bytes} bytes: {path}", path=path)
            data = file_path.read_bytes()
        except OSError as e:
            raise IneligibleFileError(f"Unreadable file skipped: {path}: {e}", path=path) from e
        return self.put(path, data)

    def get(self, digest: str) -> bytes:
        """Read a blob back.

        Raises:
            SnapshotMissingError: No blob with that hash
            StorageCorruptionError: The blob's bytes no longer match its hash
        """
        blob_path = self._blob_path(digest)
        try:
            data = blob_path.read_bytes()
        except FileNotFoundError as e:
            raise SnapshotMissingError(f"Snapshot {digest} not found", content_hash=digest) from e
        except OSError as e:
            raise SnapshotMissingError(f"Snapshot {digest} unreadable: {e}", content_hash=digest) from e

        if content_hash(data) != digest:
            raise StorageCorruptionError(
                f"Snapshot {digest} does not match its content hash",
                path=str(blob_path),
            )
        return data

    def contains(self, digest: str) -> bool:
        """Check whether a blob is stored."""
        return self._blob_path(digest).is_file()

    def __len__(self) -> int:
        if not self.blobs_dir.exists():
            return 0
        return sum(1 for p in self.blobs_dir.iterdir() if p.is_file() and not p.name.startswith("."))
