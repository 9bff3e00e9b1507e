"""Checkpoint log for aitrack.

A checkpoint is an immutable, authorship-tagged record of the working-tree
files that changed since the last known state. Checkpoints are grouped in a
log keyed by the base commit (HEAD when the sequence began):

    <git-dir>/ai-track/working-logs/<base>/checkpoints.json
    <git-dir>/ai-track/working-logs/<base>/blobs/<sha256>

Producers (the pre-commit hook, AI agent integrations) may append to the
same log at once. Appends hold an exclusive flock on
``working-logs/<base>.lock``, take ``seq = last_seq + 1`` and publish the
whole file again with temp-file + rename, so readers never observe a torn
log and every checkpoint gets a unique, strictly increasing sequence
number regardless of wall-clock skew between producers.

When a commit lands, the log is sealed, moved under ``archive/`` and an
empty log is opened for the new commit.
"""

from __future__ import annotations

import difflib
import fcntl
import fnmatch
import hashlib
import json
import logging
import shutil
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from aitrack import git
from aitrack.atomic import atomic_write_json, atomic_write_text
from aitrack.config import TrackConfig, TrackPaths, get_track_config
from aitrack.errors import (
    IneligibleFileError,
    LogSealedError,
    NoChangesError,
    StorageCorruptionError,
)
from aitrack.snapshot import SnapshotStore
from aitrack.types import INITIAL_COMMIT, AuthorId, CommitId, ContentHash

logger = logging.getLogger(__name__)

LOG_FORMAT_VERSION = 1
CHECKPOINTS_FILE = "checkpoints.json"
SEALED_MARKER = "SEALED"


class CheckpointKind(str, Enum):
    """Who produced the edits captured by a checkpoint."""

    HUMAN = "Human"
    AI_AGENT = "AiAgent"

    @classmethod
    def parse(cls, value: str) -> "CheckpointKind":
        for kind in cls:
            if kind.value.lower() == value.lower():
                return kind
        raise ValueError(f"Unknown checkpoint kind: {value}")


@dataclass(frozen=True)
class AgentRef:
    """The AI session behind an AiAgent checkpoint (a prompt reference)."""

    tool: str  # e.g. "claude", "cursor"
    id: str  # Session / conversation id
    model: str = "unknown"

    def to_dict(self) -> dict:
        return {"tool": self.tool, "id": self.id, "model": self.model}

    @classmethod
    def from_dict(cls, data: dict) -> AgentRef:
        return cls(
            tool=data.get("tool", ""),
            id=data.get("id", ""),
            model=data.get("model", "unknown"),
        )


@dataclass(frozen=True)
class FileEntry:
    """A file snapshot referenced by a checkpoint."""

    path: str
    content_hash: ContentHash

    def to_dict(self) -> dict:
        return {"path": self.path, "content_hash": self.content_hash}

    @classmethod
    def from_dict(cls, data: dict) -> FileEntry:
        return cls(path=data["path"], content_hash=ContentHash(data["content_hash"]))


@dataclass(frozen=True)
class LineStats:
    """Line counts of a checkpoint relative to the previous known state."""

    additions: int = 0
    deletions: int = 0
    additions_sloc: int = 0  # Non-blank added lines
    deletions_sloc: int = 0  # Non-blank deleted lines

    def __add__(self, other: LineStats) -> LineStats:
        return LineStats(
            additions=self.additions + other.additions,
            deletions=self.deletions + other.deletions,
            additions_sloc=self.additions_sloc + other.additions_sloc,
            deletions_sloc=self.deletions_sloc + other.deletions_sloc,
        )

    def to_dict(self) -> dict:
        return {
            "additions": self.additions,
            "deletions": self.deletions,
            "additions_sloc": self.additions_sloc,
            "deletions_sloc": self.deletions_sloc,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LineStats:
        return cls(
            additions=data.get("additions", 0),
            deletions=data.get("deletions", 0),
            additions_sloc=data.get("additions_sloc", 0),
            deletions_sloc=data.get("deletions_sloc", 0),
        )


@dataclass(frozen=True)
class Checkpoint:
    """An immutable record of file snapshots taken at one point in time."""

    seq: int
    kind: CheckpointKind
    timestamp: int  # Epoch milliseconds
    author_identity: str  # "Name <email>" of whoever ran the producer
    diff_fingerprint: str
    entries: tuple[FileEntry, ...]
    line_stats: LineStats = field(default_factory=LineStats)
    agent: AgentRef | None = None

    @property
    def author_id(self) -> AuthorId:
        """Identity stamped on lines this checkpoint introduced."""
        if self.kind is CheckpointKind.AI_AGENT and self.agent and self.agent.tool:
            return AuthorId(f"{self.kind.value}:{self.agent.tool}")
        return AuthorId(self.kind.value)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(e.path for e in self.entries)

    def entry_for(self, path: str) -> FileEntry | None:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict:
        data = {
            "seq": self.seq,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "author": self.author_identity,
            "diff_hash": self.diff_fingerprint,
            "entries": [e.to_dict() for e in self.entries],
            "line_stats": self.line_stats.to_dict(),
        }
        if self.agent is not None:
            data["agent"] = self.agent.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Checkpoint:
        agent = data.get("agent")
        return cls(
            seq=int(data["seq"]),
            kind=CheckpointKind.parse(data["kind"]),
            timestamp=int(data["timestamp"]),
            author_identity=data.get("author", "unknown"),
            diff_fingerprint=data.get("diff_hash", ""),
            entries=tuple(FileEntry.from_dict(e) for e in data.get("entries", [])),
            line_stats=LineStats.from_dict(data.get("line_stats", {})),
            agent=AgentRef.from_dict(agent) if agent else None,
        )


# ============================================================================
# Helpers
# ============================================================================


def diff_fingerprint(paths: list[str] | tuple[str, ...]) -> str:
    """Order-independent fingerprint of a set of changed paths."""
    joined = "\n".join(sorted(set(paths)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def split_lines(text: str) -> list[str]:
    """Split text into lines the way git counts them."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def compute_line_stats(old_text: str | None, new_text: str) -> LineStats:
    """Count added/removed lines between two versions of a file."""
    old_lines = split_lines(old_text or "")
    new_lines = split_lines(new_text)

    additions = deletions = additions_sloc = deletions_sloc = 0
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        removed = old_lines[i1:i2]
        added = new_lines[j1:j2]
        deletions += len(removed)
        additions += len(added)
        deletions_sloc += sum(1 for line in removed if line.strip())
        additions_sloc += sum(1 for line in added if line.strip())

    return LineStats(
        additions=additions,
        deletions=deletions,
        additions_sloc=additions_sloc,
        deletions_sloc=deletions_sloc,
    )


def matches_any(path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    """Check a path against glob patterns (matched on full path and basename)."""
    name = path.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(path, p) or fnmatch.fnmatch(name, p) for p in patterns)


def _within(path: str, pathspecs: list[str]) -> bool:
    for spec in pathspecs:
        spec = spec.rstrip("/")
        if path == spec or path.startswith(spec + "/") or fnmatch.fnmatch(path, spec):
            return True
    return False


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# Checkpoint Log
# ============================================================================


class CheckpointLog:
    """Append-ordered checkpoint logs of one working copy."""

    def __init__(
        self,
        repo_path: Path,
        git_dir: Path,
        config: TrackConfig | None = None,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.git_dir = Path(git_dir)
        self.config = config or get_track_config(self.git_dir)
        self.paths = TrackPaths.for_git_dir(self.git_dir)
        git.set_timeout(self.config.git_timeout)

    @classmethod
    def open(cls, path: Path | None = None, config: TrackConfig | None = None) -> CheckpointLog:
        """Open the checkpoint logs of the repository containing ``path``.

        Raises:
            ValueError: If path is not inside a git working tree
        """
        repo_root = git.get_repo_root(path)
        git_dir = git.get_git_dir(path)
        if repo_root is None or git_dir is None:
            raise ValueError(f"Not a git working tree: {path or Path.cwd()}")
        return cls(repo_root, git_dir, config)

    def current_base(self) -> CommitId:
        """The base commit new checkpoints belong to."""
        head = git.resolve_head(self.repo_path)
        return CommitId(head) if head else INITIAL_COMMIT

    def snapshot_store(self, base_commit: str) -> SnapshotStore:
        return SnapshotStore(
            self.paths.log_dir(base_commit) / "blobs",
            max_file_bytes=self.config.max_file_bytes,
        )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _lock(self, base_commit: str, exclusive: bool) -> Iterator[None]:
        lock_path = self.paths.lock_path(base_commit)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, "a+") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _is_sealed(self, base_commit: str) -> bool:
        log_dir = self.paths.log_dir(base_commit)
        if (log_dir / SEALED_MARKER).exists():
            return True
        # Archived while we waited for the lock, and HEAD has moved on
        if not log_dir.exists() and self.paths.archive_dir(base_commit).exists():
            return self.current_base() != base_commit
        return False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self, base_commit: str) -> list[Checkpoint]:
        log_file = self.paths.log_dir(base_commit) / CHECKPOINTS_FILE
        if not log_file.exists():
            return []

        try:
            data = json.loads(log_file.read_text(encoding="utf-8"))
            checkpoints = [Checkpoint.from_dict(c) for c in data.get("checkpoints", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageCorruptionError(
                f"Checkpoint log for {base_commit} is unreadable: {e}",
                path=str(log_file),
            ) from e

        last_seq = 0
        for cp in checkpoints:
            if cp.seq <= last_seq:
                raise StorageCorruptionError(
                    f"Checkpoint log for {base_commit} is out of sequence at seq {cp.seq}",
                    path=str(log_file),
                )
            last_seq = cp.seq
        return checkpoints

    def _write(self, base_commit: str, checkpoints: list[Checkpoint]) -> None:
        log_file = self.paths.log_dir(base_commit) / CHECKPOINTS_FILE
        data = {
            "version": LOG_FORMAT_VERSION,
            "base_commit": base_commit,
            "checkpoints": [c.to_dict() for c in checkpoints],
        }
        result = atomic_write_json(log_file, data)
        if result.is_err():
            raise OSError(f"Failed to write checkpoint log: {result.unwrap_err().message}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def record(
        self,
        kind: CheckpointKind,
        author_identity: str,
        agent: AgentRef | None = None,
        paths: list[str] | None = None,
        base_commit: str | None = None,
    ) -> Checkpoint:
        """Snapshot changed text files and append a checkpoint.

        Args:
            kind: Authorship kind of the edits
            author_identity: Identity of the producer ("Name <email>")
            agent: AI session reference for AiAgent checkpoints
            paths: Restrict to these paths/pathspecs (files an agent edited)
            base_commit: Log to append to (defaults to HEAD)

        Returns:
            The appended Checkpoint

        Raises:
            NoChangesError: Nothing changed since the last known state
            LogSealedError: The log was rolled forward; retry on the new base
        """
        base = base_commit or self.current_base()

        changes = [c for c in git.get_changed_paths(self.repo_path) if not c.deleted]
        if paths:
            changes = [c for c in changes if _within(c.path, paths)]
        if self.config.ignore_patterns:
            changes = [c for c in changes if not matches_any(c.path, self.config.ignore_patterns)]
        if not changes:
            raise NoChangesError("No working-tree changes to checkpoint", base_commit=base)

        with self._lock(base, exclusive=True):
            if self._is_sealed(base):
                raise LogSealedError(f"Checkpoint log for {base} is sealed", base_commit=base)

            existing = self._load(base)
            last_known = latest_hashes(existing)
            store = self.snapshot_store(base)

            entries: list[FileEntry] = []
            eligible: list[str] = []
            stats = LineStats()
            for change in changes:
                try:
                    digest = store.put_file(change.path, self.repo_path / change.path)
                except IneligibleFileError as e:
                    logger.info(f"Skipping {change.path}: {e.message}")
                    continue

                eligible.append(change.path)
                if last_known.get(change.path) == digest:
                    continue

                previous = self._previous_text(base, change, last_known.get(change.path), store)
                current = decode_text(store.get(digest))
                stats = stats + compute_line_stats(previous, current)
                entries.append(FileEntry(path=change.path, content_hash=digest))

            if not entries:
                raise NoChangesError("Nothing new since the last checkpoint", base_commit=base)

            checkpoint = Checkpoint(
                seq=(existing[-1].seq if existing else 0) + 1,
                kind=kind,
                timestamp=_now_ms(),
                author_identity=author_identity,
                diff_fingerprint=diff_fingerprint(eligible),
                entries=tuple(entries),
                line_stats=stats,
                agent=agent,
            )
            self._write(base, existing + [checkpoint])

        logger.info(
            f"Recorded {kind.value} checkpoint #{checkpoint.seq} on {base[:12]} "
            f"({len(entries)} files, +{stats.additions} -{stats.deletions})"
        )
        return checkpoint

    def _previous_text(
        self,
        base_commit: str,
        change: git.ChangedPath,
        last_hash: str | None,
        store: SnapshotStore,
    ) -> str | None:
        if last_hash is not None:
            return decode_text(store.get(last_hash))
        if base_commit == INITIAL_COMMIT:
            return None
        data = git.show_file(base_commit, change.orig_path or change.path, self.repo_path)
        return decode_text(data) if data is not None else None

    def read_all(self, base_commit: str) -> list[Checkpoint]:
        """Checkpoints recorded since base_commit, in sequence order.

        Returns an empty list if no log exists or it was archived.
        """
        with self._lock(base_commit, exclusive=False):
            return self._load(base_commit)

    @contextmanager
    def reading(self, base_commit: str) -> Iterator[tuple[list[Checkpoint], SnapshotStore]]:
        """Hold a shared lock while the caller works on a stable log.

        Roll-forward and appends wait until the block exits.
        """
        with self._lock(base_commit, exclusive=False):
            yield self._load(base_commit), self.snapshot_store(base_commit)

    def has_ai_checkpoints(self, base_commit: str) -> bool:
        return any(cp.kind is CheckpointKind.AI_AGENT for cp in self.read_all(base_commit))

    def seal(self, base_commit: str, new_commit: str) -> None:
        """Refuse further appends to the log of ``base_commit``.

        Once this returns, every append to that log either happened before it
        or fails with LogSealedError.
        """
        with self._lock(base_commit, exclusive=True):
            log_dir = self.paths.log_dir(base_commit)
            log_dir.mkdir(parents=True, exist_ok=True)
            result = atomic_write_text(log_dir / SEALED_MARKER, f"{new_commit}\n")
            if result.is_err():
                raise OSError(f"Failed to seal log: {result.unwrap_err().message}")
        logger.debug(f"Sealed checkpoint log {base_commit[:12]} for {new_commit[:12]}")

    def roll_forward(self, new_commit: str, from_base: str | None = None) -> Path | None:
        """Archive the log for ``from_base`` and open an empty log for new_commit.

        Args:
            new_commit: Commit id the fresh log is keyed by
            from_base: Log to seal (defaults to new_commit's first parent)

        Returns:
            The archive directory, or None if there was no log to archive
        """
        if from_base is None:
            from_base = git.get_first_parent(new_commit, self.repo_path) or INITIAL_COMMIT

        archived: Path | None = None
        if from_base != new_commit:
            with self._lock(from_base, exclusive=True):
                log_dir = self.paths.log_dir(from_base)
                if log_dir.exists():
                    seal = atomic_write_text(log_dir / SEALED_MARKER, f"{new_commit}\n")
                    if seal.is_err():
                        raise OSError(f"Failed to seal log: {seal.unwrap_err().message}")

                    archived = self.paths.archive_dir(from_base)
                    if archived.exists():
                        archived = archived.with_name(f"{archived.name}.{_now_ms()}")
                    archived.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(log_dir), str(archived))
                    logger.info(f"Archived checkpoint log {from_base[:12]} -> {archived.name}")

        with self._lock(new_commit, exclusive=True):
            if not (self.paths.log_dir(new_commit) / CHECKPOINTS_FILE).exists():
                self._write(new_commit, [])

        return archived

    def reset(self, base_commit: str | None = None) -> bool:
        """Discard the active log. Returns True if one was removed."""
        base = base_commit or self.current_base()
        with self._lock(base, exclusive=True):
            log_dir = self.paths.log_dir(base)
            if not log_dir.exists():
                return False
            shutil.rmtree(log_dir)
        logger.info(f"Reset checkpoint log for {base[:12]}")
        return True

    def archived_logs(self) -> list[Path]:
        """Archived log directories, newest first."""
        if not self.paths.archive.exists():
            return []
        dirs = [p for p in self.paths.archive.iterdir() if p.is_dir()]
        dirs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return dirs

    def prune_archive(self, keep: int | None = None) -> int:
        """Delete all but the newest ``keep`` archived logs. Returns count pruned.

        ``keep=0`` deletes every archived log; a negative value disables
        pruning.
        """
        keep = self.config.archive_keep if keep is None else keep
        if keep < 0:
            return 0

        pruned = 0
        for old in self.archived_logs()[keep:]:
            try:
                shutil.rmtree(old)
                pruned += 1
            except OSError as e:
                logger.warning(f"Failed to prune archived log {old.name}: {e}")

        if pruned:
            logger.info(f"Pruned {pruned} archived checkpoint logs")
        return pruned


def latest_hashes(checkpoints: list[Checkpoint]) -> dict[str, ContentHash]:
    """Most recent content hash recorded for every path in a log."""
    latest: dict[str, ContentHash] = {}
    for cp in checkpoints:
        for entry in cp.entries:
            latest[entry.path] = entry.content_hash
    return latest
