"""Authorship ledger for aitrack.

The ledger is the long-lived, commit-indexed record of line attribution.
Each processed commit carries one attestation log, stored as a git note
under ``refs/notes/<notes_ref>`` (``ai-track`` by default):

    {
      "version": "1.0",
      "metadata": {"base_commit_sha": ..., "timestamp": ..., "prompt_references": {...}},
      "attestations": [
        {"file": "src/app.py",
         "attributions": [{"start_line": 1, "end_line": 4, "author_id": "Human", "timestamp": ...}]}
      ]
    }

Notes are keyed by commit id and written with ``git notes add -f``, so
publishing is an idempotent overwrite: re-deriving a commit's attribution
(retry after a failure, amend) replaces the old entry instead of adding a
second one. Commits rewritten by amend/rebase get new ids; the notes of the
old ids are left orphaned.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from aitrack import git
from aitrack.errors import (
    GitCommandError,
    LedgerNotFoundError,
    LedgerPublishFailedError,
    StorageCorruptionError,
)
from aitrack.types import NULL_SHA, UNATTRIBUTED, AuthorId

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"

# A line's provenance: (author_id, timestamp in epoch ms or None)
Stamp = tuple[AuthorId, "int | None"]

UNATTRIBUTED_STAMP: Stamp = (UNATTRIBUTED, None)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class AttributionSpan:
    """A closed, 1-based line range with one author."""

    start_line: int
    end_line: int
    author_id: AuthorId
    timestamp: int | None = None

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    @property
    def stamp(self) -> Stamp:
        return (self.author_id, self.timestamp)

    def contains(self, line: int) -> bool:
        return self.start_line <= line <= self.end_line

    def to_dict(self) -> dict:
        return {
            "start_line": self.start_line,
            "end_line": self.end_line,
            "author_id": self.author_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AttributionSpan:
        return cls(
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            author_id=AuthorId(data["author_id"]),
            timestamp=data.get("timestamp"),
        )


@dataclass(frozen=True)
class FileAttestation:
    """All spans of one committed file."""

    file: str
    attributions: tuple[AttributionSpan, ...]

    @property
    def line_count(self) -> int:
        return sum(span.line_count for span in self.attributions)

    def span_at(self, line: int) -> AttributionSpan | None:
        """The span covering a 1-based line number."""
        for span in self.attributions:
            if span.contains(line):
                return span
        return None

    def stamps(self) -> list[Stamp]:
        """Expand spans into one stamp per line."""
        result: list[Stamp] = []
        for span in self.attributions:
            result.extend([span.stamp] * span.line_count)
        return result

    def problems(self, expected_lines: int | None = None) -> list[str]:
        """Coverage violations: gaps, overlaps, bad ranges, wrong total."""
        issues = []
        next_line = 1
        for span in self.attributions:
            if span.end_line < span.start_line:
                issues.append(f"{self.file}: inverted span {span.start_line}-{span.end_line}")
            if span.start_line < next_line:
                issues.append(f"{self.file}: overlap at line {span.start_line}")
            elif span.start_line > next_line:
                issues.append(f"{self.file}: gap at lines {next_line}-{span.start_line - 1}")
            next_line = max(next_line, span.end_line + 1)
        if expected_lines is not None and next_line - 1 != expected_lines:
            issues.append(f"{self.file}: covers {next_line - 1} of {expected_lines} lines")
        return issues

    def to_dict(self) -> dict:
        return {"file": self.file, "attributions": [s.to_dict() for s in self.attributions]}

    @classmethod
    def from_dict(cls, data: dict) -> FileAttestation:
        spans = tuple(AttributionSpan.from_dict(s) for s in data.get("attributions", []))
        return cls(file=data["file"], attributions=tuple(sorted(spans, key=lambda s: s.start_line)))


def spans_from_stamps(stamps: list[Stamp]) -> tuple[AttributionSpan, ...]:
    """Coalesce consecutive equal stamps into spans."""
    spans: list[AttributionSpan] = []
    start = 1
    for index in range(1, len(stamps) + 1):
        at_end = index == len(stamps)
        if at_end or stamps[index] != stamps[start - 1]:
            author, ts = stamps[start - 1]
            spans.append(AttributionSpan(start_line=start, end_line=index, author_id=author, timestamp=ts))
            start = index + 1
    return tuple(spans)


@dataclass(frozen=True)
class LogMetadata:
    """Metadata block of an attestation log."""

    base_commit_sha: str
    timestamp: int
    prompt_references: dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "base_commit_sha": self.base_commit_sha,
            "timestamp": self.timestamp,
            "prompt_references": dict(self.prompt_references),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LogMetadata:
        return cls(
            base_commit_sha=data.get("base_commit_sha", ""),
            timestamp=int(data.get("timestamp", 0)),
            prompt_references=dict(data.get("prompt_references") or data.get("prompts") or {}),
        )


@dataclass(frozen=True)
class AttestationLog:
    """The attribution record of one commit."""

    metadata: LogMetadata
    attestations: tuple[FileAttestation, ...] = ()
    version: str = LEDGER_VERSION

    def for_file(self, path: str) -> FileAttestation | None:
        for attestation in self.attestations:
            if attestation.file == path:
                return attestation
        return None

    @property
    def files(self) -> tuple[str, ...]:
        return tuple(a.file for a in self.attestations)

    def problems(self, line_counts: dict[str, int] | None = None) -> list[str]:
        """Collect coverage violations across all files."""
        issues = []
        for attestation in self.attestations:
            expected = line_counts.get(attestation.file) if line_counts else None
            issues.extend(attestation.problems(expected))
        return issues

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "metadata": self.metadata.to_dict(),
            "attestations": [
                a.to_dict() for a in sorted(self.attestations, key=lambda a: a.file)
            ],
        }

    def to_json(self) -> str:
        """Canonical JSON: equal logs always serialize to equal bytes."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict) -> AttestationLog:
        return cls(
            version=str(data.get("version", LEDGER_VERSION)),
            metadata=LogMetadata.from_dict(data.get("metadata", {})),
            attestations=tuple(FileAttestation.from_dict(a) for a in data.get("attestations", [])),
        )

    @classmethod
    def from_json(cls, text: str) -> AttestationLog:
        return cls.from_dict(json.loads(text))


# =============================================================================
# Ledger (git notes)
# =============================================================================


class Ledger:
    """Publishes and fetches attestation logs as git notes."""

    def __init__(self, repo_path: Path, notes_ref: str = "ai-track", retries: int = 3) -> None:
        self.repo_path = Path(repo_path)
        self.notes_ref = notes_ref
        self.retries = max(1, retries)

    def publish(self, commit_id: str, log: AttestationLog) -> None:
        """Attach ``log`` to a commit, replacing any previous entry.

        Raises:
            ValueError: The log's spans overlap or leave gaps
            LedgerPublishFailedError: git notes kept failing after retries
        """
        issues = log.problems()
        if issues:
            raise ValueError(f"Refusing to publish invalid attestation log: {issues[0]}")

        payload = log.to_json()
        last_error: GitCommandError | None = None
        for attempt in range(1, self.retries + 1):
            try:
                git.notes_add(self.notes_ref, commit_id, payload, self.repo_path)
                logger.debug(f"Published attestation log for {commit_id[:12]}")
                return
            except GitCommandError as e:
                last_error = e
                logger.warning(f"Ledger publish attempt {attempt} for {commit_id[:12]} failed: {e}")
                if attempt < self.retries:
                    time.sleep(0.05 * attempt)

        raise LedgerPublishFailedError(
            f"Failed to publish attestation log for {commit_id}: {last_error}",
            commit=commit_id,
            attempts=self.retries,
        )

    def fetch(self, commit_id: str) -> AttestationLog:
        """Read a commit's attestation log.

        Raises:
            LedgerNotFoundError: The commit was never processed
            StorageCorruptionError: The note is not a valid attestation log
        """
        raw = git.notes_show(self.notes_ref, commit_id, self.repo_path)
        if raw is None:
            raise LedgerNotFoundError(f"No attestation log for {commit_id}", commit=commit_id)

        try:
            return AttestationLog.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageCorruptionError(
                f"Attestation log for {commit_id} is malformed: {e}",
                commit=commit_id,
            ) from e

    def find(self, commit_id: str) -> AttestationLog | None:
        """Like fetch(), but returns None when there is no entry."""
        try:
            return self.fetch(commit_id)
        except LedgerNotFoundError:
            return None

    def remove(self, commit_id: str) -> bool:
        """Delete a commit's attestation log. Returns True if one existed."""
        return git.notes_remove(self.notes_ref, commit_id, self.repo_path)

    def list_commits(self) -> tuple[str, ...]:
        """Commits that carry an attestation log."""
        return git.notes_list(self.notes_ref, self.repo_path)

    def stamps_for_blame(self, records: list[dict], file_path: str) -> list[Stamp]:
        """Stamp blamed lines from the attestation log of the commit owning each.

        Args:
            records: Output of ``git.parse_line_porcelain``
            file_path: Path that was blamed, for records without a filename

        Returns:
            One stamp per record. Uncommitted lines, and lines whose commit
            has no ledger entry or no span for the line, are Unattributed.

        Raises:
            StorageCorruptionError: An owning commit's note is malformed
        """
        logs: dict[str, AttestationLog | None] = {}
        stamps: list[Stamp] = []
        for record in records:
            commit = record["commit"]
            stamp = UNATTRIBUTED_STAMP
            if commit != NULL_SHA:
                if commit not in logs:
                    logs[commit] = self.find(commit)
                log = logs[commit]
                attestation = log.for_file(record["filename"] or file_path) if log else None
                span = attestation.span_at(record["orig_line"]) if attestation else None
                if span is not None:
                    stamp = span.stamp
            stamps.append(stamp)

        missing = [c for c, log in logs.items() if log is None]
        if missing:
            logger.debug(f"No ledger entry for {len(missing)} blamed commits of {file_path}")
        return stamps
