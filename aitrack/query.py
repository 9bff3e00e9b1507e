"""Query engine for aitrack.

Read-only views over the authorship ledger:

- ``blame``: per-line authorship of a file, combining ``git blame`` (which
  commit last touched each line) with that commit's attestation log
- ``show``: reduction of one commit's attestation log into CommitStats
- ``stats``: CommitStats folded over a commit range
- ``working_stats``: authorship of uncommitted work, from the active
  checkpoint log
"""

from __future__ import annotations

import difflib
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aitrack import git
from aitrack.checkpoint import CheckpointLog, decode_text, matches_any, split_lines
from aitrack.config import TrackConfig, get_track_config
from aitrack.errors import GitCommandError, SnapshotMissingError
from aitrack.ledger import AttestationLog, Ledger
from aitrack.reconcile import Reconciler
from aitrack.snapshot import is_text
from aitrack.types import NULL_SHA, UNATTRIBUTED, AuthorId

logger = logging.getLogger(__name__)


def is_ai_author(author_id: str) -> bool:
    return author_id == "AiAgent" or author_id.startswith("AiAgent:")


def is_human_author(author_id: str) -> bool:
    return author_id == "Human"


def _totals(lines_by_author: dict[str, int]) -> tuple[int, int, int]:
    human = ai = other = 0
    for author, count in lines_by_author.items():
        if is_human_author(author):
            human += count
        elif is_ai_author(author):
            ai += count
        else:
            other += count
    return human, ai, other


# =============================================================================
# Result Types
# =============================================================================


@dataclass(frozen=True)
class BlameLine:
    """Authorship of one line of a file."""

    line_number: int  # 1-based, in the blamed version
    content: str
    commit: str | None  # None for uncommitted lines
    author_id: AuthorId
    timestamp: int | None = None
    git_author: str = ""

    @property
    def is_ai(self) -> bool:
        return is_ai_author(self.author_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "line": self.line_number,
            "commit": self.commit,
            "author_id": self.author_id,
            "timestamp": self.timestamp,
            "git_author": self.git_author,
            "content": self.content,
        }


@dataclass(frozen=True)
class CommitStats:
    """Line counts by author over one or more commits.

    ``combine`` is associative and commutative with ``CommitStats()`` as
    identity, so stats over a range can be folded in any order.
    """

    lines_by_author: dict[str, int] = field(default_factory=dict)
    files_touched: frozenset[str] = frozenset()
    commits: frozenset[str] = frozenset()
    missing_ledger: frozenset[str] = frozenset()  # Commits with no attestation log

    @property
    def has_ledger(self) -> bool:
        return bool(self.commits - self.missing_ledger)

    @property
    def human_lines(self) -> int:
        return _totals(self.lines_by_author)[0]

    @property
    def ai_lines(self) -> int:
        return _totals(self.lines_by_author)[1]

    @property
    def unattributed_lines(self) -> int:
        return _totals(self.lines_by_author)[2]

    @property
    def total_lines(self) -> int:
        return sum(self.lines_by_author.values())

    def combine(self, other: CommitStats) -> CommitStats:
        merged = Counter(self.lines_by_author)
        merged.update(other.lines_by_author)
        return CommitStats(
            lines_by_author=dict(merged),
            files_touched=self.files_touched | other.files_touched,
            commits=self.commits | other.commits,
            missing_ledger=self.missing_ledger | other.missing_ledger,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "commits": sorted(self.commits),
            "missing_ledger": sorted(self.missing_ledger),
            "files_touched": sorted(self.files_touched),
            "lines_by_author": dict(sorted(self.lines_by_author.items())),
            "human_lines": self.human_lines,
            "ai_lines": self.ai_lines,
            "unattributed_lines": self.unattributed_lines,
            "total_lines": self.total_lines,
        }


@dataclass(frozen=True)
class WorkingStats:
    """Authorship of lines added since the base commit, not yet committed."""

    base_commit: str
    checkpoint_count: int
    lines_by_author: dict[str, int] = field(default_factory=dict)
    files_touched: frozenset[str] = frozenset()

    @property
    def human_lines(self) -> int:
        return _totals(self.lines_by_author)[0]

    @property
    def ai_lines(self) -> int:
        return _totals(self.lines_by_author)[1]

    @property
    def unattributed_lines(self) -> int:
        return _totals(self.lines_by_author)[2]

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_commit": self.base_commit,
            "checkpoints": self.checkpoint_count,
            "files_touched": sorted(self.files_touched),
            "lines_by_author": dict(sorted(self.lines_by_author.items())),
            "human_lines": self.human_lines,
            "ai_lines": self.ai_lines,
            "unattributed_lines": self.unattributed_lines,
        }


# =============================================================================
# Query Engine
# =============================================================================


class QueryEngine:
    """Answers authorship questions for one repository."""

    def __init__(self, repo_path: Path, config: TrackConfig | None = None) -> None:
        self.repo_path = Path(repo_path)
        self.git_dir = git.get_git_dir(self.repo_path) or self.repo_path / ".git"
        self.config = config or get_track_config(self.git_dir)
        self.ledger = Ledger(self.repo_path, self.config.notes_ref, self.config.publish_retries)
        git.set_timeout(self.config.git_timeout)

    def blame(self, file_path: str, ref: str | None = "HEAD") -> list[BlameLine]:
        """Authorship of every line of a file.

        Args:
            file_path: Repository-relative path
            ref: Revision to blame, or None for the working copy

        Returns:
            One BlameLine per line. Lines whose commit has no ledger entry
            (or no span for the line) are Unattributed; uncommitted lines are
            Unattributed with no commit.

        Raises:
            GitCommandError: git blame failed (unknown file or revision)
        """
        raw = git.blame_porcelain(file_path, ref, self.repo_path)
        if raw is None:
            raise GitCommandError(f"git blame failed for {file_path}", path=file_path, ref=ref or "")

        records = git.parse_line_porcelain(raw)
        stamps = self.ledger.stamps_for_blame(records, file_path)
        return [
            BlameLine(
                line_number=record["final_line"],
                content=record.get("content", ""),
                commit=None if record["commit"] == NULL_SHA else record["commit"],
                author_id=author_id,
                timestamp=timestamp,
                git_author=record["author"],
            )
            for record, (author_id, timestamp) in zip(records, stamps)
        ]

    def show(self, commit: str, ignore: list[str] | None = None) -> CommitStats:
        """Line counts by author for one commit's attestation log."""
        patterns = list(self.config.ignore_patterns) + list(ignore or [])
        log = self.ledger.find(commit)
        if log is None:
            return CommitStats(commits=frozenset({commit}), missing_ledger=frozenset({commit}))
        return stats_from_log(commit, log, patterns)

    def stats(self, revision_range: str | None = None, ignore: list[str] | None = None) -> CommitStats:
        """Fold ``show`` over ``a..b``, a single commit, or HEAD.

        Raises:
            ValueError: The range names no commits
        """
        revision_range = revision_range or "HEAD"
        if ".." in revision_range:
            commits = git.rev_list(revision_range, self.repo_path)
        else:
            resolved = git.resolve_commit(revision_range, self.repo_path)
            commits = (resolved,) if resolved else ()

        if not commits and ".." not in revision_range:
            raise ValueError(f"Unknown revision: {revision_range}")

        total = CommitStats()
        for commit in commits:
            total = total.combine(self.show(commit, ignore))
        return total

    def working_stats(self, ignore: list[str] | None = None) -> WorkingStats:
        """Attribute lines added in the working tree since HEAD.

        Replays the active checkpoint log against the current working-tree
        files and counts the stamps of lines not present at the base commit.
        """
        patterns = list(self.config.ignore_patterns) + list(ignore or [])
        log = CheckpointLog(self.repo_path, self.git_dir, self.config)
        base = log.current_base()

        counts: Counter[str] = Counter()
        touched: set[str] = set()
        with log.reading(base) as (checkpoints, store):
            reconciler = Reconciler(
                self.repo_path,
                checkpoints,
                store,
                previous_commit=base,
                previous_log=self.ledger.find(base),
                config=self.config,
            )
            for change in git.get_changed_paths(self.repo_path):
                if change.deleted or matches_any(change.path, patterns):
                    continue
                file_path = self.repo_path / change.path
                try:
                    data = file_path.read_bytes()
                except OSError as e:
                    logger.debug(f"Skipping unreadable {change.path}: {e}")
                    continue
                if not is_text(data) or len(data) > self.config.max_file_bytes:
                    continue

                text = decode_text(data)
                added = None
                try:
                    seed_lines, _ = reconciler.seed(change.path, change.orig_path)
                    added = _added_line_indexes(seed_lines, split_lines(text))
                    if not added:
                        continue
                    stamps = reconciler.attribute_text(change.path, text, old_path=change.orig_path)
                except (SnapshotMissingError, GitCommandError) as e:
                    logger.warning(f"Attribution failed for {change.path}: {e}")
                    line_count = len(split_lines(text))
                    if added is None:
                        added = list(range(line_count))
                    stamps = [(UNATTRIBUTED, None)] * line_count
                touched.add(change.path)
                counts.update(stamps[i][0] for i in added)

        return WorkingStats(
            base_commit=base,
            checkpoint_count=len(checkpoints),
            lines_by_author=dict(counts),
            files_touched=frozenset(touched),
        )


def stats_from_log(commit: str, log: AttestationLog, ignore: list[str] | None = None) -> CommitStats:
    """Pure reduction of an attestation log into CommitStats."""
    counts: Counter[str] = Counter()
    files = set()
    for attestation in log.attestations:
        if ignore and matches_any(attestation.file, ignore):
            continue
        files.add(attestation.file)
        for span in attestation.attributions:
            counts[span.author_id] += span.line_count
    return CommitStats(
        lines_by_author=dict(counts),
        files_touched=frozenset(files),
        commits=frozenset({commit}),
    )


def _added_line_indexes(old_lines: list[str], new_lines: list[str]) -> list[int]:
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    added: list[int] = []
    for tag, _i1, _i2, j1, j2 in matcher.get_opcodes():
        if tag != "equal":
            added.extend(range(j1, j2))
    return added
