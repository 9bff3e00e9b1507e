"""Attribution reconciler for aitrack.

Turns the checkpoint log of a base commit into per-line attribution of
what was actually committed. For every committed file:

1. Seed a line-stamp map from the file at the previous commit. Stamps come
   from the previous commit's attestation log when it has one for the
   file. Otherwise the file is blamed at the previous commit and each line
   takes its stamp from the ledger entry of the commit that last touched
   it, or ``Unattributed`` when that commit has none.
2. Fold the checkpoints touching the file in ``seq`` order. Each step diffs
   the running state against the snapshot: equal lines keep their stamp,
   inserted/replaced lines take the checkpoint's ``(author_id, timestamp)``.
3. Lines removed by a step go into a content-identity pool keyed by their
   stripped text. An inserted line whose text is pooled takes the oldest
   pooled stamp back, so moved or restored lines keep their provenance.
4. Diff the last state against the committed content. Residual edits get
   the stamp of the last checkpoint that touched the file or
   ``Unattributed``, depending on ``post_commit_policy``.
5. Coalesce equal consecutive stamps into spans.

Only one file's line map is held at a time. Per-file failures degrade that
file to ``Unattributed``; storage corruption aborts the whole run.
"""

from __future__ import annotations

import difflib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from aitrack import git
from aitrack.checkpoint import Checkpoint, CheckpointKind, decode_text, split_lines
from aitrack.config import TrackConfig
from aitrack.errors import GitCommandError, SnapshotMissingError
from aitrack.ledger import (
    UNATTRIBUTED_STAMP,
    AttestationLog,
    FileAttestation,
    Ledger,
    LogMetadata,
    Stamp,
    spans_from_stamps,
)
from aitrack.snapshot import SnapshotStore, is_text
from aitrack.types import INITIAL_COMMIT

logger = logging.getLogger(__name__)


class BudgetExceededError(Exception):
    """Reconciliation ran past its time budget."""


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one commit."""

    attestations: tuple[FileAttestation, ...] = ()
    prompt_references: dict[str, dict] = field(default_factory=dict)
    unattributed_files: tuple[str, ...] = ()  # Degraded by a failure or the time budget
    skipped_files: tuple[str, ...] = ()  # Binary, oversized or unreadable

    def to_log(self, commit_id: str, timestamp: int | None = None) -> AttestationLog:
        """Wrap the attestations in a publishable log for ``commit_id``."""
        return AttestationLog(
            metadata=LogMetadata(
                base_commit_sha=commit_id,
                timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
                prompt_references=dict(self.prompt_references),
            ),
            attestations=tuple(sorted(self.attestations, key=lambda a: a.file)),
        )


class _IdentityPool:
    """Stamps of removed lines, keyed by stripped text."""

    def __init__(self) -> None:
        self._pool: dict[str, list[Stamp]] = {}

    def add(self, line: str, stamp: Stamp) -> None:
        key = line.strip()
        if key:
            self._pool.setdefault(key, []).append(stamp)

    def take(self, line: str) -> Stamp | None:
        key = line.strip()
        candidates = self._pool.get(key)
        if not candidates:
            return None
        # Oldest provenance wins; the Unattributed baseline predates everything
        oldest = min(range(len(candidates)), key=lambda i: _stamp_age(candidates[i]))
        return candidates.pop(oldest)


def _stamp_age(stamp: Stamp) -> int:
    return -1 if stamp[1] is None else stamp[1]


def apply_edit(
    old_lines: list[str],
    old_stamps: list[Stamp],
    new_lines: list[str],
    stamp: Stamp,
    pool: _IdentityPool | None = None,
) -> list[Stamp]:
    """Carry stamps across one edit.

    Args:
        old_lines: Lines before the edit
        old_stamps: One stamp per old line
        new_lines: Lines after the edit
        stamp: Stamp for lines the edit introduced
        pool: Content-identity pool, or None to disable matching

    Returns:
        One stamp per new line
    """
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    opcodes = matcher.get_opcodes()

    # Pool every removal first so a line moved upwards can still be matched
    if pool is not None:
        for tag, i1, i2, _j1, _j2 in opcodes:
            if tag != "equal":
                for line, old_stamp in zip(old_lines[i1:i2], old_stamps[i1:i2]):
                    pool.add(line, old_stamp)

    new_stamps: list[Stamp] = []
    for tag, i1, i2, j1, j2 in opcodes:
        if tag == "equal":
            new_stamps.extend(old_stamps[i1:i2])
            continue

        for line in new_lines[j1:j2]:
            matched = pool.take(line) if pool is not None else None
            new_stamps.append(matched or stamp)

    return new_stamps


class Reconciler:
    """Replays one checkpoint log against final file contents."""

    def __init__(
        self,
        repo_path: Path,
        checkpoints: list[Checkpoint],
        store: SnapshotStore,
        previous_commit: str,
        previous_log: AttestationLog | None = None,
        config: TrackConfig | None = None,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.checkpoints = sorted(checkpoints, key=lambda cp: cp.seq)
        self.store = store
        self.previous_commit = previous_commit
        self.previous_log = previous_log
        self.config = config or TrackConfig()
        self.ledger = Ledger(self.repo_path, self.config.notes_ref, self.config.publish_retries)
        self._deadline: float | None = None
        self._seeds: dict[tuple[str, str | None], tuple[list[str], list[Stamp]]] = {}
        git.set_timeout(self.config.git_timeout)

    # ------------------------------------------------------------------
    # Per-file replay
    # ------------------------------------------------------------------

    def _check_budget(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise BudgetExceededError()

    def seed(self, path: str, old_path: str | None = None) -> tuple[list[str], list[Stamp]]:
        """Lines of the file at the previous commit, with their stamps.

        Raises:
            GitCommandError: The previous version could not be read or blamed
        """
        if self.previous_commit == INITIAL_COMMIT:
            return [], []

        key = (path, old_path)
        if key not in self._seeds:
            self._seeds[key] = self._load_seed(path, old_path)
        lines, stamps = self._seeds[key]
        return list(lines), list(stamps)

    def _load_seed(self, path: str, old_path: str | None) -> tuple[list[str], list[Stamp]]:
        for candidate in dict.fromkeys(p for p in (old_path, path) if p):
            data = git.show_file(self.previous_commit, candidate, self.repo_path)
            if data is None:
                continue
            lines = split_lines(decode_text(data))
            return lines, self._seed_stamps(candidate, lines)
        return [], []

    def _seed_stamps(self, path: str, lines: list[str]) -> list[Stamp]:
        attestation = self.previous_log.for_file(path) if self.previous_log else None
        if attestation is not None:
            recorded = attestation.stamps()
            if len(recorded) == len(lines):
                return recorded
            logger.warning(
                f"Ledger for {self.previous_commit[:12]} covers {len(recorded)} lines of "
                f"{path}, file has {len(lines)}; using Unattributed baseline"
            )
            return [UNATTRIBUTED_STAMP] * len(lines)

        # Last changed before the previous commit: ask each owning commit
        raw = git.blame_porcelain(path, self.previous_commit, self.repo_path)
        if raw is None:
            raise GitCommandError(
                f"git blame failed for {path} at {self.previous_commit}",
                path=path,
                ref=self.previous_commit,
            )
        stamps = self.ledger.stamps_for_blame(git.parse_line_porcelain(raw), path)
        if len(stamps) != len(lines):
            logger.warning(
                f"Blame of {path} at {self.previous_commit[:12]} gave {len(stamps)} lines, "
                f"file has {len(lines)}; using Unattributed baseline"
            )
            return [UNATTRIBUTED_STAMP] * len(lines)
        return stamps

    def _touching(self, path: str, old_path: str | None) -> list[tuple[Checkpoint, str]]:
        """Checkpoints with a snapshot of the file, paired with the snapshot hash."""
        touching = []
        for cp in self.checkpoints:
            entry = cp.entry_for(path) or (cp.entry_for(old_path) if old_path else None)
            if entry is not None:
                touching.append((cp, entry.content_hash))
        return touching

    def attribute_text(self, path: str, final_text: str, old_path: str | None = None) -> list[Stamp]:
        """Stamp every line of ``final_text``.

        Raises:
            SnapshotMissingError: A checkpoint's snapshot is gone
            GitCommandError: The previous version could not be read
            BudgetExceededError: The time budget ran out mid-replay
            StorageCorruptionError: A snapshot no longer matches its hash
        """
        seed_lines, seed_stamps = self.seed(path, old_path)
        final_lines = split_lines(final_text)

        # Nothing survived from any checkpoint
        if final_lines == seed_lines:
            return list(seed_stamps)

        pool = _IdentityPool() if self.config.content_identity else None
        lines, stamps = seed_lines, seed_stamps
        residual = UNATTRIBUTED_STAMP

        for cp, digest in self._touching(path, old_path):
            self._check_budget()
            snapshot_lines = split_lines(decode_text(self.store.get(digest)))
            step_stamp: Stamp = (cp.author_id, cp.timestamp)
            stamps = apply_edit(lines, stamps, snapshot_lines, step_stamp, pool)
            lines = snapshot_lines
            if self.config.post_commit_policy == "last_checkpoint":
                residual = step_stamp

        return apply_edit(lines, stamps, final_lines, residual, pool)

    # ------------------------------------------------------------------
    # Commit reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, new_commit: str, committed_files: tuple[git.CommittedFile, ...]) -> ReconcileResult:
        """Attribute every file the new commit contains changes for."""
        budget = self.config.time_budget_seconds
        self._deadline = time.monotonic() + budget if budget and budget > 0 else None

        attestations: list[FileAttestation] = []
        unattributed: list[str] = []
        skipped: list[str] = []
        budget_logged = False

        for committed in committed_files:
            if committed.deleted:
                continue
            path = committed.path

            try:
                data = git.show_file(new_commit, path, self.repo_path)
            except GitCommandError as e:
                logger.warning(f"Could not read {path} at {new_commit[:12]}, skipping: {e}")
                skipped.append(path)
                continue
            if data is None:
                logger.debug(f"{path} is not in the tree of {new_commit[:12]}, skipping")
                skipped.append(path)
                continue
            if not is_text(data) or len(data) > self.config.max_file_bytes:
                logger.debug(f"Skipping ineligible committed file {path}")
                skipped.append(path)
                continue

            final_text = decode_text(data)
            try:
                self._check_budget()
                stamps = self.attribute_text(path, final_text, old_path=committed.old_path)
            except BudgetExceededError:
                if not budget_logged:
                    logger.warning(
                        f"Reconciliation exceeded {budget}s budget; "
                        f"remaining files are Unattributed"
                    )
                    budget_logged = True
                stamps = [UNATTRIBUTED_STAMP] * len(split_lines(final_text))
                unattributed.append(path)
            except (SnapshotMissingError, GitCommandError) as e:
                logger.warning(f"Attribution failed for {path}, marking Unattributed: {e}")
                stamps = [UNATTRIBUTED_STAMP] * len(split_lines(final_text))
                unattributed.append(path)

            attestations.append(FileAttestation(file=path, attributions=spans_from_stamps(stamps)))

        result = ReconcileResult(
            attestations=tuple(attestations),
            prompt_references=self._prompt_references(attestations),
            unattributed_files=tuple(unattributed),
            skipped_files=tuple(skipped),
        )
        logger.debug(
            f"Reconciled {new_commit[:12]}: {len(attestations)} files, "
            f"{len(unattributed)} unattributed, {len(skipped)} skipped"
        )
        return result

    def _prompt_references(self, attestations: list[FileAttestation]) -> dict[str, dict]:
        """Agent sessions behind the AI authors that survived into the commit."""
        authors = {span.author_id for a in attestations for span in a.attributions}
        references: dict[str, dict] = {}
        if self.previous_log is not None:
            for author, ref in self.previous_log.metadata.prompt_references.items():
                if author in authors:
                    references[author] = dict(ref)
        for cp in self.checkpoints:
            if cp.kind is CheckpointKind.AI_AGENT and cp.agent and cp.author_id in authors:
                references[cp.author_id] = cp.agent.to_dict()
        return references


def reconcile(
    repo_path: Path,
    checkpoints: list[Checkpoint],
    store: SnapshotStore,
    previous_commit: str,
    new_commit: str,
    committed_files: tuple[git.CommittedFile, ...] | None = None,
    previous_log: AttestationLog | None = None,
    config: TrackConfig | None = None,
) -> ReconcileResult:
    """Reconcile a checkpoint log against a commit.

    Args:
        repo_path: Working tree root
        checkpoints: The log of ``previous_commit``
        store: Snapshot store of that log
        previous_commit: Base the checkpoints were recorded on (or "initial")
        new_commit: The commit being attributed
        committed_files: Files the commit changed (defaults to diff-tree)
        previous_log: Attestation log of previous_commit, if any
        config: Reconciliation settings

    Returns:
        ReconcileResult with one attestation per committed text file
    """
    if committed_files is None:
        committed_files = git.get_committed_files(new_commit, repo_path)
    reconciler = Reconciler(repo_path, checkpoints, store, previous_commit, previous_log, config)
    return reconciler.reconcile(new_commit, committed_files)
