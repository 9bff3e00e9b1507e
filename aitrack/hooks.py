"""Commit lifecycle for aitrack.

Two entry points meant to be called from git hooks:

- ``pre_commit``: remember HEAD and take a Human checkpoint so edits made by
  hand since the last AI checkpoint are not credited to the agent
- ``post_commit``: seal the checkpoint log, reconcile it against the new commit,
  publish the attestation log and roll the checkpoint log forward

Neither may block a commit: failures are logged and summarized, only
storage corruption escapes ``post_commit``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from aitrack import git
from aitrack.atomic import atomic_write_text
from aitrack.checkpoint import Checkpoint, CheckpointKind, CheckpointLog
from aitrack.config import TrackConfig
from aitrack.errors import (
    AiTrackException,
    LedgerPublishFailedError,
    LogSealedError,
    NoChangesError,
    StorageCorruptionError,
)
from aitrack.ledger import Ledger
from aitrack.reconcile import reconcile
from aitrack.types import INITIAL_COMMIT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostCommitSummary:
    """What post_commit did for one commit."""

    commit: str | None
    previous_commit: str | None = None
    checkpoints: int = 0
    files_attributed: tuple[str, ...] = ()
    unattributed_files: tuple[str, ...] = ()
    skipped_files: tuple[str, ...] = ()
    published: bool = False
    archived: Path | None = None
    errors: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "commit": self.commit,
            "previous_commit": self.previous_commit,
            "checkpoints": self.checkpoints,
            "files_attributed": list(self.files_attributed),
            "unattributed_files": list(self.unattributed_files),
            "skipped_files": list(self.skipped_files),
            "published": self.published,
            "archived": str(self.archived) if self.archived else None,
            "errors": list(self.errors),
        }


def resolve_author_identity(repo_path: Path | None = None) -> str:
    """Identity of whoever is committing, as "Name <email>".

    Resolution order: GIT_AUTHOR_NAME/GIT_AUTHOR_EMAIL, git config
    user.name/user.email, the EMAIL variable, then "unknown".
    """
    name = os.environ.get("GIT_AUTHOR_NAME") or git.get_config_value("user.name", repo_path)
    email = (
        os.environ.get("GIT_AUTHOR_EMAIL")
        or git.get_config_value("user.email", repo_path)
        or os.environ.get("EMAIL")
    )
    if name and email:
        return f"{name} <{email}>"
    return name or email or "unknown"


def pre_commit(repo_path: Path | None = None, config: TrackConfig | None = None) -> Checkpoint | None:
    """Record HEAD and checkpoint human edits before a commit.

    Returns:
        The Human checkpoint, or None when it was skipped or failed
    """
    try:
        log = CheckpointLog.open(repo_path, config)
    except ValueError as e:
        logger.warning(f"pre-commit: {e}")
        return None

    base = log.current_base()
    marker = atomic_write_text(log.paths.pre_commit_marker, f"{base}\n")
    if marker.is_err():
        logger.warning(f"pre-commit: could not record HEAD: {marker.unwrap_err().message}")

    try:
        if log.config.skip_human_without_ai and not log.has_ai_checkpoints(base):
            logger.debug("pre-commit: no AI checkpoints, skipping human checkpoint")
            return None
        return log.record(CheckpointKind.HUMAN, resolve_author_identity(log.repo_path), base_commit=base)
    except NoChangesError:
        logger.debug("pre-commit: nothing new to checkpoint")
    except LogSealedError as e:
        logger.info(f"pre-commit: {e.message}")
    except StorageCorruptionError as e:
        logger.error(f"pre-commit: {e.message}")
    except (AiTrackException, OSError) as e:
        logger.warning(f"pre-commit: checkpoint failed: {e}")
    return None


def _previous_commit(log: CheckpointLog, new_commit: str) -> str:
    """The commit the new commit's checkpoints were recorded against.

    Normally that is the first parent. After ``commit --amend`` it is the
    amended commit, which pre-commit recorded; the marker is trusted only if
    it is the first parent or a sibling of the new commit.
    """
    first_parent = git.get_first_parent(new_commit, log.repo_path)
    marker_path = log.paths.pre_commit_marker

    recorded = None
    if marker_path.exists():
        try:
            recorded = marker_path.read_text(encoding="utf-8").strip() or None
        except OSError as e:
            logger.debug(f"Unreadable pre-commit marker: {e}")
        try:
            marker_path.unlink()
        except OSError:
            pass

    if recorded and recorded != new_commit:
        if recorded == (first_parent or INITIAL_COMMIT):
            return recorded
        if recorded != INITIAL_COMMIT and git.get_first_parent(recorded, log.repo_path) == first_parent:
            logger.debug(f"Amend detected: {recorded[:12]} -> {new_commit[:12]}")
            return recorded
        logger.debug(f"Ignoring stale pre-commit marker {recorded[:12]}")

    return first_parent or INITIAL_COMMIT


def post_commit(repo_path: Path | None = None, config: TrackConfig | None = None) -> PostCommitSummary:
    """Attribute the commit HEAD now points at.

    Raises:
        StorageCorruptionError: Checkpoint log or snapshots are corrupt
    """
    try:
        log = CheckpointLog.open(repo_path, config)
    except ValueError as e:
        logger.warning(f"post-commit: {e}")
        return PostCommitSummary(commit=None, errors=(str(e),))

    new_commit = git.resolve_head(log.repo_path)
    if new_commit is None:
        return PostCommitSummary(commit=None, errors=("HEAD does not name a commit",))

    previous = _previous_commit(log, new_commit)
    ledger = Ledger(log.repo_path, log.config.notes_ref, log.config.publish_retries)
    errors: list[str] = []

    try:
        log.seal(previous, new_commit)
        with log.reading(previous) as (checkpoints, store):
            previous_log = ledger.find(previous) if previous != INITIAL_COMMIT else None
            result = reconcile(
                log.repo_path,
                checkpoints,
                store,
                previous_commit=previous,
                new_commit=new_commit,
                previous_log=previous_log,
                config=log.config,
            )
    except StorageCorruptionError:
        raise
    except (AiTrackException, OSError) as e:
        logger.error(f"post-commit: reconciliation failed for {new_commit[:12]}: {e}")
        return PostCommitSummary(commit=new_commit, previous_commit=previous, errors=(str(e),))

    published = False
    try:
        ledger.publish(new_commit, result.to_log(new_commit))
        published = True
    except LedgerPublishFailedError as e:
        logger.error(f"post-commit: {e.message}")
        errors.append(e.message)

    archived = None
    try:
        archived = log.roll_forward(new_commit, from_base=previous)
        log.prune_archive()
    except OSError as e:
        logger.error(f"post-commit: could not roll checkpoint log forward: {e}")
        errors.append(str(e))

    summary = PostCommitSummary(
        commit=new_commit,
        previous_commit=previous,
        checkpoints=len(checkpoints),
        files_attributed=tuple(a.file for a in result.attestations),
        unattributed_files=result.unattributed_files,
        skipped_files=result.skipped_files,
        published=published,
        archived=archived,
        errors=tuple(errors),
    )
    logger.info(
        f"post-commit {new_commit[:12]}: {len(summary.files_attributed)} files attributed "
        f"from {summary.checkpoints} checkpoints"
    )
    return summary
