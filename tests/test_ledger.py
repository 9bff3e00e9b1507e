"""Tests for aitrack.ledger module."""

import json
from unittest.mock import patch

import pytest

from aitrack.errors import GitCommandError, LedgerNotFoundError, LedgerPublishFailedError, StorageCorruptionError
from aitrack.ledger import (
    AttestationLog,
    AttributionSpan,
    FileAttestation,
    Ledger,
    LogMetadata,
    spans_from_stamps,
)
from aitrack.types import UNATTRIBUTED


def _log(*attestations, refs=None) -> AttestationLog:
    return AttestationLog(
        metadata=LogMetadata(base_commit_sha="c" * 40, timestamp=1000, prompt_references=refs or {}),
        attestations=tuple(attestations),
    )


SAMPLE = FileAttestation(
    "src/app.py",
    (
        AttributionSpan(1, 3, "Human", 100),
        AttributionSpan(4, 4, "AiAgent:claude", 200),
        AttributionSpan(5, 6, UNATTRIBUTED, None),
    ),
)


# =============================================================================
# Model Tests
# =============================================================================


class TestSpans:
    """Tests for span helpers."""

    def test_coalesce_stamps(self):
        """Consecutive equal stamps collapse into one span."""
        stamps = [("Human", 1), ("Human", 1), ("AiAgent", 2), ("Human", 1)]

        spans = spans_from_stamps(stamps)

        assert [(s.start_line, s.end_line, s.author_id) for s in spans] == [
            (1, 2, "Human"),
            (3, 3, "AiAgent"),
            (4, 4, "Human"),
        ]

    def test_same_author_different_time_kept_apart(self):
        spans = spans_from_stamps([("Human", 1), ("Human", 2)])
        assert len(spans) == 2

    def test_empty(self):
        assert spans_from_stamps([]) == ()

    def test_expand_back_to_stamps(self):
        """stamps() is the inverse of coalescing."""
        stamps = SAMPLE.stamps()

        assert len(stamps) == SAMPLE.line_count == 6
        assert spans_from_stamps(stamps) == SAMPLE.attributions

    def test_span_at(self):
        assert SAMPLE.span_at(4).author_id == "AiAgent:claude"
        assert SAMPLE.span_at(7) is None


class TestValidation:
    """Tests for coverage checks."""

    def test_valid(self):
        assert _log(SAMPLE).problems({"src/app.py": 6}) == []

    def test_gap_overlap_and_length(self):
        broken = FileAttestation(
            "x.py",
            (
                AttributionSpan(1, 2, "Human"),
                AttributionSpan(2, 3, "Human"),
                AttributionSpan(5, 5, "Human"),
            ),
        )

        issues = broken.problems(expected_lines=6)

        assert any("overlap" in i for i in issues)
        assert any("gap" in i for i in issues)
        assert any("covers 5 of 6" in i for i in issues)


class TestSerialization:
    """Tests for AttestationLog JSON."""

    def test_round_trip(self):
        log = _log(SAMPLE, refs={"AiAgent:claude": {"tool": "claude", "id": "s1", "model": "opus"}})

        assert AttestationLog.from_json(log.to_json()) == log

    def test_canonical_json(self):
        """Attestation order does not change the serialized bytes."""
        other = FileAttestation("a.txt", (AttributionSpan(1, 1, "Human", 1),))

        assert _log(SAMPLE, other).to_json() == _log(other, SAMPLE).to_json()

    def test_document_shape(self):
        data = json.loads(_log(SAMPLE).to_json())

        assert data["version"] == "1.0"
        assert set(data["metadata"]) == {"base_commit_sha", "timestamp", "prompt_references"}
        assert data["attestations"][0]["attributions"][2] == {
            "start_line": 5,
            "end_line": 6,
            "author_id": "Unattributed",
            "timestamp": None,
        }


# =============================================================================
# Ledger Tests
# =============================================================================


class TestLedger:
    """Tests for publish/fetch on git notes."""

    @pytest.fixture
    def commit(self, repo):
        repo.write("src/app.py", "".join(f"{i}\n" for i in range(6)))
        return repo.commit()

    def test_publish_then_fetch(self, repo, commit):
        ledger = Ledger(repo.path)
        log = _log(SAMPLE)

        ledger.publish(commit, log)

        assert ledger.fetch(commit) == log
        assert ledger.list_commits() == (commit,)

    def test_publish_is_idempotent(self, repo, commit):
        """Re-publishing replaces the entry instead of adding one."""
        ledger = Ledger(repo.path)
        ledger.publish(commit, _log(SAMPLE))
        first = repo.git("notes", "--ref=ai-track", "show", commit)

        ledger.publish(commit, _log(SAMPLE))

        assert repo.git("notes", "--ref=ai-track", "show", commit) == first
        assert ledger.list_commits() == (commit,)

    def test_republish_replaces(self, repo, commit):
        ledger = Ledger(repo.path)
        ledger.publish(commit, _log(SAMPLE))
        replacement = _log(FileAttestation("src/app.py", (AttributionSpan(1, 6, "Human", 9),)))

        ledger.publish(commit, replacement)

        assert ledger.fetch(commit) == replacement

    def test_custom_notes_ref(self, repo, commit):
        Ledger(repo.path, notes_ref="authorship").publish(commit, _log(SAMPLE))

        assert Ledger(repo.path).find(commit) is None
        assert Ledger(repo.path, notes_ref="authorship").find(commit) is not None

    def test_fetch_missing(self, repo, commit):
        """no entry is LedgerNotFoundError, find() gives None."""
        ledger = Ledger(repo.path)

        with pytest.raises(LedgerNotFoundError):
            ledger.fetch(commit)
        assert ledger.find(commit) is None

    def test_fetch_malformed(self, repo, commit):
        repo.git("notes", "--ref=ai-track", "add", "-m", "not json", commit)

        with pytest.raises(StorageCorruptionError):
            Ledger(repo.path).fetch(commit)

    def test_remove(self, repo, commit):
        ledger = Ledger(repo.path)
        ledger.publish(commit, _log(SAMPLE))

        assert ledger.remove(commit)
        assert ledger.find(commit) is None

    def test_invalid_log_refused(self, repo, commit):
        bad = _log(FileAttestation("x", (AttributionSpan(2, 3, "Human"),)))

        with pytest.raises(ValueError):
            Ledger(repo.path).publish(commit, bad)

    def test_publish_retries_then_fails(self, tmp_path):
        """Persistent git failures surface as LedgerPublishFailedError."""
        ledger = Ledger(tmp_path, retries=3)

        with (
            patch("aitrack.ledger.git.notes_add", side_effect=GitCommandError("locked")) as notes_add,
            patch("aitrack.ledger.time.sleep"),
        ):
            with pytest.raises(LedgerPublishFailedError):
                ledger.publish("a" * 40, _log(SAMPLE))

        assert notes_add.call_count == 3

    def test_publish_recovers_after_transient_failure(self, tmp_path):
        ledger = Ledger(tmp_path, retries=3)

        with (
            patch("aitrack.ledger.git.notes_add", side_effect=[GitCommandError("locked"), None]) as notes_add,
            patch("aitrack.ledger.time.sleep"),
        ):
            ledger.publish("a" * 40, _log(SAMPLE))

        assert notes_add.call_count == 2
