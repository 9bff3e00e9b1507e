"""Tests for aitrack.checkpoint module.

Tests the checkpoint model and the checkpoint log:
- Serialization and author ids
- Line statistics and fingerprints
- Recording against a real working tree
- Sequencing under concurrent producers
- Sealing, roll-forward, reset and archive pruning
"""

import json
import threading
from pathlib import Path

import pytest

from aitrack.checkpoint import (
    AgentRef,
    Checkpoint,
    CheckpointKind,
    CheckpointLog,
    FileEntry,
    LineStats,
    compute_line_stats,
    diff_fingerprint,
    latest_hashes,
    matches_any,
    split_lines,
)
from aitrack.config import TrackConfig
from aitrack.errors import LogSealedError, NoChangesError, StorageCorruptionError
from aitrack.types import INITIAL_COMMIT


@pytest.fixture
def log(repo) -> CheckpointLog:
    """Checkpoint log of a repository with one commit."""
    repo.write("a.txt", "1\n2\n3\n")
    repo.commit("base")
    return CheckpointLog.open(repo.path, TrackConfig())


# =============================================================================
# Model Tests
# =============================================================================


class TestCheckpointModel:
    """Tests for Checkpoint and friends."""

    def test_round_trip(self):
        """to_dict/from_dict preserve every field."""
        cp = Checkpoint(
            seq=3,
            kind=CheckpointKind.AI_AGENT,
            timestamp=1_700_000_000_000,
            author_identity="Dev <dev@example.com>",
            diff_fingerprint="abc",
            entries=(FileEntry("a.txt", "h1"), FileEntry("b.txt", "h2")),
            line_stats=LineStats(additions=4, deletions=1, additions_sloc=3, deletions_sloc=1),
            agent=AgentRef(tool="claude", id="session-1", model="opus"),
        )

        data = cp.to_dict()

        assert data["kind"] == "AiAgent"
        assert data["author"] == "Dev <dev@example.com>"
        assert data["diff_hash"] == "abc"
        assert Checkpoint.from_dict(data) == cp

    def test_author_id(self):
        """AI checkpoints carry the agent tool in their author id."""
        base = dict(seq=1, timestamp=0, author_identity="x", diff_fingerprint="", entries=())

        assert Checkpoint(kind=CheckpointKind.HUMAN, **base).author_id == "Human"
        assert Checkpoint(kind=CheckpointKind.AI_AGENT, **base).author_id == "AiAgent"
        with_tool = Checkpoint(kind=CheckpointKind.AI_AGENT, agent=AgentRef("cursor", "s"), **base)
        assert with_tool.author_id == "AiAgent:cursor"

    def test_kind_parse(self):
        assert CheckpointKind.parse("aiagent") is CheckpointKind.AI_AGENT
        assert CheckpointKind.parse("Human") is CheckpointKind.HUMAN
        with pytest.raises(ValueError):
            CheckpointKind.parse("robot")

    def test_line_stats_add(self):
        total = LineStats(1, 2, 1, 1) + LineStats(3, 0, 2, 0)
        assert total == LineStats(additions=4, deletions=2, additions_sloc=3, deletions_sloc=1)


class TestHelpers:
    """Tests for module helpers."""

    def test_split_lines(self):
        assert split_lines("") == []
        assert split_lines("a\nb\n") == ["a", "b"]
        assert split_lines("a\nb") == ["a", "b"]
        assert split_lines("\n") == [""]

    def test_compute_line_stats(self):
        """Additions and deletions are counted per line, blanks excluded from sloc."""
        stats = compute_line_stats("1\n2\n3\n", "1\nX\n\n3\n")

        assert stats.additions == 2
        assert stats.deletions == 1
        assert stats.additions_sloc == 1
        assert stats.deletions_sloc == 1

    def test_compute_line_stats_new_file(self):
        assert compute_line_stats(None, "a\nb\n") == LineStats(2, 0, 2, 0)

    def test_fingerprint_order_independent(self):
        assert diff_fingerprint(["b", "a"]) == diff_fingerprint(["a", "b", "a"])
        assert diff_fingerprint(["a"]) != diff_fingerprint(["a", "b"])

    def test_matches_any(self):
        assert matches_any("pkg/poetry.lock", ["*.lock"])
        assert matches_any("dist/app.js", ["dist/*"])
        assert not matches_any("src/app.py", ["*.lock", "dist/*"])

    def test_latest_hashes(self):
        cps = [
            Checkpoint(1, CheckpointKind.HUMAN, 0, "x", "", (FileEntry("a", "h1"),)),
            Checkpoint(2, CheckpointKind.HUMAN, 0, "x", "", (FileEntry("a", "h2"), FileEntry("b", "h3"))),
        ]
        assert latest_hashes(cps) == {"a": "h2", "b": "h3"}


# =============================================================================
# Recording Tests
# =============================================================================


class TestRecord:
    """Tests for CheckpointLog.record()."""

    def test_clean_tree_raises_no_changes(self, log: CheckpointLog):
        """Nothing to snapshot is a recoverable NoChangesError."""
        with pytest.raises(NoChangesError):
            log.record(CheckpointKind.HUMAN, "dev")

    def test_records_modified_and_untracked(self, repo, log: CheckpointLog):
        """Modified and untracked files are snapshotted."""
        repo.write("a.txt", "1\nX\n3\n")
        repo.write("new.txt", "n\n")

        cp = log.record(CheckpointKind.HUMAN, "dev")

        assert cp.seq == 1
        assert set(cp.paths) == {"a.txt", "new.txt"}
        assert cp.line_stats.additions == 2
        assert cp.line_stats.deletions == 1
        store = log.snapshot_store(log.current_base())
        assert store.get(cp.entry_for("a.txt").content_hash) == b"1\nX\n3\n"
        assert log.read_all(log.current_base()) == [cp]

    def test_unchanged_since_last_checkpoint(self, repo, log: CheckpointLog):
        """A second checkpoint of identical content is refused."""
        repo.write("a.txt", "changed\n")
        log.record(CheckpointKind.AI_AGENT, "agent")

        with pytest.raises(NoChangesError):
            log.record(CheckpointKind.HUMAN, "dev")

    def test_only_changed_files_in_later_checkpoints(self, repo, log: CheckpointLog):
        """Entries cover files whose content moved since the last checkpoint."""
        repo.write("a.txt", "1\n2\n3\n4\n")
        repo.write("b.txt", "b\n")
        log.record(CheckpointKind.AI_AGENT, "agent")
        repo.write("b.txt", "b\nb2\n")

        second = log.record(CheckpointKind.HUMAN, "dev")

        assert second.seq == 2
        assert second.paths == ("b.txt",)
        assert second.line_stats.additions == 1

    def test_paths_restrict_recording(self, repo, log: CheckpointLog):
        """Only files under the given pathspecs are recorded."""
        repo.write("src/x.py", "x\n")
        repo.write("docs/y.md", "y\n")

        cp = log.record(
            CheckpointKind.AI_AGENT,
            "agent",
            agent=AgentRef("claude", "s1"),
            paths=["src"],
        )

        assert cp.paths == ("src/x.py",)
        assert cp.author_id == "AiAgent:claude"

    def test_ignored_and_binary_files_skipped(self, repo):
        """Ignored patterns and binary files never reach the store."""
        repo.write("a.txt", "base\n")
        repo.commit()
        log = CheckpointLog.open(repo.path, TrackConfig(ignore_patterns=["*.lock"]))
        repo.write("deps.lock", "pinned\n")
        (repo.path / "img.bin").write_bytes(b"\x00\x01\x02")
        repo.write("a.txt", "base\nmore\n")

        cp = log.record(CheckpointKind.HUMAN, "dev")

        assert cp.paths == ("a.txt",)

    def test_only_ineligible_files(self, repo, log: CheckpointLog):
        """A change set of binary files alone is NoChanges."""
        (repo.path / "img.bin").write_bytes(b"\x00\x01")

        with pytest.raises(NoChangesError):
            log.record(CheckpointKind.HUMAN, "dev")

    def test_deleted_files_not_recorded(self, repo, log: CheckpointLog):
        """Deleted files have nothing to snapshot."""
        (repo.path / "a.txt").unlink()

        with pytest.raises(NoChangesError):
            log.record(CheckpointKind.HUMAN, "dev")

    def test_initial_base_before_first_commit(self, repo):
        """Checkpoints before any commit go to the 'initial' log."""
        log = CheckpointLog.open(repo.path, TrackConfig())
        repo.write("first.txt", "hello\n")

        cp = log.record(CheckpointKind.AI_AGENT, "agent")

        assert log.current_base() == INITIAL_COMMIT
        assert log.read_all(INITIAL_COMMIT) == [cp]
        assert cp.line_stats.additions == 1

    def test_concurrent_appends_get_unique_seq(self, repo, log: CheckpointLog):
        """Parallel producers never share or reorder a sequence number."""
        workers = 8
        for i in range(workers):
            repo.write(f"w{i}.txt", f"worker {i}\n")

        recorded = []
        errors = []

        def produce(i):
            try:
                producer = CheckpointLog.open(repo.path, TrackConfig())
                recorded.append(producer.record(CheckpointKind.AI_AGENT, f"w{i}", paths=[f"w{i}.txt"]))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=produce, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        stored = log.read_all(log.current_base())
        assert [cp.seq for cp in stored] == list(range(1, workers + 1))
        assert sorted(cp.seq for cp in recorded) == list(range(1, workers + 1))
        assert {cp.paths for cp in stored} == {(f"w{i}.txt",) for i in range(workers)}


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    """Tests for sealing, roll-forward, reset and pruning."""

    def test_read_all_without_log(self, log: CheckpointLog):
        assert log.read_all(log.current_base()) == []

    def test_corrupt_log_raises(self, repo, log: CheckpointLog):
        """Unparseable checkpoints.json is storage corruption."""
        base = log.current_base()
        log_file = log.paths.log_dir(base) / "checkpoints.json"
        log_file.parent.mkdir(parents=True)
        log_file.write_text("{not json")

        with pytest.raises(StorageCorruptionError):
            log.read_all(base)

    def test_out_of_sequence_log_raises(self, log: CheckpointLog):
        """Non-increasing seq numbers mean the log was tampered with."""
        base = log.current_base()
        entry = {"kind": "Human", "timestamp": 0, "author": "x", "diff_hash": "", "entries": []}
        log_file = log.paths.log_dir(base) / "checkpoints.json"
        log_file.parent.mkdir(parents=True)
        log_file.write_text(
            json.dumps({"version": 1, "checkpoints": [{**entry, "seq": 2}, {**entry, "seq": 1}]})
        )

        with pytest.raises(StorageCorruptionError):
            log.read_all(base)

    def test_roll_forward_archives_and_opens_fresh_log(self, repo, log: CheckpointLog):
        """The old log moves to the archive; the new base starts empty."""
        base = log.current_base()
        repo.write("a.txt", "edited\n")
        log.record(CheckpointKind.AI_AGENT, "agent")
        new_commit = repo.commit("next")

        archived = log.roll_forward(new_commit)

        assert archived == log.paths.archive_dir(base)
        assert (archived / "SEALED").read_text().strip() == new_commit
        assert (archived / "checkpoints.json").exists()
        assert not log.paths.log_dir(base).exists()
        assert log.read_all(new_commit) == []
        assert (log.paths.log_dir(new_commit) / "checkpoints.json").exists()

    def test_append_to_sealed_log_raises(self, repo, log: CheckpointLog):
        """A producer still holding the old base is told to retry."""
        base = log.current_base()
        repo.write("a.txt", "edited\n")
        log.record(CheckpointKind.AI_AGENT, "agent")
        new_commit = repo.commit("next")
        log.roll_forward(new_commit)
        repo.write("a.txt", "edited again\n")

        with pytest.raises(LogSealedError):
            log.record(CheckpointKind.HUMAN, "dev", base_commit=base)

        # Retrying against HEAD succeeds
        assert log.record(CheckpointKind.HUMAN, "dev").seq == 1

    def test_seal_refuses_appends_but_keeps_history(self, repo, log: CheckpointLog):
        """A sealed log stays readable while new appends are refused."""
        base = log.current_base()
        repo.write("a.txt", "edited\n")
        first = log.record(CheckpointKind.AI_AGENT, "agent")
        new_commit = repo.commit("next")

        log.seal(base, new_commit)
        repo.write("a.txt", "edited again\n")

        with pytest.raises(LogSealedError):
            log.record(CheckpointKind.HUMAN, "dev", base_commit=base)
        assert [cp.seq for cp in log.read_all(base)] == [first.seq]

    def test_reset(self, repo, log: CheckpointLog):
        """--reset discards the active log."""
        repo.write("a.txt", "edited\n")
        log.record(CheckpointKind.HUMAN, "dev")

        assert log.reset()
        assert log.read_all(log.current_base()) == []
        assert not log.reset()

    def test_prune_archive(self, repo, log: CheckpointLog):
        """Only the newest archived logs are kept."""
        for i in range(4):
            repo.write("a.txt", f"rev {i}\n")
            log.record(CheckpointKind.HUMAN, "dev")
            log.roll_forward(repo.commit(f"c{i}"))

        assert len(log.archived_logs()) == 4
        assert log.prune_archive(keep=2) == 2
        assert len(log.archived_logs()) == 2

    def test_prune_archive_keep_zero_and_negative(self, repo, log: CheckpointLog):
        """keep=0 removes every archived log; a negative keep removes none."""
        for i in range(3):
            repo.write("a.txt", f"rev {i}\n")
            log.record(CheckpointKind.HUMAN, "dev")
            log.roll_forward(repo.commit(f"c{i}"))

        assert log.prune_archive(keep=-1) == 0
        assert len(log.archived_logs()) == 3
        assert log.prune_archive(keep=0) == 3
        assert log.archived_logs() == []
