"""Tests for aitrack.atomic module."""

import json
import os
import stat
from pathlib import Path
from unittest.mock import patch

import yaml

from aitrack.atomic import (
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    atomic_write_yaml,
)


class TestAtomicWriteBytes:
    """Tests for atomic_write_bytes()."""

    def test_creates_file_and_parents(self, tmp_path: Path):
        """Writes bytes, creating missing directories."""
        file_path = tmp_path / "nested" / "blob"

        result = atomic_write_bytes(file_path, b"\x01\x02data")

        assert result.is_ok()
        assert result.unwrap() == file_path
        assert file_path.read_bytes() == b"\x01\x02data"

    def test_applies_mode(self, tmp_path: Path):
        """The requested permissions are set on the final file."""
        file_path = tmp_path / "readonly"

        atomic_write_bytes(file_path, b"x", mode=0o444)

        assert stat.S_IMODE(os.stat(file_path).st_mode) == 0o444

    def test_leaves_no_temp_files(self, tmp_path: Path):
        """Only the target file remains after a successful write."""
        atomic_write_bytes(tmp_path / "out", b"content")

        assert [p.name for p in tmp_path.iterdir()] == ["out"]

    def test_failed_rename_cleans_up_and_returns_err(self, tmp_path: Path):
        """A failure during rename returns Err and removes the temp file."""
        file_path = tmp_path / "out"

        with patch("aitrack.atomic.os.replace", side_effect=OSError("disk full")):
            result = atomic_write_bytes(file_path, b"content")

        assert result.is_err()
        assert result.unwrap_err().code == "ATOMIC_WRITE_FAILED"
        assert list(tmp_path.iterdir()) == []

    def test_permission_denied(self, tmp_path: Path):
        """PermissionError maps to a dedicated error code."""
        with patch("aitrack.atomic.tempfile.mkstemp", side_effect=PermissionError("nope")):
            result = atomic_write_bytes(tmp_path / "out", b"x")

        assert not result.ok
        assert result.error.code == "ATOMIC_PERMISSION_DENIED"


class TestAtomicWriteText:
    """Tests for atomic_write_text()."""

    def test_overwrites_existing_file(self, tmp_path: Path):
        """Existing content is replaced in one step."""
        file_path = tmp_path / "marker"
        file_path.write_text("old")

        result = atomic_write_text(file_path, "new\n")

        assert result.is_ok()
        assert file_path.read_text() == "new\n"

    def test_encodes_utf8(self, tmp_path: Path):
        """Text is stored as UTF-8."""
        file_path = tmp_path / "unicode.txt"

        atomic_write_text(file_path, "naïve ✓")

        assert file_path.read_bytes() == "naïve ✓".encode("utf-8")


class TestAtomicWriteJson:
    """Tests for atomic_write_json()."""

    def test_writes_indented_json_with_trailing_newline(self, tmp_path: Path):
        """JSON output is readable and newline-terminated."""
        file_path = tmp_path / "checkpoints.json"

        atomic_write_json(file_path, {"version": 1, "checkpoints": []})

        raw = file_path.read_text()
        assert raw.endswith("\n")
        assert json.loads(raw) == {"version": 1, "checkpoints": []}

    def test_unserializable_data_returns_err(self, tmp_path: Path):
        """Values json cannot encode produce an Err, not an exception."""
        result = atomic_write_json(tmp_path / "bad.json", {"x": object()})

        assert result.is_err()
        assert not (tmp_path / "bad.json").exists()


class TestAtomicWriteYaml:
    """Tests for atomic_write_yaml()."""

    def test_round_trips_through_safe_load(self, tmp_path: Path):
        """YAML output parses back to the same mapping."""
        file_path = tmp_path / "config.yaml"
        data = {"notes_ref": "custom", "ignore_patterns": ["*.lock", "dist/*"]}

        atomic_write_yaml(file_path, data)

        assert yaml.safe_load(file_path.read_text()) == data
