"""Shared fixtures: isolated config and throwaway git repositories."""

import shutil
import subprocess
from pathlib import Path

import pytest

from aitrack import git


class GitRepo:
    """A scratch git repository driven through the git CLI."""

    def __init__(self, path: Path):
        self.path = path

    def git(self, *args: str, input_text: str | None = None) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=True,
            input=input_text,
            check=True,
        )
        return result.stdout.strip()

    def write(self, name: str, content: str) -> Path:
        file_path = self.path / name
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content)
        return file_path

    def read(self, name: str) -> str:
        return (self.path / name).read_text()

    def commit(self, message: str = "commit", *extra: str) -> str:
        """Stage everything, commit, and return the new HEAD sha."""
        self.git("add", "-A")
        self.git("commit", "-q", "--no-verify", "-m", message, *extra)
        return self.head()

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    @property
    def git_dir(self) -> Path:
        return self.path / ".git"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path_factory, monkeypatch):
    """Keep the real ~/.aitrack and AITRACK_* variables out of tests."""
    monkeypatch.setattr("aitrack.config.USER_DIR", tmp_path_factory.mktemp("user-config"))
    monkeypatch.delenv("AITRACK_NOTES_REF", raising=False)
    monkeypatch.delenv("AITRACK_LOG_LEVEL", raising=False)
    monkeypatch.setattr("aitrack.git._timeout", git.DEFAULT_TIMEOUT)


@pytest.fixture
def repo(tmp_path: Path) -> GitRepo:
    """An empty git repository with a configured identity (no commits)."""
    if shutil.which("git") is None:
        pytest.skip("git not available")

    path = tmp_path / "repo"
    path.mkdir()
    r = GitRepo(path)
    r.git("init", "-q")
    r.git("config", "user.email", "test@test.com")
    r.git("config", "user.name", "Test User")
    r.git("config", "commit.gpgsign", "false")
    return r
