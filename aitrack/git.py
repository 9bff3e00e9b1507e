"""Git integration for aitrack.

Wraps the git CLI to provide the host VCS capabilities the engine consumes:
- HEAD / commit resolution
- Working-tree status (staged, unstaged, untracked)
- File content at a revision
- Files included in a commit, with rename detection
- Line blame
- Commit-scoped metadata through git notes

Query helpers return None/empty values on failure, like the rest of the
module. Writes that must not fail silently (notes), and file reads where
"absent" and "failed" mean different things, raise GitCommandError.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aitrack.errors import GitCommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

# Seconds before any git invocation is abandoned (TrackConfig.git_timeout)
_timeout = DEFAULT_TIMEOUT


def set_timeout(seconds: int | None) -> None:
    """Set the timeout applied to git commands that don't pass their own."""
    global _timeout
    _timeout = seconds if seconds and seconds > 0 else DEFAULT_TIMEOUT


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class ChangedPath:
    """One entry of working-tree status relative to HEAD."""

    path: str  # Repository-relative path
    staged: bool  # Index differs from HEAD
    unstaged: bool  # Worktree differs from index (or untracked)
    deleted: bool  # Removed in index or worktree
    orig_path: str | None = None  # Source path of a staged rename


@dataclass(frozen=True)
class CommittedFile:
    """A file touched by a commit, as reported by diff-tree."""

    path: str
    status: str  # A, M, D, R, C, T
    old_path: str | None = None  # Set for renames/copies

    @property
    def deleted(self) -> bool:
        return self.status == "D"


# =============================================================================
# Git CLI Helpers
# =============================================================================


def _run_git(
    args: list[str],
    cwd: Path | None = None,
    timeout: int | None = None,
    strip: bool = True,
) -> str | None:
    """Run a git command and return stdout, or None on failure.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (defaults to current)
        timeout: Seconds before the command is abandoned
        strip: Strip surrounding whitespace from the output

    Returns:
        Stdout string on success, None on failure
    """
    try:
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            text=True,
            timeout=timeout or _timeout,
            cwd=cwd,
        )
        if result.returncode == 0:
            return result.stdout.strip() if strip else result.stdout
        logger.debug(f"git {args[0]} exited {result.returncode}: {result.stderr.strip()}")
        return None
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"Git command failed: {e}")
        return None


def _run_git_bytes(
    args: list[str],
    cwd: Path | None = None,
    timeout: int | None = None,
) -> bytes | None:
    """Run a git command and return raw stdout bytes, or None on failure."""
    try:
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            timeout=timeout or _timeout,
            cwd=cwd,
        )
        if result.returncode == 0:
            return result.stdout
        return None
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.debug(f"Git command failed: {e}")
        return None


def _run_git_checked(
    args: list[str],
    cwd: Path | None = None,
    input_text: str | None = None,
    timeout: int | None = None,
) -> str:
    """Run a git command that must succeed.

    Raises:
        GitCommandError: On non-zero exit, timeout or missing git binary
    """
    try:
        result = subprocess.run(
            ["git", *args],  # noqa: S603, S607
            capture_output=True,
            text=True,
            input=input_text,
            timeout=timeout or _timeout,
            cwd=cwd,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        raise GitCommandError(f"git {args[0]} failed: {e}", args=" ".join(args)) from e

    if result.returncode != 0:
        raise GitCommandError(
            f"git {args[0]} exited with {result.returncode}: {result.stderr.strip()}",
            args=" ".join(args),
        )
    return result.stdout


def get_git_dir(path: Path | None = None) -> Path | None:
    """Get the absolute git control directory, or None outside a repo."""
    output = _run_git(["rev-parse", "--absolute-git-dir"], cwd=path)
    return Path(output) if output else None


def get_repo_root(path: Path | None = None) -> Path | None:
    """Get the top-level working tree directory."""
    output = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    return Path(output) if output else None


def resolve_commit(ref: str, path: Path | None = None) -> str | None:
    """Resolve a ref to a full commit SHA.

    Returns:
        40-char SHA, or None if the ref does not name a commit
    """
    return _run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=path)


def resolve_head(path: Path | None = None) -> str | None:
    """Get the full SHA of HEAD, or None on an unborn branch."""
    return resolve_commit("HEAD", path)


def get_first_parent(commit: str, path: Path | None = None) -> str | None:
    """Get the first parent of a commit, or None for a root commit."""
    return resolve_commit(f"{commit}^", path)


def get_config_value(key: str, path: Path | None = None) -> str | None:
    """Read a git config value."""
    value = _run_git(["config", "--get", key], cwd=path)
    return value or None


def rev_list(revision_range: str, path: Path | None = None) -> tuple[str, ...]:
    """List commits in a range, newest first."""
    output = _run_git(["rev-list", revision_range], cwd=path)
    if not output:
        return ()
    return tuple(output.split("\n"))


# =============================================================================
# Working tree
# =============================================================================


def get_changed_paths(path: Path | None = None) -> tuple[ChangedPath, ...]:
    """Enumerate staged, unstaged and untracked changes relative to HEAD.

    Parses ``git status --porcelain=v2 -z``, which is stable across git
    versions and handles unusual file names.

    Args:
        path: Repository path

    Returns:
        Tuple of ChangedPath, in the order git reports them
    """
    output = _run_git(
        ["status", "--porcelain=v2", "-z", "--untracked-files=all"],
        cwd=path,
        strip=False,
    )
    if not output:
        return ()
    return parse_status_v2(output)


def parse_status_v2(output: str) -> tuple[ChangedPath, ...]:
    """Parse NUL-separated porcelain v2 status output."""
    tokens = output.split("\0")
    changes: list[ChangedPath] = []

    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token:
            continue

        kind = token[0]
        if kind == "1":
            parts = token.split(" ", 8)
            if len(parts) < 9:
                continue
            changes.append(_changed_from_xy(parts[1], parts[8]))
        elif kind == "2":
            parts = token.split(" ", 9)
            if len(parts) < 10:
                continue
            # Renamed/copied entries carry the original path as the next token
            orig_path = tokens[i] if i < len(tokens) else None
            i += 1
            changes.append(_changed_from_xy(parts[1], parts[9], orig_path=orig_path))
        elif kind == "u":
            parts = token.split(" ", 10)
            if len(parts) < 11:
                continue
            changes.append(ChangedPath(path=parts[10], staged=True, unstaged=True, deleted=False))
        elif kind == "?":
            changes.append(ChangedPath(path=token[2:], staged=False, unstaged=True, deleted=False))
        # "!" (ignored) and "#" (headers) are not changes

    return tuple(changes)


def _changed_from_xy(xy: str, file_path: str, orig_path: str | None = None) -> ChangedPath:
    x, y = xy[0], xy[1]
    return ChangedPath(
        path=file_path,
        staged=x != ".",
        unstaged=y != ".",
        deleted="D" in (x, y),
        orig_path=orig_path,
    )


# =============================================================================
# Revisions
# =============================================================================


def show_file(rev: str, file_path: str, path: Path | None = None) -> bytes | None:
    """Read a file's raw content at a revision.

    Returns:
        File bytes, or None if the file does not exist at that revision

    Raises:
        GitCommandError: git failed for another reason (unknown revision,
            timeout, path that is not a blob)
    """
    data = _run_git_bytes(["cat-file", "blob", f"{rev}:{file_path}"], cwd=path)
    if data is not None:
        return data

    # Tell "not in this tree" apart from a failing git
    listing = _run_git(["ls-tree", "-z", "--name-only", rev, "--", file_path], cwd=path)
    if listing == "":
        return None
    raise GitCommandError(f"Could not read {file_path} at {rev}", path=file_path, ref=rev)


def get_committed_files(commit: str, path: Path | None = None) -> tuple[CommittedFile, ...]:
    """Get the files a commit changed relative to its first parent.

    Uses ``diff-tree -M`` so renames are reported with their source path.
    ``--root`` makes the initial commit list every file as added.
    """
    output = _run_git(
        ["diff-tree", "--no-commit-id", "-r", "-M", "--root", "--name-status", "-z", commit],
        cwd=path,
        strip=False,
    )
    if not output:
        return ()
    return parse_name_status(output)


def parse_name_status(output: str) -> tuple[CommittedFile, ...]:
    """Parse NUL-separated ``--name-status -z`` output."""
    tokens = [t for t in output.split("\0")]
    files: list[CommittedFile] = []

    i = 0
    while i < len(tokens):
        status = tokens[i].strip()
        i += 1
        if not status:
            continue
        letter = status[0]
        if letter in ("R", "C"):
            if i + 1 >= len(tokens):
                break
            old_path, new_path = tokens[i], tokens[i + 1]
            i += 2
            files.append(CommittedFile(path=new_path, status=letter, old_path=old_path))
        else:
            if i >= len(tokens):
                break
            files.append(CommittedFile(path=tokens[i], status=letter))
            i += 1

    return tuple(files)


def blame_porcelain(file_path: str, ref: str | None = "HEAD", path: Path | None = None) -> str | None:
    """Run ``git blame --line-porcelain`` for a file.

    Args:
        file_path: Repository-relative path
        ref: Revision to blame, or None for the working copy (uncommitted
            lines are reported against the all-zero commit id)
        path: Repository path
    """
    args = ["blame", "--line-porcelain"]
    if ref is not None:
        args.append(ref)
    return _run_git([*args, "--", file_path], cwd=path, strip=False)


def parse_line_porcelain(raw: str) -> list[dict[str, Any]]:
    """Parse ``git blame --line-porcelain`` output into per-line records.

    Each record holds ``commit``, ``orig_line``, ``final_line``,
    ``filename`` (path of the line at ``commit``), ``author`` and
    ``content``.
    """
    records: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for line in raw.split("\n"):
        if current is None:
            parts = line.split()
            if len(parts) < 3 or len(parts[0]) != 40:
                continue
            try:
                current = {
                    "commit": parts[0],
                    "orig_line": int(parts[1]),
                    "final_line": int(parts[2]),
                    "filename": "",
                    "author": "",
                }
            except ValueError:
                continue
        elif line.startswith("\t"):
            current["content"] = line[1:]
            records.append(current)
            current = None
        elif line.startswith("author "):
            current["author"] = line[7:]
        elif line.startswith("filename "):
            current["filename"] = line[9:]

    return records


# =============================================================================
# Notes (commit-scoped metadata)
# =============================================================================


def notes_add(notes_ref: str, commit: str, message: str, path: Path | None = None) -> None:
    """Attach (or overwrite) a note on a commit.

    Raises:
        GitCommandError: If git refuses the write
    """
    _run_git_checked(
        ["notes", f"--ref={notes_ref}", "add", "-f", "-F", "-", commit],
        cwd=path,
        input_text=message,
    )


def notes_show(notes_ref: str, commit: str, path: Path | None = None) -> str | None:
    """Read the note attached to a commit, or None if there is none."""
    return _run_git(["notes", f"--ref={notes_ref}", "show", commit], cwd=path)


def notes_remove(notes_ref: str, commit: str, path: Path | None = None) -> bool:
    """Remove a commit's note. Returns True if one was removed."""
    return _run_git(["notes", f"--ref={notes_ref}", "remove", commit], cwd=path) is not None


def notes_list(notes_ref: str, path: Path | None = None) -> tuple[str, ...]:
    """List the commits that carry a note under notes_ref."""
    output = _run_git(["notes", f"--ref={notes_ref}", "list"], cwd=path)
    if not output:
        return ()
    commits = []
    for line in output.split("\n"):
        parts = line.split()
        if len(parts) == 2:
            commits.append(parts[1])
    return tuple(commits)
