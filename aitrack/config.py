"""Configuration management for aitrack.

Storage Structure
-----------------
aitrack keeps all per-repository state inside the git control directory,
so it never shows up in the working tree or in commits:

<git-dir>/ai-track/
├── config.yaml                 # Repository-level overrides (optional)
├── working-logs/
│   ├── <base-commit>/          # Active checkpoint log for one base commit
│   │   ├── checkpoints.json
│   │   └── blobs/<sha256>      # Snapshot store
│   └── <base-commit>.lock      # Append/roll-forward lock
├── archive/<base-commit>/      # Sealed logs kept for audit
└── pre-commit-head             # HEAD recorded by the pre-commit hook

~/.aitrack/config.yaml          # User-level defaults

Attestation logs live outside this directory, in git notes under
``refs/notes/<notes_ref>``.

Configuration cascade (highest to lowest):
1. Environment (AITRACK_NOTES_REF, AITRACK_LOG_LEVEL)
2. Repository config (<git-dir>/ai-track/config.yaml)
3. User config (~/.aitrack/config.yaml)
4. Built-in defaults
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from aitrack.atomic import atomic_write_yaml

logger = logging.getLogger(__name__)

# Standard paths
USER_DIR = Path.home() / ".aitrack"
TRACK_DIR_NAME = "ai-track"
CONFIG_FILE = "config.yaml"

POST_COMMIT_POLICIES = ("last_checkpoint", "unattributed")


@dataclass
class TrackConfig:
    """Tunable behaviour of the attribution engine."""

    # Ledger
    notes_ref: str = "ai-track"
    publish_retries: int = 3

    # Snapshotting
    max_file_bytes: int = 5_000_000
    ignore_patterns: list[str] = field(default_factory=list)

    # Reconciliation
    post_commit_policy: str = "last_checkpoint"  # last_checkpoint | unattributed
    content_identity: bool = True
    time_budget_seconds: float = 5.0

    # Lifecycle
    skip_human_without_ai: bool = True
    archive_keep: int = 20

    # Host VCS
    git_timeout: int = 10

    log_level: str = "WARNING"

    @classmethod
    def load(cls, config_dir: Path, base: "TrackConfig | None" = None) -> "TrackConfig":
        """Load config from a directory holding config.yaml.

        Args:
            config_dir: Directory to read config.yaml from
            base: Config whose values act as defaults for missing keys

        Returns:
            TrackConfig with values from file layered over ``base``
        """
        config = base or cls()
        config_path = config_dir / CONFIG_FILE
        if not config_path.exists():
            return config

        try:
            with open(config_path) as f:
                overrides = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable config {config_path}: {e}")
            return config

        if not isinstance(overrides, dict):
            logger.warning(f"Ignoring malformed config {config_path}")
            return config

        # Only apply known fields
        valid_fields = {f.name for f in fields(cls)}
        values = config.to_dict()
        for key, value in overrides.items():
            if key in valid_fields:
                values[key] = value
            else:
                logger.debug(f"Unknown config key ignored: {key}")
        return cls(**values)

    def save(self, config_dir: Path) -> Path:
        """Save non-default values to config_dir/config.yaml."""
        defaults = TrackConfig()
        data = {
            key: value
            for key, value in self.to_dict().items()
            if getattr(defaults, key) != value
        }
        if not data:
            data = {"_version": 1}

        config_path = config_dir / CONFIG_FILE
        result = atomic_write_yaml(config_path, data)
        if result.is_err():
            raise OSError(f"Failed to save config: {result.unwrap_err().message}")
        return config_path

    def apply_env(self) -> "TrackConfig":
        """Apply environment variable overrides in place."""
        if notes_ref := os.environ.get("AITRACK_NOTES_REF"):
            self.notes_ref = notes_ref
        if log_level := os.environ.get("AITRACK_LOG_LEVEL"):
            self.log_level = log_level.upper()
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "notes_ref": self.notes_ref,
            "publish_retries": self.publish_retries,
            "max_file_bytes": self.max_file_bytes,
            "ignore_patterns": list(self.ignore_patterns),
            "post_commit_policy": self.post_commit_policy,
            "content_identity": self.content_identity,
            "time_budget_seconds": self.time_budget_seconds,
            "skip_human_without_ai": self.skip_human_without_ai,
            "archive_keep": self.archive_keep,
            "git_timeout": self.git_timeout,
            "log_level": self.log_level,
        }


def get_track_dir(git_dir: Path) -> Path:
    """Get the aitrack state directory inside a git control directory."""
    return git_dir / TRACK_DIR_NAME


def get_track_config(git_dir: Path | None = None) -> TrackConfig:
    """Load TrackConfig with env → repository → user → default cascade.

    Args:
        git_dir: The repository's git control directory, if known

    Returns:
        TrackConfig with merged values
    """
    config = TrackConfig.load(USER_DIR)
    if git_dir is not None:
        config = TrackConfig.load(get_track_dir(git_dir), base=config)

    config.apply_env()

    if config.post_commit_policy not in POST_COMMIT_POLICIES:
        logger.warning(
            f"Unknown post_commit_policy {config.post_commit_policy!r}, "
            f"using 'last_checkpoint'"
        )
        config.post_commit_policy = "last_checkpoint"

    return config


@dataclass(frozen=True)
class TrackPaths:
    """Resolved on-disk locations for one repository."""

    root: Path

    @classmethod
    def for_git_dir(cls, git_dir: Path) -> "TrackPaths":
        return cls(root=get_track_dir(git_dir))

    @property
    def working_logs(self) -> Path:
        return self.root / "working-logs"

    @property
    def archive(self) -> Path:
        return self.root / "archive"

    @property
    def pre_commit_marker(self) -> Path:
        return self.root / "pre-commit-head"

    def log_dir(self, base_commit: str) -> Path:
        return self.working_logs / _sanitize_key(base_commit)

    def lock_path(self, base_commit: str) -> Path:
        return self.working_logs / f"{_sanitize_key(base_commit)}.lock"

    def archive_dir(self, base_commit: str) -> Path:
        return self.archive / _sanitize_key(base_commit)


def _sanitize_key(key: str) -> str:
    """Reject keys that could escape the working-logs directory."""
    if not key or "/" in key or "\\" in key or key in (".", ".."):
        raise ValueError(f"Invalid log key: {key!r}")
    return key
