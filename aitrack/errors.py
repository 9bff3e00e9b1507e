"""Error types for aitrack.

Two styles are used, depending on the layer:

- Storage helpers (atomic writes) return ``Result`` values carrying a
  structured ``TrackError`` so callers can decide how loud a failure is.
- Engine operations raise exceptions from the ``AiTrackException`` family.
  Each maps to one condition of the error taxonomy and carries a stable
  ``code`` string.

Recoverable conditions (``NoChangesError``, ``LedgerNotFoundError`` ...)
are expected in normal operation. ``StorageCorruptionError`` is the only
fatal one: it means an invariant of the on-disk data was broken.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class TrackError:
    """Structured error payload."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    """Wrap a value in an Ok result."""
    return Ok(value)


def err(error: E) -> Err[E]:
    """Wrap an error in an Err result."""
    return Err(error)


def format_error(error: TrackError) -> str:
    """Render a TrackError for terminal output."""
    text = f"[{error.code}] {error.message}"
    if error.context:
        details = ", ".join(f"{k}={v}" for k, v in sorted(error.context.items()))
        text += f" ({details})"
    return text


# =============================================================================
# Exception taxonomy
# =============================================================================


class AiTrackException(Exception):
    """Base class for aitrack engine errors."""

    code = "AITRACK_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_error(self) -> TrackError:
        """Convert to a structured TrackError."""
        return TrackError(code=self.code, message=self.message, context=dict(self.context))


class NoChangesError(AiTrackException):
    """The working tree has nothing new to checkpoint."""

    code = "NO_CHANGES"


class IneligibleFileError(AiTrackException):
    """A file is binary, too large or unreadable and was skipped."""

    code = "INELIGIBLE_FILE"


class LogSealedError(AiTrackException):
    """The checkpoint log was sealed by a roll-forward; retry on the new base."""

    code = "LOG_SEALED"


class SnapshotMissingError(AiTrackException):
    """A checkpoint references a blob that is not in the snapshot store."""

    code = "SNAPSHOT_MISSING"


class LedgerPublishFailedError(AiTrackException):
    """Writing an attestation log to commit metadata failed."""

    code = "LEDGER_PUBLISH_FAILED"


class LedgerNotFoundError(AiTrackException):
    """No attestation log exists for a commit."""

    code = "LEDGER_NOT_FOUND"


class StorageCorruptionError(AiTrackException):
    """Persisted data violates an invariant. Needs manual intervention."""

    code = "STORAGE_CORRUPTION"


class GitCommandError(AiTrackException):
    """A git invocation failed."""

    code = "GIT_COMMAND_FAILED"
