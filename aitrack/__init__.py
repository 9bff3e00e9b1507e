"""aitrack: line-level human/AI authorship tracking for git repositories."""

__version__ = "0.3.0"

# Branded types for type-safe IDs
from aitrack.types import AuthorId, CommitId, ContentHash

__all__ = [
    "__version__",
    "AuthorId",
    "CommitId",
    "ContentHash",
]
