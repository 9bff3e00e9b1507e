"""Branded identifier types for aitrack.

NewType wrappers keep commit ids, blob hashes and author ids from being
mixed up at call sites while costing nothing at runtime.
"""

from typing import NewType

CommitId = NewType("CommitId", str)
ContentHash = NewType("ContentHash", str)
AuthorId = NewType("AuthorId", str)

# Base commit key used before the repository has any commits
INITIAL_COMMIT = CommitId("initial")

# Sentinel author for lines with no checkpoint evidence
UNATTRIBUTED = AuthorId("Unattributed")

# All-zero sha git blame reports for uncommitted lines
NULL_SHA = "0" * 40
