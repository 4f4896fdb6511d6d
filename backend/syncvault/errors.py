"""Error taxonomy shared by storage, metadata and sync.

Each error also subclasses the builtin it refines, so callers that only
know about ``ValueError`` or ``FileNotFoundError`` keep working.
"""

from typing import Any, Optional


class SyncVaultError(Exception):
    """Base class for all errors raised by the sync backend."""


class PathValidationError(SyncVaultError, ValueError):
    """Unsafe or empty path (or user id). Raised before any filesystem call."""


class HashMismatchError(PathValidationError):
    """Content or patch does not match the hash it was declared with."""


class NotFoundError(SyncVaultError, FileNotFoundError):
    """File or directory does not exist in the user's namespace."""


class StorageError(SyncVaultError, OSError):
    """Permission or disk failure. Surfaced as an internal error, never retried."""


class ConflictError(SyncVaultError):
    """Both client and server changed a path since the last common version."""

    def __init__(self, message: str, conflict: Optional[Any] = None) -> None:
        super().__init__(message)
        self.conflict = conflict
