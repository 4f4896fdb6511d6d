"""Path safety: reject traversal before any filesystem call, normalize relative paths."""

import logging
import re

from syncvault.errors import PathValidationError

log = logging.getLogger(__name__)

# User id used as the namespace folder name: allow @ and dots (emails, numeric ids)
_SAFE_USER_ID = re.compile(r"^[a-zA-Z0-9_.@-]+$")

# Reserved subtree for file versions; never listed, never walked
VERSIONS_DIR = ".versions"

# Staging area for in-flight uploads at the namespace root; hidden like any dot path
UPLOAD_DIR = ".upload"


def _segments(relative_path: str) -> list:
    """Split on / and \\, dropping empty and '.' segments."""
    return [s for s in relative_path.replace("\\", "/").split("/") if s and s != "."]


def is_safe(relative_path: str) -> bool:
    """
    True if relative_path cannot escape the namespace.
    Rejects '..' anywhere in the raw string, absolute paths, '..' segments after
    normalization, and control characters. Pure function of its input.
    """
    if ".." in relative_path:
        return False
    if relative_path.startswith("/") or relative_path.startswith("\\"):
        return False
    if any(ord(c) < 32 for c in relative_path):
        return False
    return all(segment != ".." for segment in _segments(relative_path))


def normalize(relative_path: str) -> str:
    """Forward-slash form without leading/trailing slash or '.' segments. Root is ''."""
    return "/".join(_segments(relative_path))


def require_safe(relative_path: str, allow_root: bool = False) -> str:
    """
    Validate and normalize relative_path.
    Raises PathValidationError if unsafe, or empty when allow_root is False.
    """
    if relative_path is None or not is_safe(relative_path):
        log.warning("Rejected unsafe path %r", relative_path)
        raise PathValidationError(f"Unsafe path: {relative_path!r}")
    normalized = normalize(relative_path)
    if not normalized and not allow_root:
        raise PathValidationError("Path is required")
    return normalized


def safe_user_segment(user_id: str) -> str:
    """Return user_id if safe as a single path segment (no traversal)."""
    user_id = (user_id or "").strip()
    if not user_id or ".." in user_id or "/" in user_id or "\\" in user_id:
        raise PathValidationError("Invalid user id for path")
    if not _SAFE_USER_ID.match(user_id):
        raise PathValidationError("Invalid user id for path")
    return user_id


def is_hidden_or_reserved(relative_path: str) -> bool:
    """True for paths starting with '.' or containing a .versions segment."""
    normalized = normalize(relative_path)
    if normalized.startswith("."):
        return True
    return VERSIONS_DIR in normalized.split("/")
