"""Tests for path validation and normalization."""

import pytest

from syncvault.errors import PathValidationError
from syncvault.files.paths import (
    is_hidden_or_reserved,
    is_safe,
    normalize,
    require_safe,
    safe_user_segment,
)


@pytest.mark.parametrize(
    "path",
    [
        "../../etc/passwd",
        "a/../b",
        "a/..",
        "..",
        "foo..bar",
        "/etc/passwd",
        "\\windows\\system32",
        "a\\..\\b",
        "bad\x00name",
        "line\nbreak",
    ],
)
def test_is_safe_rejects(path: str) -> None:
    """Traversal, absolute paths and control characters are unsafe."""
    assert is_safe(path) is False


@pytest.mark.parametrize("path", ["a.txt", "docs/a.txt", "docs\\a.txt", "a/./b", "", "Ünïcode/ファイル.md"])
def test_is_safe_accepts(path: str) -> None:
    """Plain relative paths are safe."""
    assert is_safe(path) is True


def test_normalize() -> None:
    """Backslashes become slashes; empty and '.' segments disappear."""
    assert normalize("docs\\sub//a.txt") == "docs/sub/a.txt"
    assert normalize("./a/./b/") == "a/b"
    assert normalize("") == ""


def test_require_safe_returns_normalized() -> None:
    assert require_safe("docs\\a.txt") == "docs/a.txt"


def test_require_safe_rejects_root_unless_allowed() -> None:
    """Empty path is only valid where the root is meant."""
    with pytest.raises(PathValidationError):
        require_safe("")
    assert require_safe("", allow_root=True) == ""
    assert require_safe("./", allow_root=True) == ""


def test_require_safe_raises_value_error() -> None:
    """PathValidationError is a ValueError for callers that only know builtins."""
    with pytest.raises(ValueError):
        require_safe("../x")


def test_safe_user_segment() -> None:
    """Emails and numeric ids are accepted; separators and traversal are not."""
    assert safe_user_segment("alice@example.com") == "alice@example.com"
    assert safe_user_segment(" 42 ") == "42"
    for bad in ("", "..", "a/b", "a\\b", "a;b", "a%2e"):
        with pytest.raises(PathValidationError):
            safe_user_segment(bad)


def test_is_hidden_or_reserved() -> None:
    assert is_hidden_or_reserved(".git/config")
    assert is_hidden_or_reserved(".env")
    assert is_hidden_or_reserved("docs/.versions/a.txt")
    assert not is_hidden_or_reserved("docs/a.txt")
    assert not is_hidden_or_reserved("docs/.hidden-inside")
