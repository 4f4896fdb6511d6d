"""Tests for hashing, the recursive walk and the presentation tree."""

import hashlib
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from syncvault.files.metadata import (
    HASH_CHUNK_SIZE,
    build_tree,
    content_type_for,
    file_metadata,
    group_by_directory,
    hash_file,
    walk,
)
from syncvault.files.models import FileMetadata, TreeNode, to_wire

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _meta(path: str, is_dir: bool = False) -> FileMetadata:
    return FileMetadata(
        name=path.rsplit("/", 1)[-1],
        path=path,
        size=0,
        is_dir=is_dir,
        mod_time=_EPOCH,
        hash=None if is_dir else "0" * 64,
    )


def _shape(nodes: List[TreeNode]) -> list:
    return [(n.name, n.is_dir, _shape(n.children)) for n in nodes]


def test_hash_file_streams_large_files(tmp_path: Path) -> None:
    """Hash over several chunks equals the one-shot SHA-256."""
    data = bytes(range(256)) * (HASH_CHUNK_SIZE // 256 * 3 + 7)
    target = tmp_path / "big.bin"
    target.write_bytes(data)
    assert hash_file(target) == hashlib.sha256(data).hexdigest()


def test_file_metadata(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "a.txt").write_bytes(b"abc")
    meta = file_metadata(tmp_path, "docs/a.txt")
    assert meta.name == "a.txt"
    assert meta.path == "docs/a.txt"
    assert meta.size == 3
    assert meta.hash == hashlib.sha256(b"abc").hexdigest()
    assert meta.mod_time.tzinfo is not None


def test_file_metadata_missing(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        file_metadata(tmp_path, "nope")


def test_wire_form_uses_camel_case(tmp_path: Path) -> None:
    """Directories have no hash key on the wire; keys are camelCase."""
    (tmp_path / "d").mkdir()
    wire = to_wire(file_metadata(tmp_path, "d"))
    assert wire["isDir"] is True
    assert "modTime" in wire
    assert "hash" not in wire


def test_walk_empty_and_missing(tmp_path: Path) -> None:
    """Empty or missing base returns an empty list."""
    assert walk(tmp_path) == []
    assert walk(tmp_path / "missing") == []


def test_walk_excludes_hidden_and_versions(tmp_path: Path) -> None:
    """Dot paths and .versions subtrees are never walked."""
    (tmp_path / "docs" / "sub").mkdir(parents=True)
    (tmp_path / "docs" / "a.txt").write_text("a")
    (tmp_path / "docs" / "sub" / "b.txt").write_text("b")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    (tmp_path / "docs" / ".versions").mkdir()
    (tmp_path / "docs" / ".versions" / "a.txt.1").write_text("old")
    (tmp_path / ".env").write_text("secret")
    paths = sorted(m.path for m in walk(tmp_path))
    assert paths == ["docs", "docs/a.txt", "docs/sub", "docs/sub/b.txt"]


def test_walk_directories_have_no_hash(tmp_path: Path) -> None:
    (tmp_path / "d").mkdir()
    (tmp_path / "d" / "f").write_bytes(b"x")
    by_path = {m.path: m for m in walk(tmp_path)}
    assert by_path["d"].is_dir and by_path["d"].hash is None
    assert by_path["d/f"].hash == hashlib.sha256(b"x").hexdigest()


def test_build_tree_directories_first_case_insensitive() -> None:
    """Directories sort before files; names compare case-insensitively."""
    tree = build_tree([_meta("b.txt"), _meta("A", is_dir=True), _meta("a.txt")])
    assert [n.name for n in tree] == ["A", "a.txt", "b.txt"]


def test_build_tree_creates_missing_parents() -> None:
    """A file whose parents are not listed gets its directories created implicitly."""
    tree = build_tree([_meta("x/y/z.txt")])
    assert _shape(tree) == [("x", True, [("y", True, [("z.txt", False, [])])])]
    assert tree[0].children[0].path == "x/y"


def test_build_tree_nested_sorting() -> None:
    files = [
        _meta("docs/zeta.md"),
        _meta("docs/Alpha", is_dir=True),
        _meta("docs/beta.md"),
        _meta("docs/Alpha/inner.txt"),
        _meta("readme.md"),
    ]
    tree = build_tree(files)
    assert [n.name for n in tree] == ["docs", "readme.md"]
    assert [n.name for n in tree[0].children] == ["Alpha", "beta.md", "zeta.md"]
    assert [n.name for n in tree[0].children[0].children] == ["inner.txt"]


def test_build_tree_independent_of_input_order() -> None:
    """Any permutation of the input yields the same tree."""
    files = [
        _meta("a", is_dir=True),
        _meta("a/B.txt"),
        _meta("a/c", is_dir=True),
        _meta("a/c/d.bin"),
        _meta("Z.txt"),
        _meta("y.txt"),
    ]
    expected = _shape(build_tree(files))
    rng = random.Random(7)
    for _ in range(10):
        shuffled = files[:]
        rng.shuffle(shuffled)
        assert _shape(build_tree(shuffled)) == expected


def test_build_tree_child_listed_before_parent() -> None:
    """Parent seen after its child keeps a single node."""
    tree = build_tree([_meta("p/child.txt"), _meta("p", is_dir=True)])
    assert _shape(tree) == [("p", True, [("child.txt", False, [])])]


def test_group_by_directory() -> None:
    grouped = group_by_directory([_meta("a.txt"), _meta("docs/b.txt"), _meta("docs/c.txt")])
    assert sorted(grouped) == ["", "docs"]
    assert [m.name for m in grouped["docs"]] == ["b.txt", "c.txt"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("notes.txt", "text/plain"),
        ("README.MD", "text/plain"),
        ("data.json", "application/json"),
        ("index.html", "text/html"),
        ("photo.jpg", "application/octet-stream"),
        ("noext", "application/octet-stream"),
    ],
)
def test_content_type_for(name: str, expected: str) -> None:
    assert content_type_for(name) == expected
