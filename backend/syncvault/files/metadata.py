"""Metadata for namespace entries: per-file hashing, recursive walk, presentation tree."""

import hashlib
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from syncvault.files.models import FileMetadata, TreeNode
from syncvault.files.paths import is_hidden_or_reserved, normalize

log = logging.getLogger(__name__)

# Stream files through the hash in chunks; never hold the whole file in memory
HASH_CHUNK_SIZE = 64 * 1024

_CONTENT_TYPES = {
    ".txt": "text/plain",
    ".md": "text/plain",
    ".json": "application/json",
    ".html": "text/html",
}


def hash_file(path: Path) -> str:
    """SHA-256 hex digest of the file at path, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def file_metadata(base: Path, relative_path: str) -> FileMetadata:
    """
    Stat base/relative_path and build its metadata. The hash is always recomputed
    from current disk content. Raises OSError (e.g. FileNotFoundError) on failure.
    """
    rel = normalize(relative_path)
    full = base / rel if rel else base
    st = full.stat()
    is_dir = full.is_dir()
    return FileMetadata(
        name=full.name if rel else "",
        path=rel,
        size=st.st_size,
        is_dir=is_dir,
        mod_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        hash=None if is_dir else hash_file(full),
    )


def walk(user_base: Path) -> List[FileMetadata]:
    """
    All entries under user_base (files and directories), excluding the root itself,
    paths starting with '.', and anything inside a .versions directory.
    Entries whose metadata cannot be computed are skipped.
    """
    result: List[FileMetadata] = []
    if not user_base.is_dir():
        return result

    def _on_error(e: OSError) -> None:
        log.debug("walk skipped %s: %s", e.filename, e)

    for dirpath, dirnames, filenames in os.walk(user_base, onerror=_on_error):
        current = Path(dirpath)
        for name in sorted(dirnames) + sorted(filenames):
            rel = (current / name).relative_to(user_base).as_posix()
            if is_hidden_or_reserved(rel):
                log.debug("walk skipping hidden/reserved path %s", rel)
                continue
            try:
                result.append(file_metadata(user_base, rel))
            except OSError as e:
                log.debug("walk could not read %s: %s", rel, e)
        # Do not descend into skipped directories
        dirnames[:] = [
            d for d in dirnames
            if not is_hidden_or_reserved((current / d).relative_to(user_base).as_posix())
        ]
    return result


def _sort_key(node: TreeNode) -> tuple:
    # Directories first, then case-insensitive name; exact name breaks ties
    return (not node.is_dir, node.name.lower(), node.name)


def _sort_nodes(nodes: List[TreeNode]) -> None:
    nodes.sort(key=_sort_key)
    for node in nodes:
        if node.children:
            _sort_nodes(node.children)


def build_tree(files: Iterable[FileMetadata]) -> List[TreeNode]:
    """
    Build the presentation tree from a flat metadata list.

    Nodes live in an arena keyed by normalized path; each one is created once and
    attached to its parent (or to the root list) on creation. Ancestor directories
    are created implicitly. Output order does not depend on input order.
    """
    arena: Dict[str, TreeNode] = {}
    roots: List[TreeNode] = []
    for meta in files:
        parts = normalize(meta.path).split("/")
        if parts == [""]:
            continue
        current = ""
        parent: Optional[TreeNode] = None
        for i, part in enumerate(parts):
            current = f"{current}/{part}" if current else part
            node = arena.get(current)
            is_last = i == len(parts) - 1
            if node is None:
                node = TreeNode(
                    name=part,
                    path=current,
                    is_dir=(not is_last) or meta.is_dir,
                )
                arena[current] = node
                if parent is None:
                    roots.append(node)
                else:
                    parent.children.append(node)
            elif not is_last or meta.is_dir:
                # Seen first as a leaf, now known to be a directory
                node.is_dir = True
            parent = node
    _sort_nodes(roots)
    return roots


def group_by_directory(files: Iterable[FileMetadata]) -> Dict[str, List[FileMetadata]]:
    """Flat listing grouped by parent directory (root is ''), as desktop clients expect."""
    grouped: Dict[str, List[FileMetadata]] = {}
    for meta in files:
        parent, _, _ = normalize(meta.path).rpartition("/")
        grouped.setdefault(parent, []).append(meta)
    return grouped


def content_type_for(name: str) -> str:
    """Download content type from the file extension; octet-stream when unknown."""
    return _CONTENT_TYPES.get(os.path.splitext(name)[1].lower(), "application/octet-stream")
