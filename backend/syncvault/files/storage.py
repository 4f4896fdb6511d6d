"""Per-user file storage: validated paths, atomic writes, per-path locks."""

import logging
import os
import shutil
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

from syncvault.errors import NotFoundError, PathValidationError, StorageError
from syncvault.files.metadata import file_metadata
from syncvault.files.models import FileMetadata
from syncvault.files.paths import UPLOAD_DIR, is_hidden_or_reserved, require_safe, safe_user_segment

log = logging.getLogger(__name__)


class FileStore:
    """
    Owns the on-disk tree under base_path/<user_id>/. Every path passes through
    the path validator before any filesystem call. Writes go to a temp file in the
    namespace's hidden .upload directory and are renamed into place; mutations
    of the same path are serialized by a per-path lock.
    """

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create base directory: {e}") from e
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -- namespace -----------------------------------------------------------

    def user_root(self, user_id: str) -> Path:
        """Return the namespace root for user_id (base / user_id)."""
        return self.base_path / safe_user_segment(user_id)

    def ensure_user_root(self, user_id: str) -> Path:
        """Create the namespace root if missing and return it."""
        root = self.user_root(user_id)
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create user directory: {e}") from e
        return root

    def _resolve(self, user_id: str, path: str, allow_root: bool = False) -> Tuple[Path, str]:
        rel = require_safe(path, allow_root=allow_root)
        root = self.user_root(user_id)
        return (root / rel if rel else root), rel

    @contextmanager
    def _locked(self, user_id: str, *paths: str) -> Iterator[None]:
        """Hold the locks of all given normalized paths, acquired in sorted order."""
        keys = sorted({(user_id, p) for p in paths})
        with self._locks_guard:
            locks = [self._locks.setdefault(k, threading.Lock()) for k in keys]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield

    # -- operations ----------------------------------------------------------

    def store(self, user_id: str, path: str, content: bytes) -> FileMetadata:
        """Write content at path (creating parents) and return fresh metadata."""
        meta, _ = self.put(user_id, path, content)
        return meta

    def put(self, user_id: str, path: str, content: bytes) -> Tuple[FileMetadata, bool]:
        """
        Write content at path and return (metadata, created). created is decided
        under the path lock, so concurrent first writes report exactly one creation.
        Content is staged in the hidden upload directory and renamed into place.
        """
        target, rel = self._resolve(user_id, path)
        root = self.user_root(user_id)
        with self._locked(user_id, rel):
            if target.is_dir():
                raise PathValidationError(f"Is a directory: {rel}")
            created = not target.exists()
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                staging = root / UPLOAD_DIR
                staging.mkdir(exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix="upload-", dir=staging)
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(content)
                    os.chmod(tmp_name, 0o644)
                    os.replace(tmp_name, target)
                except BaseException:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        pass
                    raise
                meta = file_metadata(root, rel)
            except OSError as e:
                log.error("store failed user=%s path=%s: %s", user_id, rel, e)
                raise StorageError(f"Failed to write file: {rel}") from e
        log.info("store user=%s path=%s size=%d created=%s", user_id, rel, len(content), created)
        return meta, created

    def get(self, user_id: str, path: str) -> bytes:
        """Return the full content of the file at path."""
        target, rel = self._resolve(user_id, path)
        if target.is_dir():
            raise PathValidationError(f"Is a directory: {rel}")
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {rel}") from e
        except OSError as e:
            raise StorageError(f"Failed to read file: {rel}") from e

    def open_for_read(self, user_id: str, path: str) -> Path:
        """Validated filesystem path of an existing file, for streaming responses."""
        target, rel = self._resolve(user_id, path)
        if not target.exists():
            raise NotFoundError(f"File not found: {rel}")
        if target.is_dir():
            raise PathValidationError(f"Is a directory: {rel}")
        return target

    def delete(self, user_id: str, path: str) -> None:
        """
        Delete a file or directory (recursively). Afterwards removes now-empty
        parent directories up to, but not including, the namespace root.
        """
        target, rel = self._resolve(user_id, path)
        root = self.user_root(user_id)
        with self._locked(user_id, rel):
            if not target.exists() and not target.is_symlink():
                raise NotFoundError(f"File not found: {rel}")
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except FileNotFoundError as e:
                raise NotFoundError(f"File not found: {rel}") from e
            except OSError as e:
                log.error("delete failed user=%s path=%s: %s", user_id, rel, e)
                raise StorageError(f"Failed to delete: {rel}") from e
            self._prune_empty_parents(root, target.parent)
        log.info("delete user=%s path=%s", user_id, rel)

    def move(self, user_id: str, old_path: str, new_path: str) -> FileMetadata:
        """Rename old_path to new_path, creating destination parents as needed."""
        source, old_rel = self._resolve(user_id, old_path)
        dest, new_rel = self._resolve(user_id, new_path)
        with self._locked(user_id, old_rel, new_rel):
            if not source.exists():
                raise NotFoundError(f"File not found: {old_rel}")
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(source, dest)
                meta = file_metadata(self.user_root(user_id), new_rel)
            except OSError as e:
                log.error("move failed user=%s %s -> %s: %s", user_id, old_rel, new_rel, e)
                raise StorageError(f"Failed to move {old_rel} to {new_rel}") from e
        log.info("move user=%s %s -> %s", user_id, old_rel, new_rel)
        return meta

    def mkdir(self, user_id: str, path: str) -> FileMetadata:
        """Create a directory (and parents); existing directories are fine."""
        target, rel = self._resolve(user_id, path)
        try:
            target.mkdir(parents=True, exist_ok=True)
            meta = file_metadata(self.user_root(user_id), rel)
        except FileExistsError as e:
            raise PathValidationError(f"A file exists at {rel}") from e
        except OSError as e:
            raise StorageError(f"Failed to create directory: {rel}") from e
        log.info("mkdir user=%s path=%s", user_id, rel)
        return meta

    def list(self, user_id: str, dir_path: str = "") -> List[FileMetadata]:
        """
        Immediate children of dir_path. Entries whose metadata cannot be computed
        (e.g. broken symlinks) are skipped; hidden and .versions entries are omitted.
        """
        target, rel = self._resolve(user_id, dir_path, allow_root=True)
        root = self.user_root(user_id)
        if not rel:
            self.ensure_user_root(user_id)
        try:
            names = sorted(os.listdir(target))
        except FileNotFoundError as e:
            raise NotFoundError(f"Directory not found: {rel or '/'}") from e
        except NotADirectoryError as e:
            raise PathValidationError(f"Not a directory: {rel}") from e
        except OSError as e:
            raise StorageError(f"Failed to read directory: {rel or '/'}") from e
        result: List[FileMetadata] = []
        for name in names:
            child = f"{rel}/{name}" if rel else name
            if is_hidden_or_reserved(child):
                continue
            try:
                result.append(file_metadata(root, child))
            except OSError as e:
                log.debug("list skipped %s: %s", child, e)
        return result

    def get_info(self, user_id: str, path: str) -> FileMetadata:
        """Metadata for path; non-directories get a streamed SHA-256 hash."""
        _, rel = self._resolve(user_id, path)
        try:
            return file_metadata(self.user_root(user_id), rel)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {rel}") from e
        except OSError as e:
            raise StorageError(f"Failed to get file info: {rel}") from e

    @staticmethod
    def _prune_empty_parents(root: Path, parent: Path) -> None:
        while parent != root and root in parent.parents:
            try:
                if any(parent.iterdir()):
                    break
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent
