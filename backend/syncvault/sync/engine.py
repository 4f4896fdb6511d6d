"""Reconciliation of a client's checkpoint and local changes against server truth.

Per path the engine compares three hashes: the checkpoint's (last common
version), the client's current one, and the server's. Exactly one side moving
away from the checkpoint is applied in that direction; both sides moving to
different content is a conflict that is reported with both hashes and never
resolved automatically. A path that is already in conflict stays in conflict
until the caller resolves it explicitly (resolve_conflict).
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from syncvault.errors import ConflictError, HashMismatchError, NotFoundError, PathValidationError
from syncvault.files.models import FileChange, FileMetadata
from syncvault.files.paths import require_safe
from syncvault.files.service import FileService
from syncvault.sync.models import (
    DiffRequest,
    DiffResponse,
    PathStatus,
    SyncConflict,
    SyncMessage,
    SyncOperation,
    SyncResponse,
    SyncState,
)
from syncvault.sync.protocol import apply_diff, classify, generate_hash, validate_hash

log = logging.getLogger(__name__)


def _norm_hash(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else None


def _declared_hash(message: SyncMessage) -> Optional[str]:
    """Hash the client claims for the content this message produces."""
    if message.operation == SyncOperation.DELETE:
        return None
    if message.diff is not None:
        declared = _norm_hash(message.hash)
        new_hash = _norm_hash(message.diff.new_hash)
        if declared and declared != new_hash:
            raise HashMismatchError(f"hash and diff.new_hash disagree for {message.path}")
        return new_hash
    content = message.content_bytes()
    if message.hash and not validate_hash(content, message.hash):
        raise HashMismatchError(f"Content does not match hash for {message.path}")
    return generate_hash(content)


def resolve_conflict(state: SyncState, path: str, server_meta: Optional[FileMetadata]) -> SyncState:
    """
    Accept the server's current version of path as the new common base and drop
    the path from conflicts. The client then either discards its local copy or
    re-sends it as an ordinary change.
    """
    rel = require_safe(path)
    files = dict(state.files)
    if server_meta is None or server_meta.is_dir:
        files.pop(rel, None)
    else:
        files[rel] = server_meta
    return SyncState(
        last_sync=state.last_sync,
        files=files,
        conflicts=[p for p in state.conflicts if p != rel],
    )


class SyncEngine:
    """Implements reconciliation, single-message application and diff queries."""

    def __init__(self, files: FileService) -> None:
        self.files = files

    @property
    def store(self):
        return self.files.store

    async def _server_files(self, user_id: str) -> Dict[str, FileMetadata]:
        return {m.path: m for m in await self.files.walk(user_id) if not m.is_dir}

    async def _content_for(self, user_id: str, message: SyncMessage) -> bytes:
        if message.diff is None:
            return message.content_bytes()
        current = await run_in_threadpool(self.store.get, user_id, message.path)
        return apply_diff(current, message.diff)

    def _outbound(self, path: str, base: Optional[str], meta: Optional[FileMetadata], content: bytes) -> SyncMessage:
        if meta is None:
            return SyncMessage(operation=SyncOperation.DELETE, path=path)
        return SyncMessage(
            operation=SyncOperation.CREATE if base is None else SyncOperation.UPDATE,
            path=path,
            content=SyncMessage.encode_content(content),
            hash=meta.hash,
            timestamp=meta.mod_time,
        )

    async def _apply_client_change(
        self,
        user_id: str,
        path: str,
        message: Optional[SyncMessage],
        client_hash: Optional[str],
    ) -> Optional[FileMetadata]:
        """Write the client's version of path; None when the client removed it."""
        if client_hash is None:
            await self.files.remove(user_id, path)
            return None
        content = await self._content_for(user_id, message)
        if not validate_hash(content, client_hash):
            raise HashMismatchError(f"Content does not match hash for {path}")
        change = await self.files.save(user_id, path, content)
        return change.file

    async def reconcile(
        self,
        user_id: str,
        state: SyncState,
        changes: List[SyncMessage],
    ) -> SyncResponse:
        """
        Reconcile one client. Validates every change before mutating anything;
        a validation failure raises PathValidationError and nothing is applied.

        A rename may be combined with one content change of the same file, before
        or after it in the batch; the content is written after the move. Any other
        repeat of a path within one batch is rejected.
        """
        base: Dict[str, Optional[str]] = {
            require_safe(p): _norm_hash(m.hash) for p, m in state.files.items() if not m.is_dir
        }
        base_meta: Dict[str, FileMetadata] = {
            require_safe(p): m for p, m in state.files.items() if not m.is_dir
        }
        previous_conflicts = {require_safe(p) for p in state.conflicts}

        client: Dict[str, Optional[str]] = dict(base)
        by_path: Dict[str, SyncMessage] = {}
        renames: List[Tuple[str, str]] = []
        renamed = set()
        for message in changes:
            path = require_safe(message.path)
            if message.operation == SyncOperation.RENAME:
                new_path = require_safe(message.new_path)
                if new_path == path:
                    raise PathValidationError(f"Rename to the same path: {path}")
                if path in renamed or new_path in renamed or new_path in by_path:
                    raise PathValidationError(f"Overlapping rename in one batch: {path} -> {new_path}")
                # An earlier change of the source travels with the file
                earlier = by_path.pop(path, None)
                if earlier is not None and earlier.operation == SyncOperation.DELETE:
                    raise PathValidationError(f"Rename of deleted path: {path}")
                if earlier is not None:
                    by_path[new_path] = earlier.model_copy(update={"path": new_path})
                renames.append((path, new_path))
                renamed.update((path, new_path))
                client[new_path] = client.get(path)
                client[path] = None
                continue
            if path in by_path or (path in renamed and client.get(path) is None):
                raise PathValidationError(f"More than one change for {path} in one batch")
            by_path[path] = message
            client[path] = _declared_hash(message)

        server = await self._server_files(user_id)

        def server_hash(p: str) -> Optional[str]:
            meta = server.get(p)
            return meta.hash if meta else None

        response = SyncResponse()
        new_files: Dict[str, FileMetadata] = {}
        conflicts: Dict[str, SyncConflict] = {}
        handled = set()

        for old, new in renames:
            b = base.get(old)
            s_old, s_new = server_hash(old), server_hash(new)
            if b is not None and s_old == b and s_new is None and old not in previous_conflicts:
                change = await self.files.move(user_id, old, new)
                new_files[new] = change.file
                message = by_path.get(new)
                if message is not None:
                    # Content changed in the same batch lands on top of the moved file
                    meta = await self._apply_client_change(user_id, new, message, client.get(new))
                    if meta is None:
                        new_files.pop(new, None)
                    else:
                        new_files[new] = meta
                response.applied.append(new)
                handled.update((old, new))
            elif b is not None and s_new == b:
                # Destination already holds the content; only the source delete remains
                continue
            else:
                conflicts[old] = SyncConflict(path=old, base_hash=b, client_hash=None, server_hash=s_old)
                handled.add(old)
                if new not in by_path:
                    handled.add(new)

        for path in sorted(set(base) | set(server) | set(client)):
            if path in handled:
                continue
            b, c, s = base.get(path), client.get(path), server_hash(path)
            status = classify(b, c, s)
            if path in previous_conflicts and status != PathStatus.UNCHANGED:
                status = PathStatus.CONFLICT
            log.debug("reconcile user=%s path=%s status=%s", user_id, path, status.value)

            if status == PathStatus.UNCHANGED:
                if s is not None:
                    new_files[path] = server[path]
            elif status == PathStatus.SERVER_CHANGED:
                content = b""
                if s is not None:
                    content = await run_in_threadpool(self.store.get, user_id, path)
                    new_files[path] = server[path]
                response.messages.append(self._outbound(path, b, server.get(path), content))
            elif status == PathStatus.CLIENT_CHANGED:
                message = by_path.get(path)
                if c is not None and message is None:
                    conflicts[path] = SyncConflict(path=path, base_hash=b, client_hash=c, server_hash=s)
                    continue
                meta = await self._apply_client_change(user_id, path, message, c)
                if meta is not None:
                    new_files[path] = meta
                response.applied.append(path)
            else:
                conflicts[path] = SyncConflict(path=path, base_hash=b, client_hash=c, server_hash=s)

        for path in conflicts:
            if path in base_meta:
                new_files[path] = base_meta[path]
            else:
                new_files.pop(path, None)

        response.conflicts = [conflicts[p] for p in sorted(conflicts)]
        response.state = SyncState(
            last_sync=datetime.now(timezone.utc),
            files=new_files,
            conflicts=list(conflicts),
        )
        log.info(
            "reconcile user=%s outbound=%d applied=%d conflicts=%d",
            user_id, len(response.messages), len(response.applied), len(conflicts),
        )
        return response

    async def apply_message(self, user_id: str, message: SyncMessage) -> FileChange:
        """
        Apply one client message without a checkpoint (socket path). A diff whose
        base is not the current server content raises ConflictError.
        """
        path = require_safe(message.path)
        if message.operation == SyncOperation.DELETE:
            return await self.files.remove(user_id, path)
        if message.operation == SyncOperation.RENAME:
            return await self.files.move(user_id, path, message.new_path)
        declared = _declared_hash(message)
        if message.diff is not None:
            try:
                current = await run_in_threadpool(self.store.get_info, user_id, path)
                server = current.hash
            except NotFoundError:
                server = None
            if server != _norm_hash(message.diff.base_hash):
                conflict = SyncConflict(
                    path=path,
                    base_hash=_norm_hash(message.diff.base_hash),
                    client_hash=declared,
                    server_hash=server,
                )
                raise ConflictError(f"Conflict on {path}", conflict=conflict)
        content = await self._content_for(user_id, message)
        return await self.files.save(user_id, path, content)

    async def diff(self, user_id: str, request: DiffRequest) -> DiffResponse:
        """Whether path differs from the client's hash; current content if it does."""
        client_hash = _norm_hash(request.hash)
        try:
            meta = await run_in_threadpool(self.store.get_info, user_id, request.path)
        except NotFoundError:
            return DiffResponse(has_changes=client_hash is not None)
        if meta.is_dir:
            return DiffResponse(has_changes=False, error="Path is a directory")
        if meta.hash == client_hash:
            return DiffResponse(has_changes=False, new_hash=meta.hash)
        content = await run_in_threadpool(self.store.get, user_id, request.path)
        return DiffResponse(
            has_changes=True,
            new_hash=generate_hash(content),
            content=SyncMessage.encode_content(content),
        )
