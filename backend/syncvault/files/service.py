"""Mutations that notify: apply through the store, then broadcast exactly one FileChange."""

import logging
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from syncvault.files.metadata import walk
from syncvault.files.models import ChangeType, FileChange, FileMetadata
from syncvault.files.paths import require_safe
from syncvault.files.storage import FileStore
from syncvault.notify.broadcaster import ChangeBroadcaster

log = logging.getLogger(__name__)


class FileService:
    """Async facade over FileStore used by routes and the sync engine."""

    def __init__(self, store: FileStore, broadcaster: Optional[ChangeBroadcaster] = None) -> None:
        self.store = store
        self.broadcaster = broadcaster

    async def _notify(self, user_id: str, change: FileChange) -> FileChange:
        log.debug("notify user=%s %s %s", user_id, change.type.value, change.file.path)
        if self.broadcaster is not None:
            await self.broadcaster.broadcast(change, user_id=user_id)
        return change

    async def save(self, user_id: str, path: str, content: bytes) -> FileChange:
        """Create or overwrite a file; broadcasts create or update."""
        meta, created = await run_in_threadpool(self.store.put, user_id, path, content)
        kind = ChangeType.CREATE if created else ChangeType.UPDATE
        return await self._notify(user_id, FileChange(type=kind, file=meta))

    async def remove(self, user_id: str, path: str) -> FileChange:
        """Delete path; the broadcast carries the metadata from before deletion."""
        meta = await run_in_threadpool(self.store.get_info, user_id, path)
        await run_in_threadpool(self.store.delete, user_id, path)
        return await self._notify(user_id, FileChange(type=ChangeType.DELETE, file=meta))

    async def move(self, user_id: str, old_path: str, new_path: str) -> FileChange:
        """Rename; one create event for the destination carrying old_path."""
        meta = await run_in_threadpool(self.store.move, user_id, old_path, new_path)
        old_rel = require_safe(old_path)
        return await self._notify(
            user_id, FileChange(type=ChangeType.CREATE, file=meta, old_path=old_rel)
        )

    async def make_directory(self, user_id: str, path: str) -> FileChange:
        meta = await run_in_threadpool(self.store.mkdir, user_id, path)
        return await self._notify(user_id, FileChange(type=ChangeType.CREATE, file=meta))

    async def walk(self, user_id: str) -> List[FileMetadata]:
        """Every visible entry of the user's namespace."""
        root = await run_in_threadpool(self.store.ensure_user_root, user_id)
        return await run_in_threadpool(walk, root)
