"""File API routes: list, tree, info, upload, download, delete, move, mkdir."""

import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from syncvault.auth.dependencies import get_current_user_id
from syncvault.deps import get_file_service
from syncvault.files.metadata import build_tree, content_type_for, group_by_directory
from syncvault.files.models import DirectoryCreate, MoveRequest, to_wire
from syncvault.files.paths import require_safe
from syncvault.files.service import FileService
from syncvault.limiter import limiter

router = APIRouter(prefix="/api", tags=["files"])
log = logging.getLogger(__name__)

UserId = Annotated[str, Depends(get_current_user_id)]
Files = Annotated[FileService, Depends(get_file_service)]


@router.get("/files")
@limiter.limit("60/minute")
async def list_root(
    request: Request,
    user_id: UserId,
    files: Files,
    view: Literal["list", "tree", "grouped"] = "list",
    recursive: bool = False,
):
    """
    List the namespace root. view=tree returns the sorted directory tree,
    view=grouped a flat listing keyed by parent directory, recursive=true every
    entry as a flat list.
    """
    if view == "list" and not recursive:
        entries = await run_in_threadpool(files.store.list, user_id, "")
        log.info("list_files user=%s path=/ count=%d", user_id, len(entries))
        return [to_wire(e) for e in entries]
    entries = await files.walk(user_id)
    log.info("list_files user=%s view=%s count=%d", user_id, view, len(entries))
    if view == "tree":
        return [to_wire(n) for n in build_tree(entries)]
    if view == "grouped":
        return {
            d: [to_wire(e) for e in items] for d, items in group_by_directory(entries).items()
        }
    return [to_wire(e) for e in entries]


@router.post("/files/move")
@limiter.limit("600/minute")
async def move_file(request: Request, body: MoveRequest, user_id: UserId, files: Files) -> dict:
    """Move or rename a file or directory."""
    change = await files.move(user_id, body.path, body.new_path)
    return to_wire(change)


@router.get("/files/{path:path}/info")
@limiter.limit("600/minute")
async def file_info(request: Request, path: str, user_id: UserId, files: Files) -> dict:
    """Metadata only (hash recomputed from disk)."""
    meta = await run_in_threadpool(files.store.get_info, user_id, path)
    return to_wire(meta)


@router.get("/files/{path:path}")
@limiter.limit("600/minute")  # Bulk sync: allow ~10 transfers/sec
async def download_or_list(request: Request, path: str, user_id: UserId, files: Files):
    """Download a file, or list a directory's immediate children."""
    rel = require_safe(path, allow_root=True)
    info = await run_in_threadpool(files.store.get_info, user_id, rel) if rel else None
    if info is None or info.is_dir:
        entries = await run_in_threadpool(files.store.list, user_id, rel)
        log.info("list_files user=%s path=%s count=%d", user_id, rel or "/", len(entries))
        return [to_wire(e) for e in entries]
    target = await run_in_threadpool(files.store.open_for_read, user_id, rel)
    log.info("download_file user=%s path=%s", user_id, rel)
    return FileResponse(
        path=target,
        filename=target.name,
        media_type=content_type_for(target.name),
    )


@router.api_route("/files/{path:path}", methods=["POST", "PUT"])
@limiter.limit("600/minute")
async def upload_file(request: Request, path: str, user_id: UserId, files: Files) -> dict:
    """Upload or save a file. Body: raw file bytes. Returns fresh metadata with hash."""
    body = await request.body()
    change = await files.save(user_id, path, body)
    log.info("upload_file user=%s path=%s size=%d", user_id, change.file.path, len(body))
    return to_wire(change.file)


@router.delete("/files/{path:path}")
@limiter.limit("600/minute")
async def delete_file(request: Request, path: str, user_id: UserId, files: Files) -> dict:
    """Delete a file or directory; subscribers get a delete event."""
    change = await files.remove(user_id, path)
    log.info("delete_file user=%s path=%s", user_id, change.file.path)
    return {"path": change.file.path, "deleted": True}


@router.post("/directories")
@limiter.limit("60/minute")
async def create_directory(request: Request, body: DirectoryCreate, user_id: UserId, files: Files) -> dict:
    """Create a directory (parents included)."""
    change = await files.make_directory(user_id, body.path)
    log.info("create_directory user=%s path=%s", user_id, change.file.path)
    return to_wire(change.file)
