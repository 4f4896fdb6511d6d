"""Sync protocol routes: reconcile, diff query, checkpoint access, conflict resolution."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from syncvault.auth.dependencies import get_current_user_id
from syncvault.db.session import get_db
from syncvault.deps import get_sync_engine
from syncvault.errors import NotFoundError
from syncvault.limiter import limiter
from syncvault.sync.checkpoints import delete_state, load_state, save_state
from syncvault.sync.engine import SyncEngine, resolve_conflict
from syncvault.sync.models import (
    DiffRequest,
    DiffResponse,
    ResolveRequest,
    SyncRequest,
    SyncResponse,
    SyncState,
)

router = APIRouter(prefix="/api/sync", tags=["sync"])
log = logging.getLogger(__name__)

UserId = Annotated[str, Depends(get_current_user_id)]
Engine = Annotated[SyncEngine, Depends(get_sync_engine)]
Session = Annotated[AsyncSession, Depends(get_db)]


@router.post("", response_model=SyncResponse)
@limiter.limit("60/minute")
async def sync(
    request: Request,
    body: SyncRequest,
    user_id: UserId,
    engine: Engine,
    session: Session,
) -> SyncResponse:
    """
    Reconcile the client's checkpoint and local changes with the server.
    Without a state in the body, the stored checkpoint for client_id is used.
    With a client_id, the resulting checkpoint is stored.
    """
    state = body.state
    if state is None and body.client_id:
        state = await load_state(session, user_id, body.client_id)
    result = await engine.reconcile(user_id, state or SyncState(), body.changes)
    if body.client_id:
        await save_state(session, user_id, body.client_id, result.state)
    return result


@router.post("/diff", response_model=DiffResponse, response_model_exclude_none=True)
@limiter.limit("600/minute")
async def diff(request: Request, body: DiffRequest, user_id: UserId, engine: Engine) -> DiffResponse:
    """Has path changed relative to the client's hash? Current content if so."""
    return await engine.diff(user_id, body)


@router.get("/state/{client_id}", response_model=SyncState)
@limiter.limit("60/minute")
async def get_state(request: Request, client_id: str, user_id: UserId, session: Session) -> SyncState:
    """Stored checkpoint for one client device."""
    state = await load_state(session, user_id, client_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No checkpoint")
    return state


@router.delete("/state/{client_id}")
@limiter.limit("60/minute")
async def reset_state(request: Request, client_id: str, user_id: UserId, session: Session) -> dict:
    """Forget a client's checkpoint; its next sync starts from scratch."""
    deleted = await delete_state(session, user_id, client_id)
    log.info("reset_state user=%s client=%s deleted=%s", user_id, client_id, deleted)
    return {"client_id": client_id, "deleted": deleted}


@router.post("/resolve", response_model=SyncState)
@limiter.limit("60/minute")
async def resolve(
    request: Request,
    body: ResolveRequest,
    user_id: UserId,
    engine: Engine,
    session: Session,
) -> SyncState:
    """Take the server's version of a conflicted path as the new common base."""
    state = await load_state(session, user_id, body.client_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No checkpoint")
    try:
        server_meta = await run_in_threadpool(engine.store.get_info, user_id, body.path)
    except NotFoundError:
        server_meta = None
    new_state = resolve_conflict(state, body.path, server_meta)
    await save_state(session, user_id, body.client_id, new_state)
    log.info("resolve user=%s client=%s path=%s", user_id, body.client_id, body.path)
    return new_state
