"""Durable per-client SyncState checkpoints (SQLAlchemy model and helpers)."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from syncvault.db.session import Base
from syncvault.sync.models import SyncState

log = logging.getLogger(__name__)


class SyncCheckpoint(Base):
    """Last agreed SyncState of one client device of one user, stored as JSON."""

    __tablename__ = "sync_checkpoints"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_sync: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    state_json: Mapped[str] = mapped_column(Text, nullable=False)


async def load_state(session: AsyncSession, user_id: str, client_id: str) -> Optional[SyncState]:
    """Return the stored checkpoint, or None if the client never synced."""
    row = await session.get(SyncCheckpoint, (user_id, client_id))
    if row is None:
        return None
    return SyncState.model_validate_json(row.state_json)


async def save_state(session: AsyncSession, user_id: str, client_id: str, state: SyncState) -> None:
    """Store or replace the checkpoint. Caller must commit."""
    payload = state.model_dump_json(by_alias=True)
    row = await session.get(SyncCheckpoint, (user_id, client_id))
    if row:
        row.state_json = payload
        row.last_sync = state.last_sync
    else:
        session.add(
            SyncCheckpoint(
                user_id=user_id,
                client_id=client_id,
                last_sync=state.last_sync,
                state_json=payload,
            )
        )
    log.debug("saved checkpoint user=%s client=%s files=%d", user_id, client_id, len(state.files))


async def delete_state(session: AsyncSession, user_id: str, client_id: str) -> bool:
    """Remove the checkpoint so the next sync starts from scratch. Caller must commit."""
    row = await session.get(SyncCheckpoint, (user_id, client_id))
    if not row:
        return False
    await session.delete(row)
    return True
