"""WebSocket endpoints subscribing to FileChange fan-out."""

import logging

from fastapi import APIRouter, WebSocket, status

from syncvault.auth.dependencies import websocket_user_id
from syncvault.config import get_settings
from syncvault.notify.connection import NotificationConnection

router = APIRouter(tags=["notify"])
log = logging.getLogger(__name__)


@router.websocket("/api/changes")
@router.websocket("/ws")
async def changes(websocket: WebSocket) -> None:
    """Authenticate, register with the broadcaster, then serve until either side goes away."""
    user_id = websocket_user_id(websocket)
    if not user_id:
        log.warning("WebSocket rejected: missing or invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    settings = get_settings()
    broadcaster = websocket.app.state.broadcaster
    try:
        subscription = await broadcaster.register(user_id=user_id)
    except RuntimeError:
        log.warning("WebSocket rejected for user=%s: broadcaster not running", user_id)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    log.info("WebSocket connection established for user=%s", user_id)
    connection = NotificationConnection(
        websocket,
        user_id=user_id,
        subscription=subscription,
        broadcaster=broadcaster,
        engine=websocket.app.state.sync_engine,
        pong_wait=settings.pong_wait_seconds,
        write_wait=settings.write_wait_seconds,
        ping_period=settings.ping_period_seconds,
    )
    await connection.run()
