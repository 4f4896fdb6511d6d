"""One live notification socket: read loop, write loop and keepalive ticker.

The three tasks share nothing but the socket (writes serialized by a lock) and
the subscription. Whichever ends first, for any reason, tears down the other
two, unregisters the subscription and closes the socket; other connections
are never affected.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError
from starlette.websockets import WebSocket

from syncvault.errors import ConflictError, SyncVaultError
from syncvault.files.models import to_wire
from syncvault.notify.broadcaster import ChangeBroadcaster, Subscription
from syncvault.sync.engine import SyncEngine
from syncvault.sync.models import SyncMessage

log = logging.getLogger(__name__)

TYPE_PING = "ping"
TYPE_PONG = "pong"
TYPE_CHANGE = "change"
TYPE_SYNC = "sync"
TYPE_ACK = "ack"
TYPE_ERROR = "error"


class NotificationConnection:
    """Bridges one WebSocket to a broadcaster subscription."""

    def __init__(
        self,
        websocket: WebSocket,
        user_id: str,
        subscription: Subscription,
        broadcaster: ChangeBroadcaster,
        engine: Optional[SyncEngine] = None,
        pong_wait: float = 60.0,
        write_wait: float = 10.0,
        ping_period: Optional[float] = None,
    ) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.subscription = subscription
        self.broadcaster = broadcaster
        self.engine = engine
        self.pong_wait = pong_wait
        self.write_wait = write_wait
        self.ping_period = ping_period if ping_period is not None else pong_wait * 9 / 10
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        """Write one JSON message; fails if the peer does not take it within write_wait."""
        data = json.dumps(message)
        async with self._send_lock:
            await asyncio.wait_for(self.websocket.send_text(data), timeout=self.write_wait)

    async def run(self) -> None:
        """Serve the connection until any of its loops ends."""
        tasks = [
            asyncio.create_task(self._read_loop(), name=f"notify-read-{self.subscription.id}"),
            asyncio.create_task(self._write_loop(), name=f"notify-write-{self.subscription.id}"),
            asyncio.create_task(self._ping_loop(), name=f"notify-ping-{self.subscription.id}"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.info("Connection %s ended: %r", self.subscription, task.exception())
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.broadcaster.unregister(self.subscription)
            try:
                await self.websocket.close()
            except RuntimeError:
                # Already closed by the peer
                pass
            log.info("Connection closed user=%s %s", self.user_id, self.subscription)

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.pong_wait
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.info("Read deadline exceeded for %s", self.subscription)
                return
            try:
                message = await asyncio.wait_for(self.websocket.receive(), timeout=remaining)
            except asyncio.TimeoutError:
                log.info("Read deadline exceeded for %s", self.subscription)
                return
            if message["type"] == "websocket.disconnect":
                return
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            try:
                data = json.loads(raw or "")
            except ValueError:
                log.warning("Failed to decode message from %s", self.subscription)
                continue
            if not isinstance(data, dict):
                log.warning("Ignoring non-object message from %s", self.subscription)
                continue
            kind = data.get("type")
            if kind == TYPE_PONG:
                deadline = loop.time() + self.pong_wait
            elif kind == TYPE_PING:
                await self.send({"type": TYPE_PONG})
            elif kind == TYPE_SYNC:
                await self.send(await self._handle_sync(data.get("payload")))
            else:
                log.warning("Unknown message type: %r", kind)

    async def _handle_sync(self, payload: Any) -> Dict[str, Any]:
        if self.engine is None:
            return {"type": TYPE_ERROR, "error": "Sync is not available on this connection"}
        try:
            message = SyncMessage.model_validate(payload)
            change = await self.engine.apply_message(self.user_id, message)
        except ValidationError as e:
            return {"type": TYPE_ERROR, "error": f"Invalid sync message: {e.error_count()} error(s)"}
        except ConflictError as e:
            out: Dict[str, Any] = {"type": TYPE_ERROR, "error": str(e)}
            if e.conflict is not None:
                out["payload"] = e.conflict.model_dump(mode="json")
            return out
        except SyncVaultError as e:
            return {"type": TYPE_ERROR, "error": str(e)}
        return {"type": TYPE_ACK, "payload": to_wire(change)}

    async def _write_loop(self) -> None:
        async for change in self.subscription:
            await self.send({"type": TYPE_CHANGE, "payload": to_wire(change)})
        log.info("Subscription closed for %s", self.subscription)

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_period)
            await self.send({"type": TYPE_PING})
