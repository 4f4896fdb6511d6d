"""Change fan-out: one dispatcher task owns the subscription registry.

register, unregister and broadcast are commands posted to the dispatcher's inbox
and processed strictly in order, so the registry needs no lock. Each subscription
has a bounded queue; a subscriber whose queue is full when a change arrives is
dropped on the spot instead of blocking the dispatcher.
"""

import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Tuple

from syncvault.files.models import FileChange

log = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 10

_REGISTER = "register"
_UNREGISTER = "unregister"
_BROADCAST = "broadcast"
_STOP = "stop"


class Subscription:
    """One notification connection's private outbound queue."""

    _ids = itertools.count(1)

    def __init__(self, user_id: Optional[str] = None, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.id = next(self._ids)
        self.user_id = user_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, user_id={self.user_id!r})"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def pending(self) -> int:
        """Number of buffered, undelivered changes."""
        return self._queue.qsize()

    def offer(self, change: FileChange) -> bool:
        """Non-blocking enqueue. False if closed or full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(change)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Stop accepting changes; buffered ones can still be drained."""
        self._closed.set()

    async def next(self) -> Optional[FileChange]:
        """Next change, or None once the subscription is closed and drained."""
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            return None
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
        if getter in done and not getter.cancelled():
            return getter.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        return None

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> FileChange:
        change = await self.next()
        if change is None:
            raise StopAsyncIteration
        return change


class ChangeBroadcaster:
    """
    Explicitly constructed fan-out dispatcher with a start/stop lifecycle.
    Delivery is at-most-once and best effort; failed deliveries only ever show
    up as the slow subscriber being disconnected.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscriptions: Dict[int, Subscription] = {}
        self._inbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def registered(self) -> Tuple[Subscription, ...]:
        """Snapshot of the registry (read-only)."""
        return tuple(self._subscriptions.values())

    @property
    def connection_count(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> None:
        """Spawn the dispatcher task on the running loop."""
        if self.running:
            return
        self._inbox = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="change-broadcaster")
        log.info("Change broadcaster started (queue_size=%d)", self.queue_size)

    async def stop(self) -> None:
        """Stop the dispatcher and close every subscription."""
        if not self.running:
            return
        done = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((_STOP, None, done))
        await done
        await self._task
        self._task = None
        log.info("Change broadcaster stopped")

    async def _submit(self, kind: str, payload: Any) -> Any:
        if not self.running:
            raise RuntimeError("ChangeBroadcaster is not running")
        done = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((kind, payload, done))
        return await done

    async def register(self, user_id: Optional[str] = None) -> Subscription:
        """Add a new subscription and return it once it is in the registry."""
        sub = Subscription(user_id=user_id, maxsize=self.queue_size)
        await self._submit(_REGISTER, sub)
        return sub

    async def unregister(self, sub: Subscription) -> None:
        """Remove and close sub. Unknown or already removed subscriptions are a no-op."""
        if not self.running:
            sub.close()
            return
        await self._submit(_UNREGISTER, sub)

    async def broadcast(self, change: FileChange, user_id: Optional[str] = None) -> None:
        """
        Fan change out to every subscription (or only user_id's, if given).
        Returns after the dispatcher processed it; never raises delivery errors.
        """
        if not self.running:
            log.warning("broadcast dropped, broadcaster not running: %s %s", change.type.value, change.file.path)
            return
        await self._submit(_BROADCAST, (change, user_id))

    # -- dispatcher ----------------------------------------------------------

    async def _run(self) -> None:
        while True:
            kind, payload, done = await self._inbox.get()
            try:
                if kind == _STOP:
                    for sub in self._subscriptions.values():
                        sub.close()
                    self._subscriptions.clear()
                    self._release_pending()
                    return
                if kind == _REGISTER:
                    self._subscriptions[payload.id] = payload
                    log.info("Client registered, total clients: %d", len(self._subscriptions))
                elif kind == _UNREGISTER:
                    self._drop(payload)
                elif kind == _BROADCAST:
                    self._dispatch(*payload)
            finally:
                if not done.done():
                    done.set_result(None)

    def _release_pending(self) -> None:
        # Commands queued behind stop are answered without effect
        while not self._inbox.empty():
            kind, payload, done = self._inbox.get_nowait()
            if kind == _REGISTER:
                payload.close()
            if not done.done():
                done.set_result(None)

    def _drop(self, sub: Subscription) -> None:
        removed = self._subscriptions.pop(sub.id, None)
        sub.close()
        if removed is not None:
            log.info("Client unregistered, total clients: %d", len(self._subscriptions))

    def _dispatch(self, change: FileChange, user_id: Optional[str]) -> None:
        for sub in list(self._subscriptions.values()):
            if user_id is not None and sub.user_id != user_id:
                continue
            if not sub.offer(change):
                log.warning("Dropping slow client %s (queue full)", sub)
                self._drop(sub)
