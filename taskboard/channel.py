"""
Notification channel: per-board "collection changed" signals.

The store publishes a ChangeEvent after every committed write to a board's
lists, tasks or activity. Consumers either register a plain callback
(``listen``) or open an async ``Subscription`` that yields events from a
queue bound to their event loop.

Delivery is best-effort: a callback that raises is logged and skipped, and
events published while nobody is subscribed are gone. Consumers must not
rely on every event arriving; the reconciler's poll loop covers the gaps.
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from .errors import ChannelDisconnected
from .schema import ChangeEvent, Collection, Operation

logger = logging.getLogger(__name__)

_DISCONNECTED = object()


class Subscription:
    """An open per-board event stream owned by one consumer."""

    def __init__(self, hub: "NotificationHub", board_id: str, loop: asyncio.AbstractEventLoop):
        self.hub = hub
        self.board_id = board_id
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._unlisten: Optional[Callable[[], None]] = None
        self.closed = False

    def _deliver(self, item) -> None:
        # May run on a store worker thread
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug(f"Dropping event for board {self.board_id}: event loop closed")

    def _drop(self) -> None:
        """Channel-side disconnect: wake the reader with an error."""
        if self._unlisten:
            self._unlisten()
            self._unlisten = None
        self._deliver(_DISCONNECTED)

    async def get(self) -> ChangeEvent:
        """Wait for the next event. Raises ChannelDisconnected once dropped."""
        if self.closed:
            raise ChannelDisconnected(f"Subscription to board {self.board_id} is closed")
        item = await self._queue.get()
        if item is _DISCONNECTED:
            self.closed = True
            raise ChannelDisconnected(f"Channel for board {self.board_id} disconnected")
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        if self._unlisten:
            self._unlisten()
            self._unlisten = None
        self.hub._forget(self)
        self.closed = True


class NotificationHub:
    """Routes ChangeEvents from the store to board subscribers."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[ChangeEvent], None]]] = {}
        self._subscriptions: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def listen(self, board_id: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Register a callback for a board. Returns a function that unregisters it."""
        with self._lock:
            self._listeners.setdefault(board_id, []).append(callback)

        def unlisten():
            with self._lock:
                callbacks = self._listeners.get(board_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._listeners.pop(board_id, None)

        return unlisten

    def publish(self, board_id: str, collection: Collection, operation: Operation) -> ChangeEvent:
        """Fan an event out to every listener on the board."""
        event = ChangeEvent(board_id=board_id, collection=collection, operation=operation)
        with self._lock:
            callbacks = list(self._listeners.get(board_id, []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Notification listener failed for board {board_id}: {e}")
        return event

    async def subscribe(self, board_id: str) -> Subscription:
        """Open a subscription bound to the running event loop."""
        sub = Subscription(self, board_id, asyncio.get_running_loop())
        sub._unlisten = self.listen(board_id, sub._deliver)
        with self._lock:
            self._subscriptions.setdefault(board_id, set()).add(sub)
        logger.debug(f"Subscribed to board {board_id} (total={self.subscriber_count(board_id)})")
        return sub

    def disconnect(self, board_id: Optional[str] = None) -> int:
        """Drop open subscriptions (all boards when board_id is None)."""
        with self._lock:
            if board_id is None:
                subs = [s for group in self._subscriptions.values() for s in group]
                self._subscriptions.clear()
            else:
                subs = list(self._subscriptions.pop(board_id, set()))
        for sub in subs:
            sub._drop()
        if subs:
            logger.info(f"Disconnected {len(subs)} subscription(s)")
        return len(subs)

    def subscriber_count(self, board_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(board_id, set()))

    def _forget(self, sub: Subscription) -> None:
        with self._lock:
            group = self._subscriptions.get(sub.board_id)
            if group is not None:
                group.discard(sub)
                if not group:
                    self._subscriptions.pop(sub.board_id, None)
