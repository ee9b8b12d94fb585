"""
Change notification reconciler for one open board.

Lifecycle:
  Unsubscribed -> Subscribing -> Active -> (Error | Unsubscribed)

While Active, every ChangeEvent for the board marks its collection stale and
triggers a full refetch of that collection. Events are treated purely as
invalidation signals; their contents are never merged into the view.

Refetch rules:
  - an invalidation that arrives before an already scheduled refetch has
    started is folded into it,
  - each refetch takes a generation number when it starts and its result is
    applied only if no later-started refetch has already landed, so an older
    fetch that completes late never overwrites fresher data.

If the channel drops, the reconciler resubscribes straight away and refreshes
everything to cover missed events. If subscribing keeps failing it stays in
Error and the poll loop refreshes lists and tasks too, retrying the
subscription on every tick. The activity collection is polled regardless,
since it does not need to be instantly consistent.

Use as ``async with BoardReconciler(...)`` so the subscription lives exactly
as long as the consuming view.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Set

from .channel import NotificationHub, Subscription
from .errors import ChannelDisconnected, TaskboardError, TransientFailure
from .schema import Collection
from .service import BoardService
from .view import BoardView

logger = logging.getLogger(__name__)


class SubscriptionState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class _RefetchSlot:
    issued: int = 0       # generation of the most recently started refetch
    applied: int = 0      # generation whose result is currently displayed
    scheduled: bool = False
    dropped: int = 0      # stale results thrown away


class BoardReconciler:
    """Keeps a BoardView in step with the store via change notifications."""

    def __init__(
        self,
        service: BoardService,
        hub: NotificationHub,
        board_id: str,
        view: Optional[BoardView] = None,
        activity_limit: int = 50,
        poll_interval: Optional[float] = 5.0,
        subscribe_attempts: int = 3,
        on_refresh: Optional[Callable[[Collection], None]] = None,
    ):
        self.service = service
        self.hub = hub
        self.board_id = board_id
        self.view = view if view is not None else BoardView(board_id)
        self.activity_limit = activity_limit
        self.poll_interval = poll_interval
        self.subscribe_attempts = max(1, int(subscribe_attempts))
        self.on_refresh = on_refresh

        self._state = SubscriptionState.UNSUBSCRIBED
        self._subscription: Optional[Subscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._refetches: Set[asyncio.Task] = set()
        self._slots: Dict[Collection, _RefetchSlot] = {c: _RefetchSlot() for c in Collection}
        self.refresh_counts: Dict[Collection, int] = {c: 0 for c in Collection}

    @property
    def state(self) -> SubscriptionState:
        return self._state

    def slot(self, collection: Collection) -> _RefetchSlot:
        return self._slots[collection]

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> "BoardReconciler":
        """Subscribe, load every collection and start listening."""
        if self._state is not SubscriptionState.UNSUBSCRIBED:
            return self
        if await self._subscribe():
            self._start_listener()
        await self.refresh_all()
        if self.poll_interval:
            self._poller = asyncio.create_task(self._poll())
        return self

    async def stop(self) -> None:
        """Tear down: stop listening and polling and release the channel."""
        tasks = [t for t in (self._listener, self._poller) if t is not None]
        tasks.extend(self._refetches)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._listener = None
        self._poller = None
        self._refetches.clear()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._state = SubscriptionState.UNSUBSCRIBED
        logger.info(f"Reconciler for board {self.board_id} unsubscribed")

    async def __aenter__(self) -> "BoardReconciler":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _subscribe(self) -> bool:
        self._state = SubscriptionState.SUBSCRIBING
        for attempt in range(1, self.subscribe_attempts + 1):
            try:
                self._subscription = await self.hub.subscribe(self.board_id)
            except (ChannelDisconnected, TransientFailure) as e:
                logger.warning(
                    f"Subscribe to board {self.board_id} failed "
                    f"(attempt {attempt}/{self.subscribe_attempts}): {e}"
                )
                continue
            self._state = SubscriptionState.ACTIVE
            logger.info(f"Reconciler for board {self.board_id} active")
            return True
        self._state = SubscriptionState.ERROR
        logger.error(f"Could not subscribe to board {self.board_id}; falling back to polling")
        return False

    def _start_listener(self) -> None:
        self._listener = asyncio.create_task(self._listen())

    async def resubscribe(self) -> bool:
        """Retry the subscription after an error and refresh everything on success."""
        if self._state is SubscriptionState.ACTIVE:
            return True
        if not await self._subscribe():
            return False
        self._start_listener()
        self._invalidate_all()
        return True

    # ── Event handling ───────────────────────────────────────────────────────

    async def _listen(self) -> None:
        while self._subscription is not None:
            try:
                event = await self._subscription.get()
            except ChannelDisconnected as e:
                logger.warning(f"{e}; resubscribing")
                self._subscription = None
                if await self._subscribe():
                    self._invalidate_all()
                    continue
                return
            if event.board_id != self.board_id:
                continue
            self.invalidate(event.collection)

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self._state is SubscriptionState.ERROR:
                if await self.resubscribe():
                    continue
                self.invalidate(Collection.LISTS)
                self.invalidate(Collection.TASKS)
            self.invalidate(Collection.ACTIVITY)

    def invalidate(self, collection: Collection) -> None:
        """
        Mark a collection stale and schedule a refetch.

        Invalidations fold only into a refetch that is scheduled and has not
        started yet. Once a refetch is running its read may predate the change
        being signalled, so the next invalidation schedules a newer refetch
        instead (and later ones fold into that). The generation check in
        ``_refetch`` keeps whichever of the two started last.
        """
        slot = self._slots[collection]
        if slot.scheduled:
            return
        slot.scheduled = True
        task = asyncio.create_task(self._refetch(collection))
        self._refetches.add(task)
        task.add_done_callback(self._refetches.discard)

    def _invalidate_all(self) -> None:
        for collection in Collection:
            self.invalidate(collection)

    async def _refetch(self, collection: Collection) -> None:
        slot = self._slots[collection]
        slot.scheduled = False
        slot.issued += 1
        generation = slot.issued
        try:
            rows = await self.service.fetch(collection, self.board_id, limit=self.activity_limit)
        except TaskboardError as e:
            logger.warning(f"Refetch of {collection.value} for board {self.board_id} failed: {e}")
            return
        if generation <= slot.applied:
            slot.dropped += 1
            logger.debug(
                f"Dropping stale {collection.value} refetch {generation} "
                f"(already showing {slot.applied})"
            )
            return
        slot.applied = generation
        self.view.replace(collection, rows)
        self.refresh_counts[collection] += 1
        if self.on_refresh is not None:
            try:
                self.on_refresh(collection)
            except Exception as e:
                logger.error(f"on_refresh callback failed for {collection.value}: {e}")

    async def refresh_all(self) -> None:
        """Refetch every collection and wait for the results."""
        self._invalidate_all()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait until queued events are consumed and no refetch is running."""
        while True:
            await asyncio.sleep(0)
            if self._subscription is not None and self._subscription.pending():
                await asyncio.sleep(0.001)
                continue
            if not self._refetches:
                return
            await asyncio.gather(*list(self._refetches), return_exceptions=True)
