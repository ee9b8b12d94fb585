"""
One client's open board: the operations the UI layer calls.

    move_entity            - drag-and-drop move of a task or list
    create_entity_at_end   - new list/task appended after its siblings
    subscribe_to_board     - live BoardReconciler for this board
    list_recent_activity   - newest activity entries first

A session owns its own reconciler and channel subscription; nothing is
shared between sessions except the store and the hub.
"""
import logging
from typing import List, Optional

from .activity import ActivityTrail
from .channel import NotificationHub
from .config import Config
from .moves import MoveProtocol
from .reconciler import BoardReconciler
from .schema import ActivityEntry, EntityType
from .service import BoardService
from .store import TaskboardStore
from .view import BoardView

logger = logging.getLogger(__name__)


class BoardSession:
    """Wires service, view, trail, move protocol and reconciler for one board."""

    def __init__(
        self,
        store: TaskboardStore,
        hub: NotificationHub,
        actor_id: str,
        board_id: str,
        config: Optional[Config] = None,
    ):
        cfg = config or Config()
        self.board_id = board_id
        self.service = BoardService(store, actor_id)
        self.view = BoardView(board_id)
        self.trail = ActivityTrail(self.service, default_limit=cfg.activity_limit)
        self.moves = MoveProtocol(self.service, self.trail, self.view, retries=cfg.move_retries)
        self.reconciler = BoardReconciler(
            self.service,
            hub,
            board_id,
            view=self.view,
            activity_limit=cfg.activity_limit,
            poll_interval=cfg.activity_poll_interval or None,
            subscribe_attempts=cfg.subscribe_attempts,
        )

    async def move_entity(self, entity_type: EntityType, entity_id: str, dest_parent_id: str, dest_index: int):
        return await self.moves.move(entity_type, entity_id, dest_parent_id, dest_index)

    async def create_entity_at_end(self, entity_type: EntityType, parent_id: str, name: str, **fields):
        """Lists take the board as parent, tasks take a list."""
        if entity_type is EntityType.LIST:
            if parent_id != self.board_id:
                raise ValueError(f"List parent must be board {self.board_id}")
            return await self.moves.create_list_at_end(parent_id, name)
        if entity_type is EntityType.TASK:
            return await self.moves.create_task_at_end(parent_id, name, **fields)
        raise ValueError(f"Cannot create a {entity_type.value} here")

    def subscribe_to_board(self) -> BoardReconciler:
        """The session's reconciler; use with ``async with``."""
        return self.reconciler

    async def list_recent_activity(self, limit: Optional[int] = None) -> List[ActivityEntry]:
        return await self.trail.list_recent(self.board_id, limit)

    async def __aenter__(self) -> "BoardSession":
        await self.reconciler.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.trail.drain()
        await self.reconciler.stop()
