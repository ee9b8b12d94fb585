"""
Activity trail: an append-only log of who did what on a board.

Appends are fire-and-forget. ``record`` schedules the write and returns at
once, and a failed write is logged and counted but never raised, so the
mutation that triggered it succeeds or fails on its own. The trail is read
only for display and is never consulted to decide entity state.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .schema import ActivityAction, ActivityEntry, EntityType
from .service import BoardService

logger = logging.getLogger(__name__)


class ActivityTrail:
    """Writes and reads activity entries through a BoardService."""

    def __init__(self, service: BoardService, default_limit: int = 50):
        self.service = service
        self.default_limit = default_limit
        self.failures = 0
        self._inflight: Set[asyncio.Task] = set()

    async def append(
        self,
        board_id: str,
        action: ActivityAction,
        entity_type: EntityType,
        entity_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityEntry]:
        """Write one entry. Returns None instead of raising on failure."""
        try:
            return await self.service.append_activity(
                board_id, action, entity_type,
                entity_name=entity_name, entity_id=entity_id, details=details,
            )
        except Exception as e:
            self.failures += 1
            logger.warning(
                f"Failed to append activity ({action.value} {entity_type.value} "
                f"{entity_id or entity_name or ''}) on board {board_id}: {e}"
            )
            return None

    def record(
        self,
        board_id: str,
        action: ActivityAction,
        entity_type: EntityType,
        entity_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> asyncio.Task:
        """Schedule an append without waiting for it."""
        task = asyncio.create_task(
            self.append(board_id, action, entity_type, entity_name, entity_id, details)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled appends (shutdown and tests)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    async def list_recent(self, board_id: str, limit: Optional[int] = None) -> List[ActivityEntry]:
        """Newest entries first, at most ``limit``."""
        if limit is None:
            limit = self.default_limit
        return await self.service.list_activity(board_id, limit=limit)
