"""
Async access to the persistence service on behalf of one user.

Every call runs the blocking SQLite work on a worker thread so that the
event loop driving moves, refetches and subscriptions never stalls.
"""
import asyncio
from typing import Any, Dict, List, Optional

from .schema import ActivityEntry, Board, BoardList, Collection, Member, Task
from .store import TaskboardStore


class BoardService:
    """The store's operations, bound to an acting user and awaitable."""

    def __init__(self, store: TaskboardStore, actor_id: str):
        self.store = store
        self.actor_id = actor_id

    async def _call(self, method: str, *args, **kwargs):
        return await asyncio.to_thread(getattr(self.store, method), self.actor_id, *args, **kwargs)

    # Boards and members
    async def get_board(self, board_id: str) -> Board:
        return await self._call("get_board", board_id)

    async def list_members(self, board_id: str) -> List[Member]:
        return await self._call("list_members", board_id)

    async def add_member_by_email(self, board_id: str, email: str) -> Member:
        return await self._call("add_member_by_email", board_id, email)

    # Lists
    async def list_lists(self, board_id: str) -> List[BoardList]:
        return await self._call("list_lists", board_id)

    async def get_list(self, list_id: str) -> BoardList:
        return await self._call("get_list", list_id)

    async def create_list(self, board_id: str, name: str, position: Optional[int] = None) -> BoardList:
        return await self._call("create_list", board_id, name, position=position)

    async def update_list(self, list_id: str, **changes) -> BoardList:
        return await self._call("update_list", list_id, **changes)

    async def delete_list(self, list_id: str) -> BoardList:
        return await self._call("delete_list", list_id)

    # Tasks
    async def list_tasks(self, board_id: str) -> List[Task]:
        return await self._call("list_tasks", board_id)

    async def list_tasks_in_list(self, list_id: str) -> List[Task]:
        return await self._call("list_tasks_in_list", list_id)

    async def search_tasks(self, board_id: str, query: str) -> List[Task]:
        return await self._call("search_tasks", board_id, query)

    async def get_task(self, task_id: str) -> Task:
        return await self._call("get_task", task_id)

    async def create_task(self, list_id: str, title: str, position: Optional[int] = None, **fields) -> Task:
        return await self._call("create_task", list_id, title, position=position, **fields)

    async def update_task(self, task_id: str, **changes) -> Task:
        return await self._call("update_task", task_id, **changes)

    async def delete_task(self, task_id: str) -> Task:
        return await self._call("delete_task", task_id)

    # Activity
    async def append_activity(
        self,
        board_id: str,
        action: Any,
        entity_type: Any,
        entity_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        return await self._call(
            "append_activity", board_id, action, entity_type,
            entity_name=entity_name, entity_id=entity_id, details=details,
        )

    async def list_activity(self, board_id: str, limit: int = 50) -> List[ActivityEntry]:
        return await self._call("list_activity", board_id, limit=limit)

    async def fetch(self, collection: Collection, board_id: str, limit: int = 50) -> list:
        """Full contents of one board collection."""
        if collection is Collection.LISTS:
            return await self.list_lists(board_id)
        if collection is Collection.TASKS:
            return await self.list_tasks(board_id)
        return await self.list_activity(board_id, limit=limit)
