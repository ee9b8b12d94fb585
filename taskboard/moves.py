"""
Move protocol: drag-and-drop moves and other client-side mutations.

A move names the entity, the destination parent and a zero-based index into
the destination's sorted siblings with the moved entity left out. The
protocol:

  1. stages the move in the local BoardView (if any) so the display updates
     immediately,
  2. fetches the destination siblings from the store; a move to the index
     the entity already shows at in its own parent stops here and writes
     nothing,
  3. otherwise writes the new parent and index as one row update, which the
     store turns into a position and tie-break (see positions.py); no
     sibling is rewritten,
  4. on success replaces the staged change with the confirmed row and
     schedules a ``moved`` activity entry; on failure discards the staged
     change and re-raises.

Moves of the same entity are serialized in issuance order. TransientFailure
is retried up to ``retries`` extra times (a move is idempotent for a given
destination); NotFound and PermissionDenied are raised at once. Creates are
never retried since the store has no idempotency key for them.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import positions
from .activity import ActivityTrail
from .errors import NotFound, TransientFailure
from .schema import ActivityAction, BoardList, Collection, EntityType, Priority, Task
from .service import BoardService
from .view import BoardView

logger = logging.getLogger(__name__)


def _typed_overlay(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce raw edit values to the types the view's Task rows carry."""
    overlay = dict(changes)
    if "priority" in overlay:
        overlay["priority"] = Priority.parse(overlay["priority"])
    if isinstance(overlay.get("due_date"), str):
        overlay["due_date"] = datetime.fromisoformat(overlay["due_date"]) if overlay["due_date"] else None
    return overlay


class MoveProtocol:
    """Moves, creates, edits and deletes issued by one client."""

    def __init__(
        self,
        service: BoardService,
        trail: Optional[ActivityTrail] = None,
        view: Optional[BoardView] = None,
        retries: int = 0,
    ):
        self.service = service
        self.trail = trail if trail is not None else ActivityTrail(service)
        self.view = view
        self.retries = max(0, int(retries))
        # entity id -> [lock, holders and waiters]
        self._locks: Dict[str, List[Any]] = {}

    @asynccontextmanager
    async def _serialized(self, entity_id: str):
        """Hold the entity's lock; the entry goes away once nobody holds or awaits it."""
        entry = self._locks.setdefault(entity_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                del self._locks[entity_id]

    # ── Optimistic staging ───────────────────────────────────────────────────

    def _stage_move(self, collection: Collection, entity, siblings: List[Any], index: int,
                    **changes) -> Optional[int]:
        if self.view is None or entity is None:
            return None
        if positions.already_at(siblings, entity.id, index):
            return None
        position, seq = positions.placement([s for s in siblings if s.id != entity.id], index)
        seqs = [s.position_seq for s in siblings] + [entity.position_seq]
        if seq == positions.FRONT:
            seq = max(seqs) + 1
        elif seq == positions.BACK:
            seq = min(seqs) - 1
        return self.view.stage(collection, entity.id, position=position, position_seq=seq, **changes)

    def _discard(self, token: Optional[int]) -> None:
        if self.view is not None and token is not None:
            self.view.discard(token)

    def _confirm(self, token: Optional[int], collection: Collection, row: Any) -> None:
        if self.view is None:
            return
        if token is not None:
            self.view.confirm(token, row)
        else:
            self.view.upsert(collection, row)

    async def _attempt(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``call``, retrying TransientFailure up to self.retries times."""
        attempt = 0
        while True:
            try:
                return await call()
            except TransientFailure as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                logger.warning(f"{label} failed ({e}), retry {attempt}/{self.retries}")

    # ── Moves ────────────────────────────────────────────────────────────────

    async def move_task(self, task_id: str, dest_list_id: str, dest_index: int) -> Task:
        """Move a task to ``dest_index`` of ``dest_list_id`` (same or another list)."""
        async with self._serialized(task_id):
            token = None
            if self.view is not None:
                token = self._stage_move(
                    Collection.TASKS, self.view.get_task(task_id),
                    self.view.tasks(dest_list_id), dest_index, list_id=dest_list_id,
                )

            async def plan_and_write():
                task = await self.service.get_task(task_id)
                dest = await self.service.get_list(dest_list_id)
                if dest.board_id != task.board_id:
                    raise NotFound("list", dest_list_id)
                siblings = await self.service.list_tasks_in_list(dest_list_id)
                if positions.already_at(siblings, task_id, dest_index):
                    return task, task
                updated = await self.service.update_task(task_id, list_id=dest_list_id, position=dest_index)
                return task, updated

            try:
                before, updated = await self._attempt(f"Move of task {task_id}", plan_and_write)
            except Exception:
                self._discard(token)
                raise
            self._confirm(token, Collection.TASKS, updated)

        logger.info(f"Task {task_id} moved to list {dest_list_id} at position {updated.position}")
        self.trail.record(
            updated.board_id, ActivityAction.MOVED, EntityType.TASK,
            entity_name=updated.title, entity_id=task_id,
            details={"from_list_id": before.list_id, "to_list_id": dest_list_id, "index": updated.position},
        )
        return updated

    async def move_list(self, list_id: str, dest_index: int) -> BoardList:
        """Reorder a list within its board."""
        async with self._serialized(list_id):
            token = None
            if self.view is not None:
                token = self._stage_move(
                    Collection.LISTS, self.view.get_list(list_id), self.view.lists(), dest_index,
                )

            async def plan_and_write():
                lst = await self.service.get_list(list_id)
                siblings = await self.service.list_lists(lst.board_id)
                if positions.already_at(siblings, list_id, dest_index):
                    return lst
                return await self.service.update_list(list_id, position=dest_index)

            try:
                updated = await self._attempt(f"Move of list {list_id}", plan_and_write)
            except Exception:
                self._discard(token)
                raise
            self._confirm(token, Collection.LISTS, updated)

        logger.info(f"List {list_id} moved to position {updated.position}")
        self.trail.record(
            updated.board_id, ActivityAction.MOVED, EntityType.LIST,
            entity_name=updated.name, entity_id=list_id, details={"index": updated.position},
        )
        return updated

    async def move(self, entity_type: EntityType, entity_id: str, dest_parent_id: str, dest_index: int):
        """Generic entry point: tasks move between lists, lists only within their board."""
        if entity_type is EntityType.TASK:
            return await self.move_task(entity_id, dest_parent_id, dest_index)
        if entity_type is EntityType.LIST:
            lst = await self.service.get_list(entity_id)
            if dest_parent_id != lst.board_id:
                raise ValueError("Lists can only be reordered within their own board")
            return await self.move_list(entity_id, dest_index)
        raise ValueError(f"Cannot move a {entity_type.value}")

    # ── Creates ──────────────────────────────────────────────────────────────

    async def create_list_at_end(self, board_id: str, name: str) -> BoardList:
        """Append a new list after the board's existing lists."""
        siblings = await self.service.list_lists(board_id)
        created = await self.service.create_list(board_id, name, position=positions.append_position(siblings))
        self._confirm(None, Collection.LISTS, created)
        self.trail.record(board_id, ActivityAction.CREATED, EntityType.LIST,
                          entity_name=created.name, entity_id=created.id)
        return created

    async def create_task_at_end(self, list_id: str, title: str, **fields) -> Task:
        """Append a new task after the list's existing tasks."""
        siblings = await self.service.list_tasks_in_list(list_id)
        created = await self.service.create_task(
            list_id, title, position=positions.append_position(siblings), **fields
        )
        self._confirm(None, Collection.TASKS, created)
        self.trail.record(created.board_id, ActivityAction.CREATED, EntityType.TASK,
                          entity_name=created.title, entity_id=created.id)
        return created

    # ── Edits and deletes ────────────────────────────────────────────────────

    async def edit_task(self, task_id: str, **changes) -> Task:
        """Update task details (not its placement; use move_task for that)."""
        if "list_id" in changes or "position" in changes:
            raise ValueError("Use move_task to change a task's list or position")
        async with self._serialized(task_id):
            token = None
            if self.view is not None and self.view.get_task(task_id) is not None:
                token = self.view.stage(Collection.TASKS, task_id, **_typed_overlay(changes))
            try:
                before = await self.service.get_task(task_id)
                updated = await self._attempt(
                    f"Update of task {task_id}", lambda: self.service.update_task(task_id, **changes)
                )
            except Exception:
                self._discard(token)
                raise
            self._confirm(token, Collection.TASKS, updated)

        action = ActivityAction.UPDATED
        if "assigned_to" in changes and updated.assigned_to != before.assigned_to:
            action = ActivityAction.ASSIGNED
        self.trail.record(updated.board_id, action, EntityType.TASK,
                          entity_name=updated.title, entity_id=task_id)
        return updated

    async def rename_list(self, list_id: str, name: str) -> BoardList:
        async with self._serialized(list_id):
            token = None
            if self.view is not None and self.view.get_list(list_id) is not None:
                token = self.view.stage(Collection.LISTS, list_id, name=name)
            try:
                updated = await self._attempt(
                    f"Rename of list {list_id}", lambda: self.service.update_list(list_id, name=name)
                )
            except Exception:
                self._discard(token)
                raise
            self._confirm(token, Collection.LISTS, updated)
        self.trail.record(updated.board_id, ActivityAction.UPDATED, EntityType.LIST,
                          entity_name=updated.name, entity_id=list_id)
        return updated

    async def delete_task(self, task_id: str) -> Task:
        async with self._serialized(task_id):
            deleted = await self.service.delete_task(task_id)
            if self.view is not None:
                self.view.remove(Collection.TASKS, task_id)
        self.trail.record(deleted.board_id, ActivityAction.DELETED, EntityType.TASK,
                          entity_name=deleted.title, entity_id=task_id)
        return deleted

    async def delete_list(self, list_id: str) -> BoardList:
        async with self._serialized(list_id):
            deleted = await self.service.delete_list(list_id)
            if self.view is not None:
                self.view.remove(Collection.LISTS, list_id)
        self.trail.record(deleted.board_id, ActivityAction.DELETED, EntityType.LIST,
                          entity_name=deleted.name, entity_id=list_id)
        return deleted
