"""
Local, optimistic picture of one board.

The view keeps the last confirmed server snapshot of each collection plus a
set of pending changes, one per in-flight mutation, keyed by token. Reads
apply pending changes over the confirmed rows in the order they were staged.
A refetch replaces confirmed rows only, so in-flight local edits survive it.
When the server confirms a mutation its pending change is dropped and the
returned row becomes confirmed; when the mutation fails the pending change is
simply discarded, which rolls the display back to the last confirmed state.
"""
import dataclasses
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from . import positions
from .schema import ActivityEntry, BoardList, Collection, Task


@dataclass
class PendingChange:
    """One optimistic edit waiting for the server."""
    token: int
    collection: Collection
    entity_id: str
    changes: Dict[str, Any] = field(default_factory=dict)


class BoardView:
    """Confirmed snapshots plus pending overlays for a single board."""

    def __init__(self, board_id: str):
        self.board_id = board_id
        self._confirmed: Dict[Collection, Dict[str, Any]] = {
            Collection.LISTS: {},
            Collection.TASKS: {},
        }
        self._activity: List[ActivityEntry] = []
        self._pending: Dict[int, PendingChange] = {}
        self._tokens = itertools.count(1)
        self.loaded: Set[Collection] = set()

    # ── Server state ─────────────────────────────────────────────────────────

    def replace(self, collection: Collection, rows: List[Any]) -> None:
        """Swap in a freshly fetched snapshot of a whole collection."""
        if collection is Collection.ACTIVITY:
            self._activity = list(rows)
        else:
            self._confirmed[collection] = {row.id: row for row in rows}
        self.loaded.add(collection)

    def upsert(self, collection: Collection, row: Any) -> None:
        self._confirmed[collection][row.id] = row

    def remove(self, collection: Collection, entity_id: str) -> None:
        self._confirmed[collection].pop(entity_id, None)

    # ── Optimistic edits ─────────────────────────────────────────────────────

    def stage(self, collection: Collection, entity_id: str, **changes) -> int:
        """Record a pending change and return its token."""
        token = next(self._tokens)
        self._pending[token] = PendingChange(token, collection, entity_id, dict(changes))
        return token

    def confirm(self, token: int, row: Optional[Any] = None) -> None:
        """Replace a pending change with the server-confirmed row."""
        change = self._pending.pop(token, None)
        if row is not None:
            collection = change.collection if change else (
                Collection.TASKS if isinstance(row, Task) else Collection.LISTS
            )
            self.upsert(collection, row)

    def discard(self, token: int) -> None:
        """Drop a pending change after its mutation failed."""
        self._pending.pop(token, None)

    def is_pending(self, entity_id: str) -> bool:
        return any(c.entity_id == entity_id for c in self._pending.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Reads ────────────────────────────────────────────────────────────────

    def _merged(self, collection: Collection) -> Dict[str, Any]:
        rows = dict(self._confirmed[collection])
        for change in self._pending.values():
            if change.collection is collection and change.entity_id in rows:
                rows[change.entity_id] = dataclasses.replace(rows[change.entity_id], **change.changes)
        return rows

    def lists(self) -> List[BoardList]:
        """Lists in display order."""
        return positions.ordered(self._merged(Collection.LISTS).values())

    def tasks(self, list_id: str) -> List[Task]:
        """Tasks of one list in display order."""
        return positions.ordered(
            t for t in self._merged(Collection.TASKS).values() if t.list_id == list_id
        )

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._merged(Collection.TASKS).get(task_id)

    def get_list(self, list_id: str) -> Optional[BoardList]:
        return self._merged(Collection.LISTS).get(list_id)

    def activity(self) -> List[ActivityEntry]:
        return list(self._activity)

    def layout(self) -> Dict[str, List[str]]:
        """list id -> task ids, both in display order."""
        return {lst.id: [t.id for t in self.tasks(lst.id)] for lst in self.lists()}
