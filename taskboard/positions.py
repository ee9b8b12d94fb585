"""
Ordering keys for lists within a board and tasks within a list.

Positions are indices chosen at write time: a new sibling is appended at
``len(siblings)`` and a moved entity takes the integer index of its target
slot. Nothing renumbers the other siblings afterwards, so equal positions
are expected. Reads always sort the full sibling set with ``sort_key``:
position first, then ``position_seq`` descending, then id.

``placement`` picks the position and the tie-break for a drop. A row that
shares its position with the sibling it must follow (a drag toward the back)
takes a low seq from the back counter; a row that must precede an
equal-position sibling takes a fresh high seq.
"""
from typing import Dict, Iterable, List, Sequence, Tuple, TypeVar, Union

from .schema import BoardList, Task

Positioned = TypeVar("Positioned", BoardList, Task)

# Tie-break requests returned by placement(); the caller turns them into a seq.
FRONT = "front"
BACK = "back"


def sort_key(entity) -> Tuple[int, int, str]:
    return (entity.position, -entity.position_seq, entity.id)


def ordered(siblings: Iterable[Positioned]) -> List[Positioned]:
    """Siblings in display order."""
    return sorted(siblings, key=sort_key)


def dense(siblings: Iterable[Positioned]) -> List[Tuple[int, Positioned]]:
    """(display index, entity) pairs. The index is never persisted."""
    return list(enumerate(ordered(siblings)))


def dense_index(siblings: Iterable[Positioned]) -> Dict[str, int]:
    return {entity.id: index for index, entity in dense(siblings)}


def append_position(siblings: Iterable[Positioned]) -> int:
    """Position for a new entity placed after every existing sibling."""
    return len(list(siblings))


def clamp_index(index: int, size: int) -> int:
    return max(0, min(int(index), size))


def already_at(siblings: Iterable[Positioned], entity_id: str, index: int) -> bool:
    """True when ``entity_id`` is among ``siblings`` and already shows at ``index``."""
    ids = [s.id for s in ordered(siblings)]
    if entity_id not in ids:
        return False
    return ids.index(entity_id) == clamp_index(index, len(ids) - 1)


def placement(others: Sequence[Positioned], index: int) -> Tuple[int, Union[int, str]]:
    """
    Position and tie-break for an entity dropped at ``index`` of ``others``.

    ``others`` is the sorted destination sibling list without the moved
    entity. The position is the index itself, held between the positions of
    the two neighbours so stale gaps cannot push the row past them. The
    second value is FRONT or BACK when a fresh seq from that counter does
    the job, or a concrete seq between two neighbours that share the
    position.
    """
    index = clamp_index(index, len(others))
    before = others[index - 1] if index > 0 else None
    after = others[index] if index < len(others) else None
    position = index
    if before is not None:
        position = max(position, before.position)
    if after is not None:
        position = min(position, after.position)

    ties_before = before is not None and before.position == position
    ties_after = after is not None and after.position == position
    if ties_before and ties_after:
        if before.position_seq - after.position_seq >= 2:
            return position, (before.position_seq + after.position_seq) // 2
        # no integer fits between them; the id decides
        return position, FRONT
    if ties_before:
        return position, BACK
    return position, FRONT


def group_by_parent(entities: Iterable[Positioned]) -> Dict[str, List[Positioned]]:
    """Sorted siblings keyed by parent id (board for lists, list for tasks)."""
    groups: Dict[str, List[Positioned]] = {}
    for entity in entities:
        groups.setdefault(entity.parent_id, []).append(entity)
    return {parent: ordered(children) for parent, children in groups.items()}
