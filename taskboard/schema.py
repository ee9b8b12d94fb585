"""
Task board data model.

Boards own ordered lists, lists own ordered tasks. Lists and tasks carry a
numeric ``position`` (ordering key among siblings) and a ``position_seq``
stamped by the store whenever the row is (re)placed; the seq breaks ties
between siblings sharing a position.

Activity entries are immutable and append-only. Every row read from the
store or received over HTTP passes through ``from_dict`` so that untyped
rows are narrowed at the boundary.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Random entity id."""
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value!r}")


def _require(data: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing required field(s): {', '.join(missing)}")


class Priority(Enum):
    """Task priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid priority {value!r} (expected one of: {allowed})")


class ActivityAction(Enum):
    """Kinds of mutation recorded in the activity trail."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MOVED = "moved"
    ASSIGNED = "assigned"

    @classmethod
    def parse(cls, value: Any) -> "ActivityAction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Invalid activity action: {value!r}")


class EntityType(Enum):
    BOARD = "board"
    LIST = "list"
    TASK = "task"
    MEMBER = "member"

    @classmethod
    def parse(cls, value: Any) -> "EntityType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Invalid entity type: {value!r}")


class Collection(Enum):
    """Board-scoped collections a change notification can refer to."""
    LISTS = "lists"
    TASKS = "tasks"
    ACTIVITY = "activity"


class Operation(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# ── Entities ─────────────────────────────────────────────────────────────────


@dataclass
class Profile:
    """A user known to the store."""
    id: str
    email: str
    full_name: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        _require(data, "id", "email")
        return cls(
            id=data["id"],
            email=data["email"],
            full_name=data.get("full_name") or "",
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass
class Board:
    """Top-level collaborative workspace."""
    id: str
    name: str
    owner_id: str
    description: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        _require(data, "id", "name", "owner_id")
        return cls(
            id=data["id"],
            name=data["name"],
            owner_id=data["owner_id"],
            description=data.get("description") or "",
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Member:
    """Board membership, joined with the member's profile when read."""
    id: str
    board_id: str
    user_id: str
    role: str = "member"
    email: str = ""
    full_name: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "user_id": self.user_id,
            "role": self.role,
            "email": self.email,
            "full_name": self.full_name,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Member":
        _require(data, "id", "board_id", "user_id")
        return cls(
            id=data["id"],
            board_id=data["board_id"],
            user_id=data["user_id"],
            role=data.get("role") or "member",
            email=data.get("email") or "",
            full_name=data.get("full_name") or "",
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass
class BoardList:
    """An ordered column of tasks within a board."""
    id: str
    board_id: str
    name: str
    position: int = 0
    position_seq: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def parent_id(self) -> str:
        return self.board_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "name": self.name,
            "position": self.position,
            "position_seq": self.position_seq,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoardList":
        _require(data, "id", "board_id", "name")
        return cls(
            id=data["id"],
            board_id=data["board_id"],
            name=data["name"],
            position=int(data.get("position") or 0),
            position_seq=int(data.get("position_seq") or 0),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass
class Task:
    """A unit of work belonging to exactly one list."""
    id: str
    list_id: str                     # authoritative container
    board_id: str                    # denormalized for board-wide filtering
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    position: int = 0
    position_seq: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def parent_id(self) -> str:
        return self.list_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "list_id": self.list_id,
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "due_date": _iso(self.due_date),
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "position": self.position,
            "position_seq": self.position_seq,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        _require(data, "id", "list_id", "board_id", "title")
        return cls(
            id=data["id"],
            list_id=data["list_id"],
            board_id=data["board_id"],
            title=data["title"],
            description=data.get("description") or "",
            priority=Priority.parse(data.get("priority") or "medium"),
            due_date=_parse_dt(data.get("due_date")),
            assigned_to=data.get("assigned_to") or None,
            created_by=data.get("created_by") or None,
            position=int(data.get("position") or 0),
            position_seq=int(data.get("position_seq") or 0),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass
class ActivityEntry:
    """Immutable record of a single mutation on a board."""
    id: str
    board_id: str
    user_id: str
    action: ActivityAction
    entity_type: EntityType
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    seq: int = 0
    actor_name: str = ""             # joined from profiles on read
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "user_id": self.user_id,
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "details": self.details,
            "seq": self.seq,
            "actor_name": self.actor_name,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityEntry":
        _require(data, "id", "board_id", "user_id", "action", "entity_type")
        details = data.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except json.JSONDecodeError:
                details = None
        if details is not None and not isinstance(details, dict):
            details = None
        return cls(
            id=data["id"],
            board_id=data["board_id"],
            user_id=data["user_id"],
            action=ActivityAction.parse(data["action"]),
            entity_type=EntityType.parse(data["entity_type"]),
            entity_id=data.get("entity_id") or None,
            entity_name=data.get("entity_name") or None,
            details=details,
            seq=int(data.get("seq") or 0),
            actor_name=data.get("actor_name") or "",
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ChangeEvent:
    """A "something changed" signal scoped to one board. Carries no row data."""
    board_id: str
    collection: Collection
    operation: Operation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "board_id": self.board_id,
            "collection": self.collection.value,
            "operation": self.operation.value,
        }
