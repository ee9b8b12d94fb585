"""
Task board storage backend (SQLite).

Provides CRUD operations and queries for boards, members, lists, tasks and
the activity trail, and enforces board membership on every call. After each
committed write to a board's lists, tasks or activity the store publishes a
change notification on its NotificationHub.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import positions
from .channel import NotificationHub
from .errors import NotFound, PermissionDenied, TransientFailure
from .schema import (
    ActivityAction,
    ActivityEntry,
    Board,
    BoardList,
    Collection,
    EntityType,
    Member,
    Operation,
    Priority,
    Profile,
    Task,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DB = Path.home() / ".local" / "share" / "taskboard" / "taskboard.db"

OWNER_ROLE = "owner"
MEMBER_ROLE = "member"

LIST_FIELDS = {"name", "position"}
TASK_FIELDS = {"title", "description", "priority", "due_date", "assigned_to", "list_id", "position"}

_SIBLING_ORDER = "position ASC, position_seq DESC, id ASC"


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _iso(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    # Validate and normalize strings
    return datetime.fromisoformat(str(value)).isoformat()


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TaskboardStore:
    """SQLite-backed persistence service for task boards."""

    def __init__(self, db_path: str = None, notifier: Optional[NotificationHub] = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(DEFAULT_DB)
        self.db_path = str(db_path)
        self.notifier = notifier
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """One connection per call. Writes take the database lock up front."""
        try:
            conn = _connect(self.db_path)
        except sqlite3.OperationalError as e:
            raise TransientFailure(f"Store unavailable: {e}") from e
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise TransientFailure(f"Store unavailable: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    full_name TEXT DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS boards (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    owner_id TEXT NOT NULL REFERENCES profiles(id),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS board_members (
                    id TEXT PRIMARY KEY,
                    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL REFERENCES profiles(id),
                    role TEXT NOT NULL DEFAULT 'member',
                    created_at TEXT NOT NULL,
                    UNIQUE (board_id, user_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS lists (
                    id TEXT PRIMARY KEY,
                    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    position_seq INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    list_id TEXT NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
                    board_id TEXT NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    due_date TEXT,
                    assigned_to TEXT,
                    created_by TEXT,
                    position INTEGER NOT NULL DEFAULT 0,
                    position_seq INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_logs (
                    id TEXT PRIMARY KEY,
                    board_id TEXT NOT NULL,  -- no FK: entries outlive their board
                    user_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    entity_name TEXT,
                    details TEXT,  -- JSON object
                    seq INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (board_id, seq)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_members_user ON board_members(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_lists_board ON lists(board_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_list ON tasks(list_id, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_board ON tasks(board_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_board ON activity_logs(board_id, seq)")

    # ── Internals ────────────────────────────────────────────────────────────

    def _notify(self, board_id: str, collection: Collection, operation: Operation) -> None:
        if self.notifier is not None:
            self.notifier.publish(board_id, collection, operation)

    def _next_position_seq(self, conn: sqlite3.Connection, back: bool = False) -> int:
        """
        Store-wide counters, bumped whenever a list or task is (re)placed.

        The front counter counts up from 1 and the back counter down from -1,
        so a fresh front seq sorts ahead of every equal-position sibling and a
        fresh back seq behind them.
        """
        key, step = ("position_seq_back", -1) if back else ("position_seq", 1)
        row = conn.execute("SELECT value FROM system_state WHERE key = ?", (key,)).fetchone()
        value = int(row["value"]) + step if row else step
        conn.execute("""
            INSERT INTO system_state (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), utc_now().isoformat()))
        return value

    def _place(self, conn: sqlite3.Connection, table: str, parent_column: str, parent_id: str,
               entity_id: Optional[str], index: int) -> Optional[Tuple[int, int]]:
        """
        (position, position_seq) that show ``entity_id`` at ``index`` among the
        rows under ``parent_id``, or None when it already shows there.
        """
        model = BoardList if table == "lists" else Task
        rows = conn.execute(
            f"SELECT * FROM {table} WHERE {parent_column} = ? ORDER BY {_SIBLING_ORDER}", (parent_id,)
        ).fetchall()
        siblings = [model.from_dict(dict(r)) for r in rows]
        if entity_id is not None and positions.already_at(siblings, entity_id, index):
            return None
        position, seq = positions.placement([s for s in siblings if s.id != entity_id], index)
        if seq == positions.FRONT:
            seq = self._next_position_seq(conn)
        elif seq == positions.BACK:
            seq = self._next_position_seq(conn, back=True)
        return position, seq

    def _board_row(self, conn: sqlite3.Connection, board_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
        if not row:
            raise NotFound("board", board_id)
        return row

    def _require_member(self, conn: sqlite3.Connection, board_id: str, actor_id: str) -> str:
        """Return the actor's role on the board or raise."""
        self._board_row(conn, board_id)
        row = conn.execute(
            "SELECT role FROM board_members WHERE board_id = ? AND user_id = ?",
            (board_id, actor_id),
        ).fetchone()
        if row:
            return row["role"]
        raise PermissionDenied(f"User {actor_id} is not a member of board {board_id}")

    def _list_row(self, conn: sqlite3.Connection, list_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM lists WHERE id = ?", (list_id,)).fetchone()
        if not row:
            raise NotFound("list", list_id)
        return row

    def _task_row(self, conn: sqlite3.Connection, task_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFound("task", task_id)
        return row

    def _profile_row(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFound("profile", user_id)
        return row

    def _check_assignee(self, conn: sqlite3.Connection, board_id: str, user_id: Optional[str]) -> None:
        if not user_id:
            return
        row = conn.execute(
            "SELECT 1 FROM board_members WHERE board_id = ? AND user_id = ?",
            (board_id, user_id),
        ).fetchone()
        if not row:
            raise ValueError(f"Assignee {user_id} is not a member of board {board_id}")

    # ── Profiles ─────────────────────────────────────────────────────────────

    def create_profile(self, email: str, full_name: str = "", user_id: Optional[str] = None) -> Profile:
        """Register a user. Re-registering an email returns the existing profile."""
        email = (email or "").strip().lower()
        if not email:
            raise ValueError("email is required")
        with self._transaction(write=True) as conn:
            row = conn.execute("SELECT * FROM profiles WHERE email = ?", (email,)).fetchone()
            if row:
                return Profile.from_dict(dict(row))
            profile = Profile(id=user_id or new_id(), email=email, full_name=full_name or "")
            conn.execute(
                "INSERT INTO profiles (id, email, full_name, created_at) VALUES (?, ?, ?, ?)",
                (profile.id, profile.email, profile.full_name, profile.created_at.isoformat()),
            )
        return profile

    def get_profile(self, user_id: str) -> Profile:
        with self._transaction() as conn:
            return Profile.from_dict(dict(self._profile_row(conn, user_id)))

    def find_profile_by_email(self, email: str) -> Optional[Profile]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE email = ?", ((email or "").strip().lower(),)
            ).fetchone()
        return Profile.from_dict(dict(row)) if row else None

    # ── Boards ───────────────────────────────────────────────────────────────

    def create_board(self, actor_id: str, name: str, description: str = "") -> Board:
        """Create a board owned by the actor, who becomes its first member."""
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")
        with self._transaction(write=True) as conn:
            self._profile_row(conn, actor_id)
            board = Board(id=new_id(), name=name, owner_id=actor_id, description=description or "")
            conn.execute(
                "INSERT INTO boards (id, name, description, owner_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (board.id, board.name, board.description, board.owner_id,
                 board.created_at.isoformat(), board.updated_at.isoformat()),
            )
            conn.execute(
                "INSERT INTO board_members (id, board_id, user_id, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (new_id(), board.id, actor_id, OWNER_ROLE, board.created_at.isoformat()),
            )
        logger.info(f"Board created: {board.id} ({board.name}) by {actor_id}")
        return board

    def get_board(self, actor_id: str, board_id: str) -> Board:
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            return Board.from_dict(dict(self._board_row(conn, board_id)))

    def list_boards(self, actor_id: str) -> List[Board]:
        """Boards the actor belongs to, newest first."""
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT b.* FROM boards b
                JOIN board_members m ON m.board_id = b.id
                WHERE m.user_id = ?
                ORDER BY b.created_at DESC
            """, (actor_id,)).fetchall()
        return [Board.from_dict(dict(r)) for r in rows]

    def update_board(self, actor_id: str, board_id: str, name: Optional[str] = None,
                     description: Optional[str] = None) -> Board:
        with self._transaction(write=True) as conn:
            self._require_member(conn, board_id, actor_id)
            board = Board.from_dict(dict(self._board_row(conn, board_id)))
            if name is not None:
                if not name.strip():
                    raise ValueError("name cannot be empty")
                board.name = name.strip()
            if description is not None:
                board.description = description
            board.updated_at = utc_now()
            conn.execute(
                "UPDATE boards SET name = ?, description = ?, updated_at = ? WHERE id = ?",
                (board.name, board.description, board.updated_at.isoformat(), board.id),
            )
        return board

    def delete_board(self, actor_id: str, board_id: str) -> None:
        """Delete a board and everything on it. Owner only."""
        with self._transaction(write=True) as conn:
            role = self._require_member(conn, board_id, actor_id)
            if role != OWNER_ROLE:
                raise PermissionDenied(f"Only the owner can delete board {board_id}")
            conn.execute("DELETE FROM boards WHERE id = ?", (board_id,))
        logger.info(f"Board deleted: {board_id} by {actor_id}")
        self._notify(board_id, Collection.LISTS, Operation.DELETE)
        self._notify(board_id, Collection.TASKS, Operation.DELETE)

    # ── Members ──────────────────────────────────────────────────────────────

    def add_member(self, actor_id: str, board_id: str, user_id: str, role: str = MEMBER_ROLE) -> Member:
        """Add a user to a board. Adding an existing member is a no-op."""
        with self._transaction(write=True) as conn:
            self._require_member(conn, board_id, actor_id)
            self._profile_row(conn, user_id)
            conn.execute(
                "INSERT OR IGNORE INTO board_members (id, board_id, user_id, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (new_id(), board_id, user_id, role or MEMBER_ROLE, utc_now().isoformat()),
            )
            row = conn.execute("""
                SELECT m.*, p.email, p.full_name FROM board_members m
                JOIN profiles p ON p.id = m.user_id
                WHERE m.board_id = ? AND m.user_id = ?
            """, (board_id, user_id)).fetchone()
        return Member.from_dict(dict(row))

    def add_member_by_email(self, actor_id: str, board_id: str, email: str) -> Member:
        profile = self.find_profile_by_email(email)
        if profile is None:
            raise NotFound("profile", email)
        return self.add_member(actor_id, board_id, profile.id)

    def list_members(self, actor_id: str, board_id: str) -> List[Member]:
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            rows = conn.execute("""
                SELECT m.*, p.email, p.full_name FROM board_members m
                JOIN profiles p ON p.id = m.user_id
                WHERE m.board_id = ?
                ORDER BY m.created_at ASC
            """, (board_id,)).fetchall()
        return [Member.from_dict(dict(r)) for r in rows]

    def remove_member(self, actor_id: str, board_id: str, user_id: str) -> None:
        """Owners may remove anyone but themselves; members may leave."""
        with self._transaction(write=True) as conn:
            role = self._require_member(conn, board_id, actor_id)
            if role != OWNER_ROLE and actor_id != user_id:
                raise PermissionDenied(f"Only the owner can remove other members of board {board_id}")
            target = conn.execute(
                "SELECT role FROM board_members WHERE board_id = ? AND user_id = ?",
                (board_id, user_id),
            ).fetchone()
            if not target:
                raise NotFound("member", user_id)
            if target["role"] == OWNER_ROLE:
                raise ValueError("The board owner cannot be removed")
            conn.execute(
                "DELETE FROM board_members WHERE board_id = ? AND user_id = ?", (board_id, user_id)
            )

    # ── Lists ────────────────────────────────────────────────────────────────

    def create_list(self, actor_id: str, board_id: str, name: str, position: Optional[int] = None) -> BoardList:
        """Create a list. Without an explicit position it goes last."""
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")
        with self._transaction(write=True) as conn:
            self._require_member(conn, board_id, actor_id)
            if position is None:
                position = conn.execute(
                    "SELECT COUNT(*) FROM lists WHERE board_id = ?", (board_id,)
                ).fetchone()[0]
            position, seq = self._place(conn, "lists", "board_id", board_id, None, int(position))
            lst = BoardList(
                id=new_id(),
                board_id=board_id,
                name=name,
                position=position,
                position_seq=seq,
            )
            conn.execute("""
                INSERT INTO lists (id, board_id, name, position, position_seq, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (lst.id, lst.board_id, lst.name, lst.position, lst.position_seq,
                  lst.created_at.isoformat(), lst.updated_at.isoformat()))
        self._notify(board_id, Collection.LISTS, Operation.INSERT)
        return lst

    def get_list(self, actor_id: str, list_id: str) -> BoardList:
        with self._transaction() as conn:
            row = self._list_row(conn, list_id)
            self._require_member(conn, row["board_id"], actor_id)
        return BoardList.from_dict(dict(row))

    def list_lists(self, actor_id: str, board_id: str) -> List[BoardList]:
        """Lists on a board in display order."""
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            rows = conn.execute(
                f"SELECT * FROM lists WHERE board_id = ? ORDER BY {_SIBLING_ORDER}", (board_id,)
            ).fetchall()
        return [BoardList.from_dict(dict(r)) for r in rows]

    def update_list(self, actor_id: str, list_id: str, **changes) -> BoardList:
        """
        Rename and/or reposition a list. ``position`` is the target index among
        the board's lists; asking for the index the list already shows at
        leaves its ordering untouched.
        """
        unknown = set(changes) - LIST_FIELDS
        if unknown:
            raise ValueError(f"Unknown list field(s): {', '.join(sorted(unknown))}")
        with self._transaction(write=True) as conn:
            lst = BoardList.from_dict(dict(self._list_row(conn, list_id)))
            self._require_member(conn, lst.board_id, actor_id)
            if "name" in changes:
                name = (changes["name"] or "").strip()
                if not name:
                    raise ValueError("name cannot be empty")
                lst.name = name
            if "position" in changes:
                placed = self._place(conn, "lists", "board_id", lst.board_id, lst.id, int(changes["position"]))
                if placed is not None:
                    lst.position, lst.position_seq = placed
            lst.updated_at = utc_now()
            conn.execute("""
                UPDATE lists SET name = ?, position = ?, position_seq = ?, updated_at = ?
                WHERE id = ?
            """, (lst.name, lst.position, lst.position_seq, lst.updated_at.isoformat(), lst.id))
        self._notify(lst.board_id, Collection.LISTS, Operation.UPDATE)
        return lst

    def delete_list(self, actor_id: str, list_id: str) -> BoardList:
        """Delete a list and its tasks. Returns the deleted list."""
        with self._transaction(write=True) as conn:
            lst = BoardList.from_dict(dict(self._list_row(conn, list_id)))
            self._require_member(conn, lst.board_id, actor_id)
            had_tasks = conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE list_id = ?", (list_id,)
            ).fetchone()[0]
            conn.execute("DELETE FROM lists WHERE id = ?", (list_id,))
        self._notify(lst.board_id, Collection.LISTS, Operation.DELETE)
        if had_tasks:
            self._notify(lst.board_id, Collection.TASKS, Operation.DELETE)
        return lst

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create_task(
        self,
        actor_id: str,
        list_id: str,
        title: str,
        position: Optional[int] = None,
        description: str = "",
        priority: Any = Priority.MEDIUM,
        due_date: Any = None,
        assigned_to: Optional[str] = None,
    ) -> Task:
        """Create a task in a list. The board reference is taken from the list."""
        title = (title or "").strip()
        if not title:
            raise ValueError("title is required")
        priority = Priority.parse(priority)
        with self._transaction(write=True) as conn:
            lst = self._list_row(conn, list_id)
            board_id = lst["board_id"]
            self._require_member(conn, board_id, actor_id)
            self._check_assignee(conn, board_id, assigned_to)
            if position is None:
                position = conn.execute(
                    "SELECT COUNT(*) FROM tasks WHERE list_id = ?", (list_id,)
                ).fetchone()[0]
            position, seq = self._place(conn, "tasks", "list_id", list_id, None, int(position))
            task = Task(
                id=new_id(),
                list_id=list_id,
                board_id=board_id,
                title=title,
                description=description or "",
                priority=priority,
                due_date=datetime.fromisoformat(_iso(due_date)) if due_date else None,
                assigned_to=assigned_to or None,
                created_by=actor_id,
                position=position,
                position_seq=seq,
            )
            data = task.to_dict()
            conn.execute("""
                INSERT INTO tasks
                (id, list_id, board_id, title, description, priority, due_date, assigned_to,
                 created_by, position, position_seq, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                data["id"], data["list_id"], data["board_id"], data["title"], data["description"],
                data["priority"], data["due_date"], data["assigned_to"], data["created_by"],
                data["position"], data["position_seq"], data["created_at"], data["updated_at"],
            ))
        self._notify(board_id, Collection.TASKS, Operation.INSERT)
        return task

    def get_task(self, actor_id: str, task_id: str) -> Task:
        with self._transaction() as conn:
            row = self._task_row(conn, task_id)
            self._require_member(conn, row["board_id"], actor_id)
        return Task.from_dict(dict(row))

    def list_tasks(self, actor_id: str, board_id: str) -> List[Task]:
        """All tasks on a board, in per-list display order."""
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE board_id = ? ORDER BY list_id, {_SIBLING_ORDER}",
                (board_id,),
            ).fetchall()
        return [Task.from_dict(dict(r)) for r in rows]

    def list_tasks_in_list(self, actor_id: str, list_id: str) -> List[Task]:
        with self._transaction() as conn:
            lst = self._list_row(conn, list_id)
            self._require_member(conn, lst["board_id"], actor_id)
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE list_id = ? ORDER BY {_SIBLING_ORDER}", (list_id,)
            ).fetchall()
        return [Task.from_dict(dict(r)) for r in rows]

    def search_tasks(self, actor_id: str, board_id: str, query: str) -> List[Task]:
        """Case-insensitive title substring match."""
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            rows = conn.execute(
                f"""
                SELECT * FROM tasks
                WHERE board_id = ? AND lower(title) LIKE ? ESCAPE '\\'
                ORDER BY list_id, {_SIBLING_ORDER}
                """,
                (board_id, f"%{_escape_like((query or '').lower())}%"),
            ).fetchall()
        return [Task.from_dict(dict(r)) for r in rows]

    def update_task(self, actor_id: str, task_id: str, **changes) -> Task:
        """
        Update task fields. ``position`` is the target index among the
        destination list's tasks. Changing ``list_id`` without a position
        keeps the current position value as the index. Asking for the list
        and index the task already shows at leaves its ordering untouched.
        """
        unknown = set(changes) - TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task field(s): {', '.join(sorted(unknown))}")
        with self._transaction(write=True) as conn:
            task = Task.from_dict(dict(self._task_row(conn, task_id)))
            self._require_member(conn, task.board_id, actor_id)

            dest_list_id = changes.get("list_id") or task.list_id
            if dest_list_id != task.list_id:
                dest = conn.execute(
                    "SELECT board_id FROM lists WHERE id = ?", (dest_list_id,)
                ).fetchone()
                # A task may only live in lists of its own board
                if not dest or dest["board_id"] != task.board_id:
                    raise NotFound("list", dest_list_id)
            if dest_list_id != task.list_id or "position" in changes:
                index = int(changes.get("position", task.position))
                placed = self._place(conn, "tasks", "list_id", dest_list_id, task.id, index)
                if placed is not None:
                    task.list_id = dest_list_id
                    task.position, task.position_seq = placed

            if "title" in changes:
                title = (changes["title"] or "").strip()
                if not title:
                    raise ValueError("title cannot be empty")
                task.title = title
            if "description" in changes:
                task.description = changes["description"] or ""
            if "priority" in changes:
                task.priority = Priority.parse(changes["priority"])
            if "due_date" in changes:
                due = _iso(changes["due_date"])
                task.due_date = datetime.fromisoformat(due) if due else None
            if "assigned_to" in changes:
                self._check_assignee(conn, task.board_id, changes["assigned_to"])
                task.assigned_to = changes["assigned_to"] or None

            task.updated_at = utc_now()
            data = task.to_dict()
            conn.execute("""
                UPDATE tasks SET list_id = ?, title = ?, description = ?, priority = ?,
                    due_date = ?, assigned_to = ?, position = ?, position_seq = ?, updated_at = ?
                WHERE id = ?
            """, (
                data["list_id"], data["title"], data["description"], data["priority"],
                data["due_date"], data["assigned_to"], data["position"], data["position_seq"],
                data["updated_at"], data["id"],
            ))
        self._notify(task.board_id, Collection.TASKS, Operation.UPDATE)
        return task

    def delete_task(self, actor_id: str, task_id: str) -> Task:
        """Delete a task. Returns the deleted task."""
        with self._transaction(write=True) as conn:
            task = Task.from_dict(dict(self._task_row(conn, task_id)))
            self._require_member(conn, task.board_id, actor_id)
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        self._notify(task.board_id, Collection.TASKS, Operation.DELETE)
        return task

    # ── Activity ─────────────────────────────────────────────────────────────

    def append_activity(
        self,
        actor_id: str,
        board_id: str,
        action: Any,
        entity_type: Any,
        entity_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        """
        Append one immutable activity entry.

        Timestamps are strictly increasing per board: an entry written in the
        same microsecond as (or with a clock behind) the previous one is
        stamped one microsecond after it. ``seq`` counts entries per board.
        """
        action = ActivityAction.parse(action)
        entity_type = EntityType.parse(entity_type)
        with self._transaction(write=True) as conn:
            self._require_member(conn, board_id, actor_id)
            last = conn.execute(
                "SELECT seq, created_at FROM activity_logs WHERE board_id = ? ORDER BY seq DESC LIMIT 1",
                (board_id,),
            ).fetchone()
            created_at = utc_now()
            seq = 1
            if last:
                seq = last["seq"] + 1
                previous = datetime.fromisoformat(last["created_at"])
                if created_at <= previous:
                    created_at = previous + timedelta(microseconds=1)
            entry = ActivityEntry(
                id=new_id(),
                board_id=board_id,
                user_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                details=details,
                seq=seq,
                created_at=created_at,
            )
            conn.execute("""
                INSERT INTO activity_logs
                (id, board_id, user_id, action, entity_type, entity_id, entity_name, details, seq, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id, entry.board_id, entry.user_id, entry.action.value, entry.entity_type.value,
                entry.entity_id, entry.entity_name,
                json.dumps(details) if details is not None else None,
                entry.seq, entry.created_at.isoformat(),
            ))
        self._notify(board_id, Collection.ACTIVITY, Operation.INSERT)
        return entry

    def list_activity(self, actor_id: str, board_id: str, limit: int = 50) -> List[ActivityEntry]:
        """Most recent entries first, at most ``limit`` of them."""
        if limit <= 0:
            return []
        with self._transaction() as conn:
            self._require_member(conn, board_id, actor_id)
            rows = conn.execute("""
                SELECT a.*, COALESCE(NULLIF(p.full_name, ''), p.email, '') AS actor_name
                FROM activity_logs a
                LEFT JOIN profiles p ON p.id = a.user_id
                WHERE a.board_id = ?
                ORDER BY a.seq DESC
                LIMIT ?
            """, (board_id, limit)).fetchall()
        return [ActivityEntry.from_dict(dict(r)) for r in rows]
