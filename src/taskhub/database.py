"""
Entity Store for Users, Teams and Tasks

Provides SQLite-based persistence with WAL mode for concurrent access.
Each public operation is individually atomic (guarded by a connection lock
and, for read-modify-write, an explicit transaction); there are no
cross-record transactional guarantees.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import Conflict, ValidationError
from .models import (
    Role,
    Task,
    TaskFilter,
    TaskPriority,
    TaskSort,
    TaskStatus,
    Team,
    TASK_SORT_FIELDS,
    User,
)
from .monitoring import store_operation

logger = logging.getLogger(__name__)

UPDATABLE_TASK_FIELDS = ("title", "description", "due_date", "priority", "status", "assigned_to")
UPDATABLE_USER_FIELDS = ("username", "email", "role", "password_hash")


class TaskDatabase:
    """
    SQLite entity store for the task/team mutation engine.

    Features:
    - WAL mode for concurrent read/write access
    - Single shared connection guarded by a re-entrant lock
    - Team membership stored as a JSON array preserving insertion order
    - Last-write-wins updates; no optimistic versioning
    """

    def __init__(self, db_path: str):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure pragmas and create the schema.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit; transactions are explicit
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create database schema with indexes for the common query paths."""
        cursor = self._connection.cursor()

        roles = ", ".join(f"'{r.value}'" for r in Role)
        statuses = ", ".join(f"'{s.value}'" for s in TaskStatus)
        priorities = ", ".join(f"'{p.value}'" for p in TaskPriority)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT,
                role TEXT NOT NULL CHECK (role IN ({roles})),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS teams (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                manager_id INTEGER NOT NULL,
                members TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CONSTRAINT json_members CHECK (json_valid(members) AND json_type(members) = 'array')
            )
        """)

        # created_by / assigned_to are plain integers: deleting a user leaves tasks intact
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                due_date TEXT NOT NULL,
                priority TEXT NOT NULL DEFAULT 'Low' CHECK (priority IN ({priorities})),
                status TEXT NOT NULL DEFAULT 'Pending' CHECK (status IN ({statuses})),
                created_by INTEGER NOT NULL,
                assigned_to INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to
            ON tasks (assigned_to)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_status_due
            ON tasks (status, due_date)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_teams_manager_id
            ON teams (manager_id)
        """)

    def _drop_existing_tables(self) -> None:
        cursor = self._connection.cursor()
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS teams")
        cursor.execute("DROP TABLE IF EXISTS users")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        cursor = self._connection.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def _get_current_time_str(self) -> str:
        """Get current UTC time as ISO string for database operations."""
        return datetime.now(timezone.utc).isoformat()

    # Row mapping

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(**dict(row))

    @staticmethod
    def _row_to_team(row: sqlite3.Row) -> Team:
        data = dict(row)
        try:
            members = json.loads(data["members"])
        except (ValueError, TypeError):
            members = []
        data["members"] = members if isinstance(members, list) else []
        return Team(**data)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(**dict(row))

    # Users

    @store_operation("create_user")
    def create_user(self, username: str, email: str, role: Role,
                    password_hash: Optional[str] = None) -> int:
        """
        Create a new user.

        Args:
            username: Display name
            email: Unique email address
            role: User role
            password_hash: Opaque credential hash, never interpreted here

        Returns:
            User ID

        Raises:
            Conflict: If the email is already registered
        """
        current_time_str = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    INSERT INTO users (username, email, password_hash, role, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (username, email, password_hash, Role(role).value,
                      current_time_str, current_time_str))
            except sqlite3.IntegrityError:
                raise Conflict("User already exists", details={"email": email})
            return cursor.lastrowid

    @store_operation("get_user")
    def get_user(self, user_id: int) -> Optional[User]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    @store_operation("get_user_by_email")
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM users WHERE email = ?", (email,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    @store_operation("get_users_by_ids")
    def get_users_by_ids(self, user_ids: Iterable[int]) -> List[User]:
        """
        Resolve a collection of user IDs.

        Unknown IDs are skipped and duplicates collapse, so the result can be
        shorter than the input.
        """
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT * FROM users WHERE id IN ({placeholders})", ids)
            by_id = {row["id"]: self._row_to_user(row) for row in cursor.fetchall()}
        return [by_id[i] for i in ids if i in by_id]

    @store_operation("list_users")
    def list_users(self) -> List[User]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM users ORDER BY id ASC")
            return [self._row_to_user(row) for row in cursor.fetchall()]

    @store_operation("update_user")
    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Optional[User]:
        """
        Apply a partial update to a user.

        Returns:
            The updated user, or None if no such user exists

        Raises:
            Conflict: If the new email is already registered
        """
        unknown = set(fields) - set(UPDATABLE_USER_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update user fields: {', '.join(sorted(unknown))}")

        with self._connection_lock:
            with self._transaction() as cursor:
                if fields:
                    assignments = ", ".join(f"{name} = ?" for name in fields)
                    params = [_to_db_value(v) for v in fields.values()]
                    params.extend([self._get_current_time_str(), user_id])
                    try:
                        cursor.execute(
                            f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
                            params
                        )
                    except sqlite3.IntegrityError:
                        raise Conflict("Email already in use", details={"email": fields.get("email")})
                cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = cursor.fetchone()
                return self._row_to_user(row) if row else None

    @store_operation("delete_user")
    def delete_user(self, user_id: int) -> bool:
        """
        Hard-delete a user and detach the references that must point at a
        live user: tasks assigned to them become unassigned and they are
        dropped from every team's member list. ``created_by`` and team
        ``manager_id`` are kept as history.

        Returns:
            True if the user existed
        """
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
                if cursor.rowcount == 0:
                    return False

                now = self._get_current_time_str()
                cursor.execute(
                    "UPDATE tasks SET assigned_to = NULL, updated_at = ? WHERE assigned_to = ?",
                    (now, user_id)
                )
                cursor.execute("""
                    SELECT * FROM teams
                    WHERE EXISTS (SELECT 1 FROM json_each(teams.members) WHERE value = ?)
                """, (user_id,))
                for row in cursor.fetchall():
                    team = self._row_to_team(row)
                    members = [m for m in team.members if m != user_id]
                    cursor.execute(
                        "UPDATE teams SET members = ?, updated_at = ? WHERE id = ?",
                        (json.dumps(members), now, team.id)
                    )
                return True

    # Teams

    @store_operation("create_team")
    def create_team(self, name: str, manager_id: int, members: List[int]) -> int:
        """
        Create a new team.

        Args:
            name: Team name (must be unique)
            manager_id: User ID of the managing user
            members: Member user IDs in display order

        Returns:
            Team ID

        Raises:
            Conflict: If a team with the same name exists
        """
        current_time_str = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    INSERT INTO teams (name, manager_id, members, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (name, manager_id, json.dumps(list(members)),
                      current_time_str, current_time_str))
            except sqlite3.IntegrityError:
                raise Conflict(f"Team '{name}' already exists", details={"name": name})
            return cursor.lastrowid

    @store_operation("get_team")
    def get_team(self, team_id: int) -> Optional[Team]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
            row = cursor.fetchone()
            return self._row_to_team(row) if row else None

    @store_operation("list_teams_managed_by")
    def list_teams_managed_by(self, manager_id: int) -> List[Team]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT * FROM teams WHERE manager_id = ? ORDER BY id ASC", (manager_id,)
            )
            return [self._row_to_team(row) for row in cursor.fetchall()]

    @store_operation("add_team_member")
    def add_team_member(self, team_id: int, member_id: int) -> Optional[Team]:
        """
        Append a member to a team atomically.

        Returns:
            The updated team, or None if the team does not exist

        Raises:
            Conflict: If the user is already a member
        """
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
                row = cursor.fetchone()
                if not row:
                    return None
                team = self._row_to_team(row)
                if member_id in team.members:
                    raise Conflict("User is already in the team",
                                   details={"team_id": team_id, "member_id": member_id})
                members = team.members + [member_id]
                cursor.execute(
                    "UPDATE teams SET members = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(members), self._get_current_time_str(), team_id)
                )
                cursor.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
                return self._row_to_team(cursor.fetchone())

    @store_operation("remove_team_member")
    def remove_team_member(self, team_id: int, member_id: int) -> Optional[Team]:
        """
        Remove a member from a team atomically. Removing a non-member is a no-op.

        Returns:
            The updated team, or None if the team does not exist
        """
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
                row = cursor.fetchone()
                if not row:
                    return None
                team = self._row_to_team(row)
                members = [m for m in team.members if m != member_id]
                cursor.execute(
                    "UPDATE teams SET members = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(members), self._get_current_time_str(), team_id)
                )
                cursor.execute("SELECT * FROM teams WHERE id = ?", (team_id,))
                return self._row_to_team(cursor.fetchone())

    @store_operation("delete_team")
    def delete_team(self, team_id: int) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM teams WHERE id = ?", (team_id,))
            return cursor.rowcount > 0

    # Tasks

    @store_operation("create_task")
    def create_task(self, title: str, description: str, due_date: date,
                    created_by: int, priority: TaskPriority = TaskPriority.LOW) -> int:
        """
        Create a new Pending, unassigned task.

        Returns:
            Task ID
        """
        current_time_str = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tasks (title, description, due_date, priority, status,
                                   created_by, assigned_to, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """, (title, description, due_date.isoformat(), TaskPriority(priority).value,
                  TaskStatus.PENDING.value, created_by, current_time_str, current_time_str))
            return cursor.lastrowid

    @store_operation("get_task")
    def get_task(self, task_id: int) -> Optional[Task]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
            return self._row_to_task(row) if row else None

    @store_operation("list_tasks")
    def list_tasks(self, task_filter: Optional[TaskFilter] = None,
                   sort: Optional[TaskSort] = None) -> List[Task]:
        """
        List tasks with equality, substring and due-date range filtering.

        Args:
            task_filter: Optional filter; date bounds are inclusive
            sort: Optional single-field sort; creation order when omitted

        Returns:
            List of matching tasks
        """
        conditions = []
        params: List[Any] = []

        if task_filter is not None:
            if task_filter.status is not None:
                conditions.append("status = ?")
                params.append(task_filter.status.value)
            if task_filter.priority is not None:
                conditions.append("priority = ?")
                params.append(task_filter.priority.value)
            if task_filter.title:
                conditions.append("title LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(task_filter.title)}%")
            if task_filter.due_from is not None:
                conditions.append("due_date >= ?")
                params.append(task_filter.due_from.isoformat())
            if task_filter.due_to is not None:
                conditions.append("due_date <= ?")
                params.append(task_filter.due_to.isoformat())

        query = "SELECT * FROM tasks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        if sort is not None:
            if sort.field not in TASK_SORT_FIELDS:
                raise ValidationError(f"Cannot sort tasks by '{sort.field}'")
            direction = "DESC" if sort.descending else "ASC"
            query += f" ORDER BY {sort.field} {direction}, id ASC"
        else:
            query += " ORDER BY id ASC"

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return [self._row_to_task(row) for row in cursor.fetchall()]

    @store_operation("list_tasks_assigned_to")
    def list_tasks_assigned_to(self, user_ids: Iterable[int]) -> List[Task]:
        """List tasks whose assignee is any of the given users."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT * FROM tasks WHERE assigned_to IN ({placeholders}) ORDER BY id ASC",
                ids
            )
            return [self._row_to_task(row) for row in cursor.fetchall()]

    @store_operation("update_task")
    def update_task(self, task_id: int, fields: Dict[str, Any]) -> Optional[Task]:
        """
        Apply a partial update to a task and refresh ``updated_at``.

        ``created_by`` is not updatable.

        Returns:
            The updated task, or None if no such task exists
        """
        unknown = set(fields) - set(UPDATABLE_TASK_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

        assignments = "".join(f"{name} = ?, " for name in fields)
        params = [_to_db_value(v) for v in fields.values()]
        params.extend([self._get_current_time_str(), task_id])

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    f"UPDATE tasks SET {assignments}updated_at = ? WHERE id = ?", params
                )
                if cursor.rowcount == 0:
                    return None
                cursor.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
                return self._row_to_task(cursor.fetchone())

    @store_operation("delete_task")
    def delete_task(self, task_id: int) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return cursor.rowcount > 0

    @store_operation("count_entities")
    def count_entities(self) -> Dict[str, int]:
        """Row counts per entity table."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            counts = {}
            for table in ("users", "teams", "tasks"):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = cursor.fetchone()[0]
            return counts

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Reinitialize the database with all tables dropped first."""
        if self._connection:
            self.close()
        self._initialize_database(drop_existing=True)


def _to_db_value(value: Any) -> Any:
    """Convert model values to their SQLite representation."""
    if isinstance(value, (TaskStatus, TaskPriority, Role)):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
