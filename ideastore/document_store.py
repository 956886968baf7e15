"""
Record store using SQLite.

Stores ideas and their reminders separate from embeddings, which live in
the vector index. This store is the source of truth for:
- Idea identity and text
- Category, priority, status and tags
- Reminders and their sent state
- Timestamps

The sqlite3 connection is shared by all tasks. Calls run in a worker
thread and are serialised by an asyncio.Lock; a transaction holds the lock
from begin to commit so concurrent operations never interleave inside it.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from .errors import StorageError
from .types import (
    Idea,
    IdeaFilter,
    Reminder,
    format_timestamp,
    normalize_tags,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS ideas (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'strategy',
    priority TEXT NOT NULL DEFAULT 'medium',
    status TEXT NOT NULL DEFAULT 'active',
    tags_json TEXT NOT NULL DEFAULT '[]',
    user_id TEXT NOT NULL,
    chat_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ideas_user_id ON ideas(user_id);
CREATE INDEX IF NOT EXISTS idx_ideas_category ON ideas(category);
CREATE INDEX IF NOT EXISTS idx_ideas_status ON ideas(status);
CREATE INDEX IF NOT EXISTS idx_ideas_created ON ideas(created_at);

CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    idea_id TEXT NOT NULL REFERENCES ideas(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    message TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_sent INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reminders_idea ON reminders(idea_id);
CREATE INDEX IF NOT EXISTS idx_reminders_scheduled ON reminders(scheduled_for);
"""

IDEA_COLUMNS = (
    "id, title, content, category, priority, status, tags_json, "
    "user_id, chat_id, created_at, updated_at"
)
REMINDER_COLUMNS = (
    "id, idea_id, type, scheduled_for, message, is_active, is_sent, "
    "created_at, updated_at"
)


class SqliteRecordStore:
    """
    SQLite-backed store for ideas and reminders.

    Use ":memory:" for a throwaway store (tests, the default local backend)
    or a file path for one that survives restarts.
    """

    def __init__(self, database: str | Path = ":memory:"):
        """
        Args:
            database: Path to the SQLite database file, or ":memory:"
        """
        self._database = str(database)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"sqlite_tx_{id(self)}", default=False
        )

    @property
    def database(self) -> str:
        return self._database

    async def initialize(self) -> None:
        """Open the connection and create tables. Safe to call twice."""
        if self._conn is not None:
            return
        try:
            self._conn = await asyncio.to_thread(self._connect)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self._database}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        if self._database != ":memory:":
            Path(self._database).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if self._database != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        return conn

    # -------------------------------------------------------------------------
    # Execution plumbing
    # -------------------------------------------------------------------------

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Record store is not initialized")
        return self._conn

    async def _call(self, fn: Callable[..., Any], *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``fn(conn)`` inside the current transaction, or in its own."""
        conn = self._require_conn()
        if self._in_transaction.get():
            return await self._call(fn, conn)
        async with self._lock:
            try:
                result = await self._call(fn, conn)
                await self._call(conn.commit)
            except BaseException:
                await asyncio.to_thread(conn.rollback)
                raise
            return result

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Group several writes into one atomic unit.

        Commits on success, rolls back on any exception. Nested use joins
        the outer transaction.
        """
        if self._in_transaction.get():
            yield
            return
        conn = self._require_conn()
        async with self._lock:
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                await asyncio.to_thread(conn.rollback)
                raise
            else:
                await self._call(conn.commit)
            finally:
                self._in_transaction.reset(token)

    # -------------------------------------------------------------------------
    # Ideas
    # -------------------------------------------------------------------------

    async def insert_idea(self, idea: Idea) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute(f"""
                INSERT INTO ideas ({IDEA_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, _idea_row(idea))
        await self._run(op)

    async def update_idea(self, idea: Idea) -> bool:
        """Overwrite the mutable fields of an existing idea. Reminders untouched."""
        def op(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute("""
                UPDATE ideas
                SET title = ?, content = ?, category = ?, priority = ?,
                    status = ?, tags_json = ?, updated_at = ?
                WHERE id = ?
            """, (
                idea.title, idea.content, idea.category, idea.priority,
                idea.status, json.dumps(idea.tags, ensure_ascii=False),
                format_timestamp(idea.updated_at), idea.id,
            ))
            return cursor.rowcount > 0
        return await self._run(op)

    async def get_idea(self, id: str) -> Optional[Idea]:
        ideas = await self.get_ideas([id])
        return ideas.get(id)

    async def get_ideas(self, ids: list[str]) -> dict[str, Idea]:
        """Hydrate several ideas (with reminders) in two queries."""
        if not ids:
            return {}

        def op(conn: sqlite3.Connection) -> dict[str, Idea]:
            placeholders = ",".join("?" * len(ids))
            rows = conn.execute(
                f"SELECT {IDEA_COLUMNS} FROM ideas WHERE id IN ({placeholders})",
                list(ids),
            ).fetchall()
            ideas = {row["id"]: _row_to_idea(row) for row in rows}
            _attach_reminders(conn, ideas)
            return ideas
        return await self._run(op)

    async def delete_idea(self, id: str) -> bool:
        """Delete an idea. Its reminders go with it (ON DELETE CASCADE)."""
        def op(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute("DELETE FROM ideas WHERE id = ?", (id,))
            return cursor.rowcount > 0
        return await self._run(op)

    async def list_ideas(self, filter: Optional[IdeaFilter], limit: int) -> list[Idea]:
        """Ideas matching the filter, newest first."""
        where, params = _filter_clause(filter)

        def op(conn: sqlite3.Connection) -> list[Idea]:
            rows = conn.execute(f"""
                SELECT {IDEA_COLUMNS} FROM ideas
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, [*params, limit]).fetchall()
            ideas = [_row_to_idea(row) for row in rows]
            _attach_reminders(conn, {idea.id: idea for idea in ideas})
            return ideas
        return await self._run(op)

    async def count(self) -> int:
        def op(conn: sqlite3.Connection) -> int:
            return conn.execute("SELECT COUNT(*) FROM ideas").fetchone()[0]
        return await self._run(op)

    # -------------------------------------------------------------------------
    # Reminders
    # -------------------------------------------------------------------------

    async def replace_reminders(self, idea_id: str, reminders: list[Reminder]) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM reminders WHERE idea_id = ?", (idea_id,))
            conn.executemany(
                f"INSERT INTO reminders ({REMINDER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_reminder_row(r) for r in reminders],
            )
        await self._run(op)

    async def add_reminder(self, reminder: Reminder) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT INTO reminders ({REMINDER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _reminder_row(reminder),
            )
        await self._run(op)

    async def get_due_reminders(self, now: datetime) -> list[Reminder]:
        """Active, unsent reminders scheduled at or before ``now``."""
        def op(conn: sqlite3.Connection) -> list[Reminder]:
            rows = conn.execute(f"""
                SELECT {REMINDER_COLUMNS} FROM reminders
                WHERE is_active = 1 AND is_sent = 0 AND scheduled_for <= ?
                ORDER BY scheduled_for, id
            """, (format_timestamp(now),)).fetchall()
            return [_row_to_reminder(row) for row in rows]
        return await self._run(op)

    async def mark_reminder_sent(self, id: str, now: datetime) -> bool:
        """Flip is_sent once. Returns False if unknown or already sent."""
        def op(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute("""
                UPDATE reminders SET is_sent = 1, updated_at = ?
                WHERE id = ? AND is_sent = 0
            """, (format_timestamp(now), id))
            return cursor.rowcount > 0
        return await self._run(op)

    async def get_reminder(self, id: str) -> Optional[Reminder]:
        def op(conn: sqlite3.Connection) -> Optional[Reminder]:
            row = conn.execute(
                f"SELECT {REMINDER_COLUMNS} FROM reminders WHERE id = ?", (id,)
            ).fetchone()
            return _row_to_reminder(row) if row else None
        return await self._run(op)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)


# -----------------------------------------------------------------------------
# Row mapping
# -----------------------------------------------------------------------------

def _idea_row(idea: Idea) -> tuple:
    return (
        idea.id, idea.title, idea.content, idea.category, idea.priority,
        idea.status, json.dumps(idea.tags, ensure_ascii=False), idea.user_id,
        idea.chat_id, format_timestamp(idea.created_at),
        format_timestamp(idea.updated_at),
    )


def _reminder_row(reminder: Reminder) -> tuple:
    return (
        reminder.id, reminder.idea_id, reminder.type,
        format_timestamp(reminder.scheduled_for), reminder.message,
        int(reminder.is_active), int(reminder.is_sent),
        format_timestamp(reminder.created_at),
        format_timestamp(reminder.updated_at),
    )


def _row_to_idea(row: sqlite3.Row) -> Idea:
    return Idea(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        category=row["category"],
        priority=row["priority"],
        status=row["status"],
        tags=json.loads(row["tags_json"]),
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_reminder(row: sqlite3.Row) -> Reminder:
    return Reminder(
        id=row["id"],
        idea_id=row["idea_id"],
        type=row["type"],
        scheduled_for=parse_timestamp(row["scheduled_for"]),
        message=row["message"],
        is_active=bool(row["is_active"]),
        is_sent=bool(row["is_sent"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _attach_reminders(conn: sqlite3.Connection, ideas: dict[str, Idea]) -> None:
    if not ideas:
        return
    placeholders = ",".join("?" * len(ideas))
    rows = conn.execute(f"""
        SELECT {REMINDER_COLUMNS} FROM reminders
        WHERE idea_id IN ({placeholders})
        ORDER BY scheduled_for, id
    """, list(ideas)).fetchall()
    for row in rows:
        ideas[row["idea_id"]].reminders.append(_row_to_reminder(row))


def _filter_clause(filter: Optional[IdeaFilter]) -> tuple[str, list[Any]]:
    """Translate an IdeaFilter into a WHERE clause and its parameters."""
    if filter is None:
        return "", []

    conditions: list[str] = []
    params: list[Any] = []
    for column in ("user_id", "chat_id", "category", "priority", "status"):
        value = getattr(filter, column)
        if value is not None:
            conditions.append(f"{column} = ?")
            params.append(value)

    tags = normalize_tags(filter.tags)
    if tags:
        placeholders = ",".join("?" * len(tags))
        conditions.append(
            f"EXISTS (SELECT 1 FROM json_each(ideas.tags_json) WHERE value IN ({placeholders}))"
        )
        params.extend(tags)

    if filter.date_range is not None:
        if filter.date_range.start is not None:
            conditions.append("created_at >= ?")
            params.append(format_timestamp(filter.date_range.start))
        if filter.date_range.end is not None:
            conditions.append("created_at <= ?")
            params.append(format_timestamp(filter.date_range.end))

    if not conditions:
        return "", []
    return "WHERE " + " AND ".join(conditions), params
