"""
PostgreSQL backend: record store plus pgvector index over one table.

Ideas and reminders live in ordinary tables; the embedding is a
``vector(N)`` column on ``ideas`` with an HNSW index using
``vector_cosine_ops``. Both halves share one connection pool, and inside
a transaction they share one connection, so an idea row and its vector
commit or roll back together.
"""

import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector

from .config import DEFAULT_INDEX_NAME, IndexParams
from .errors import IndexInconsistency, StorageError
from .types import Idea, IdeaFilter, Reminder, ensure_utc, normalize_tags

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS ideas (
    id TEXT PRIMARY KEY,
    title VARCHAR(200) NOT NULL,
    content TEXT NOT NULL,
    category VARCHAR(50) NOT NULL DEFAULT 'strategy',
    priority VARCHAR(20) NOT NULL DEFAULT 'medium',
    status VARCHAR(20) NOT NULL DEFAULT 'active',
    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
    user_id VARCHAR(100) NOT NULL,
    chat_id BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS ideas_user_id_idx ON ideas (user_id);
CREATE INDEX IF NOT EXISTS ideas_category_idx ON ideas (category);
CREATE INDEX IF NOT EXISTS ideas_status_idx ON ideas (status);
CREATE INDEX IF NOT EXISTS ideas_created_at_idx ON ideas (created_at);

CREATE TABLE IF NOT EXISTS reminders (
    id TEXT PRIMARY KEY,
    idea_id TEXT NOT NULL REFERENCES ideas(id) ON DELETE CASCADE,
    type VARCHAR(20) NOT NULL,
    scheduled_for TIMESTAMPTZ NOT NULL,
    message TEXT,
    is_active BOOLEAN NOT NULL DEFAULT true,
    is_sent BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS reminders_idea_id_idx ON reminders (idea_id);
CREATE INDEX IF NOT EXISTS reminders_scheduled_for_idx ON reminders (scheduled_for);
"""

IDEA_COLUMNS = (
    "id, title, content, category, priority, status, tags, "
    "user_id, chat_id, created_at, updated_at"
)
REMINDER_COLUMNS = (
    "id, idea_id, type, scheduled_for, message, is_active, is_sent, "
    "created_at, updated_at"
)

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresConnection:
    """
    Connection pool shared by the record store and the vector index.

    The connection of the active transaction (if any) is tracked in a
    ContextVar so nested operations in the same task reuse it.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 20,
        timeout: float = 10.0,
    ):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._timeout = timeout
        self._pool: Optional[asyncpg.Pool] = None
        self._current: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"pg_tx_{id(self)}", default=None
        )

    async def open(self) -> None:
        """Create the vector extension and the pool. Idempotent."""
        if self._pool is not None:
            return
        try:
            # The vector type must exist before register_vector runs on pool connections
            conn = await asyncpg.connect(self._dsn, timeout=self._timeout)
            try:
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            finally:
                await conn.close()
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                timeout=self._timeout,
                init=register_vector,
            )
        except DB_ERRORS as e:
            raise StorageError(f"Cannot connect to PostgreSQL: {e}") from e
        logger.info("PostgreSQL pool open (min=%d, max=%d)", self._min_size, self._max_size)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """The transaction's connection if one is active, else a pooled one."""
        current = self._current.get()
        if current is None and self._pool is None:
            raise StorageError("PostgreSQL pool is not open")
        try:
            if current is not None:
                yield current
            else:
                async with self._pool.acquire() as conn:
                    yield conn
        except DB_ERRORS as e:
            raise StorageError(f"PostgreSQL error: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Commit on success, roll back on error. Nested use joins the outer one."""
        current = self._current.get()
        if current is not None:
            yield current
            return
        if self._pool is None:
            raise StorageError("PostgreSQL pool is not open")
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    token = self._current.set(conn)
                    try:
                        yield conn
                    finally:
                        self._current.reset(token)
        except DB_ERRORS as e:
            raise StorageError(f"PostgreSQL transaction failed: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()


class PostgresRecordStore:
    """Ideas and reminders in PostgreSQL. Owns the shared connection."""

    def __init__(self, db: PostgresConnection):
        self._db = db

    async def initialize(self) -> None:
        await self._db.open()
        async with self._db.acquire() as conn:
            await conn.execute(SCHEMA)

    def transaction(self):
        return self._db.transaction()

    # -- Ideas --

    async def insert_idea(self, idea: Idea) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(f"""
                INSERT INTO ideas ({IDEA_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11)
            """,
                idea.id, idea.title, idea.content, idea.category, idea.priority,
                idea.status, json.dumps(idea.tags), idea.user_id, idea.chat_id,
                idea.created_at, idea.updated_at,
            )

    async def update_idea(self, idea: Idea) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute("""
                UPDATE ideas
                SET title = $2, content = $3, category = $4, priority = $5,
                    status = $6, tags = $7::jsonb, updated_at = $8
                WHERE id = $1
            """,
                idea.id, idea.title, idea.content, idea.category, idea.priority,
                idea.status, json.dumps(idea.tags), idea.updated_at,
            )
        return _affected(status) > 0

    async def get_idea(self, id: str) -> Optional[Idea]:
        ideas = await self.get_ideas([id])
        return ideas.get(id)

    async def get_ideas(self, ids: list[str]) -> dict[str, Idea]:
        if not ids:
            return {}
        async with self._db.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {IDEA_COLUMNS} FROM ideas WHERE id = ANY($1::text[])", list(ids)
            )
            ideas = {row["id"]: _row_to_idea(row) for row in rows}
            await _attach_reminders(conn, ideas)
        return ideas

    async def delete_idea(self, id: str) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute("DELETE FROM ideas WHERE id = $1", id)
        return _affected(status) > 0

    async def list_ideas(self, filter: Optional[IdeaFilter], limit: int) -> list[Idea]:
        where, params = filter_clause(filter)
        params.append(limit)
        async with self._db.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {IDEA_COLUMNS} FROM ideas
                {"WHERE " + where if where else ""}
                ORDER BY created_at DESC, id DESC
                LIMIT ${len(params)}
            """, *params)
            ideas = [_row_to_idea(row) for row in rows]
            await _attach_reminders(conn, {idea.id: idea for idea in ideas})
        return ideas

    async def count(self) -> int:
        async with self._db.acquire() as conn:
            return await conn.fetchval("SELECT count(*) FROM ideas")

    # -- Reminders --

    async def replace_reminders(self, idea_id: str, reminders: list[Reminder]) -> None:
        async with self._db.transaction() as conn:
            await conn.execute("DELETE FROM reminders WHERE idea_id = $1", idea_id)
            if reminders:
                await conn.executemany(
                    f"INSERT INTO reminders ({REMINDER_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                    [_reminder_args(r) for r in reminders],
                )

    async def add_reminder(self, reminder: Reminder) -> None:
        async with self._db.acquire() as conn:
            await conn.execute(
                f"INSERT INTO reminders ({REMINDER_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                *_reminder_args(reminder),
            )

    async def get_due_reminders(self, now: datetime) -> list[Reminder]:
        async with self._db.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {REMINDER_COLUMNS} FROM reminders
                WHERE is_active = true AND is_sent = false AND scheduled_for <= $1
                ORDER BY scheduled_for, id
            """, now)
        return [_row_to_reminder(row) for row in rows]

    async def mark_reminder_sent(self, id: str, now: datetime) -> bool:
        async with self._db.acquire() as conn:
            status = await conn.execute("""
                UPDATE reminders SET is_sent = true, updated_at = $2
                WHERE id = $1 AND is_sent = false
            """, id, now)
        return _affected(status) > 0

    async def close(self) -> None:
        await self._db.close()


class PgVectorIndex:
    """
    The ``embedding`` column of ``ideas`` with an HNSW cosine index.

    Attributes are ignored: filters are evaluated against the same row.
    """

    def __init__(self, db: PostgresConnection, *, index_name: str = DEFAULT_INDEX_NAME):
        self._db = db
        self._index_name = index_name
        self._dimension: Optional[int] = None
        self._ef_search = IndexParams.ef_search

    async def ensure_index(self, dimension: int, params: IndexParams) -> None:
        """
        Add the vector column and HNSW index if missing. Idempotent.

        Raises IndexInconsistency if the column exists with another dimension.
        """
        await self._db.open()
        async with self._db.acquire() as conn:
            existing = await conn.fetchval("""
                SELECT atttypmod FROM pg_attribute
                WHERE attrelid = 'ideas'::regclass
                  AND attname = 'embedding' AND NOT attisdropped
            """)
            if existing is not None and existing > 0 and existing != dimension:
                raise IndexInconsistency(
                    f"ideas.embedding is vector({existing}), configured dimension is {dimension}"
                )
            if existing is None:
                await conn.execute(
                    f"ALTER TABLE ideas ADD COLUMN IF NOT EXISTS embedding vector({int(dimension)})"
                )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self._index_name} ON ideas "
                f"USING hnsw (embedding vector_cosine_ops) "
                f"WITH (m = {int(params.m)}, ef_construction = {int(params.ef_construction)})"
            )
        self._dimension = dimension
        self._ef_search = params.ef_search
        logger.debug("pgvector index %s ready (dim=%d)", self._index_name, dimension)

    def _check_vector(self, vector: list[float]) -> np.ndarray:
        if self._dimension is None:
            raise IndexInconsistency(f"Vector index {self._index_name} is not initialized")
        if len(vector) != self._dimension:
            raise IndexInconsistency(
                f"Vector has {len(vector)} dimensions, index expects {self._dimension}"
            )
        return np.asarray(vector, dtype=np.float32)

    async def upsert(self, id: str, vector: list[float], attributes: dict[str, Any]) -> None:
        embedding = self._check_vector(vector)
        async with self._db.acquire() as conn:
            status = await conn.execute(
                "UPDATE ideas SET embedding = $2 WHERE id = $1", id, embedding
            )
        if _affected(status) == 0:
            logger.warning("upsert: no idea row for %s", id)

    async def update_attributes(self, id: str, attributes: dict[str, Any]) -> None:
        """Nothing to do: the row already carries the filterable fields."""

    async def remove(self, id: str) -> None:
        async with self._db.acquire() as conn:
            await conn.execute("UPDATE ideas SET embedding = NULL WHERE id = $1", id)

    async def query(
        self,
        vector: list[float],
        k: int,
        filter: Optional[IdeaFilter] = None,
    ) -> list[tuple[str, float]]:
        embedding = self._check_vector(vector)
        if k <= 0:
            return []
        where, params = filter_clause(filter, start=2)
        conditions = "embedding IS NOT NULL" + (f" AND {where}" if where else "")
        async with self._db.transaction() as conn:
            await conn.execute(f"SET LOCAL hnsw.ef_search = {int(self._ef_search)}")
            rows = await conn.fetch(f"""
                SELECT id, embedding <=> $1 AS distance
                FROM ideas
                WHERE {conditions}
                ORDER BY embedding <=> $1
                LIMIT ${len(params) + 2}
            """, embedding, *params, k)
        return [(row["id"], float(row["distance"])) for row in rows]

    async def size(self) -> int:
        """On-disk size of the HNSW index in bytes."""
        async with self._db.acquire() as conn:
            value = await conn.fetchval(
                "SELECT coalesce(pg_relation_size(to_regclass($1)), 0)", self._index_name
            )
        return int(value or 0)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def filter_clause(filter: Optional[IdeaFilter], start: int = 1) -> tuple[str, list[Any]]:
    """
    Translate an IdeaFilter into SQL conditions with positional parameters.

    Parameter numbering begins at ``$start``.
    """
    if filter is None:
        return "", []

    conditions: list[str] = []
    params: list[Any] = []

    def bind(value: Any) -> str:
        params.append(value)
        return f"${start + len(params) - 1}"

    for column in ("user_id", "chat_id", "category", "priority", "status"):
        value = getattr(filter, column)
        if value is not None:
            conditions.append(f"{column} = {bind(value)}")

    tags = normalize_tags(filter.tags)
    if tags:
        conditions.append(f"tags ?| {bind(tags)}::text[]")

    if filter.date_range is not None:
        if filter.date_range.start is not None:
            conditions.append(f"created_at >= {bind(ensure_utc(filter.date_range.start))}")
        if filter.date_range.end is not None:
            conditions.append(f"created_at <= {bind(ensure_utc(filter.date_range.end))}")

    return " AND ".join(conditions), params


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _row_to_idea(row: asyncpg.Record) -> Idea:
    tags = row["tags"]
    if isinstance(tags, str):
        tags = json.loads(tags)
    return Idea(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        category=row["category"],
        priority=row["priority"],
        status=row["status"],
        tags=list(tags),
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_reminder(row: asyncpg.Record) -> Reminder:
    return Reminder(
        id=row["id"],
        idea_id=row["idea_id"],
        type=row["type"],
        scheduled_for=row["scheduled_for"],
        message=row["message"],
        is_active=row["is_active"],
        is_sent=row["is_sent"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _reminder_args(reminder: Reminder) -> tuple:
    return (
        reminder.id, reminder.idea_id, reminder.type, reminder.scheduled_for,
        reminder.message, reminder.is_active, reminder.is_sent,
        reminder.created_at, reminder.updated_at,
    )


async def _attach_reminders(conn: asyncpg.Connection, ideas: dict[str, Idea]) -> None:
    if not ideas:
        return
    rows = await conn.fetch(f"""
        SELECT {REMINDER_COLUMNS} FROM reminders
        WHERE idea_id = ANY($1::text[])
        ORDER BY scheduled_for, id
    """, list(ideas))
    for row in rows:
        ideas[row["idea_id"]].reminders.append(_row_to_reminder(row))
