"""
Protocol definitions for IdeaStore and its storage backends.

Defines interface contracts at two levels:
- IdeaRepository: the public API (CLI, scheduler, applications)
- RecordStore / VectorIndex: internal storage backends
  (SQLite + ChromaDB locally, PostgreSQL + pgvector for durable storage)
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

from .config import IndexParams
from .types import (
    CreateIdeaInput,
    Idea,
    IdeaFilter,
    Reminder,
    ReminderInput,
    SearchResult,
    StoreStats,
    UpdateIdeaInput,
)


@runtime_checkable
class IdeaRepository(Protocol):
    """
    The public interface for idea storage and semantic search.

    Implemented by IdeaStore over any StoreBundle.
    """

    # -- Write operations --

    async def create(self, input: CreateIdeaInput) -> Idea: ...

    async def update(self, input: UpdateIdeaInput) -> Optional[Idea]: ...

    async def delete(self, id: str) -> bool: ...

    # -- Query operations --

    async def get(self, id: str) -> Optional[Idea]: ...

    async def list(
        self,
        filter: Optional[IdeaFilter] = None,
        limit: Optional[int] = None,
    ) -> list[Idea]: ...

    async def search(
        self,
        query: str,
        *,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filter: Optional[IdeaFilter] = None,
    ) -> list[SearchResult]: ...

    # -- Reminders --

    async def add_reminder(self, idea_id: str, reminder: ReminderInput) -> Optional[Reminder]: ...

    async def get_due_reminders(self, now: Optional[datetime] = None) -> list[Reminder]: ...

    async def mark_reminder_sent(self, id: str) -> bool:
        """Mark sent. True only for the caller whose call flipped is_sent."""
        ...

    # -- Maintenance --

    async def get_stats(self) -> StoreStats: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Storage backend protocols, internal to IdeaStore
# ---------------------------------------------------------------------------


@runtime_checkable
class VectorIndex(Protocol):
    """
    Approximate nearest-neighbour index with a cosine metric.

    Implemented by:
    - ChromaVectorIndex (ChromaDB collection)
    - PgVectorIndex (pgvector column + HNSW index)

    ``query`` applies the filter before or jointly with ranking and returns
    ``(id, distance)`` pairs, nearest first, where distance is cosine
    distance (1 - cosine similarity).
    """

    async def ensure_index(self, dimension: int, params: IndexParams) -> None: ...

    async def upsert(self, id: str, vector: list[float], attributes: dict[str, Any]) -> None: ...

    async def update_attributes(self, id: str, attributes: dict[str, Any]) -> None: ...

    async def remove(self, id: str) -> None: ...

    async def query(
        self,
        vector: list[float],
        k: int,
        filter: Optional[IdeaFilter] = None,
    ) -> list[tuple[str, float]]: ...

    async def size(self) -> int: ...


@runtime_checkable
class RecordStore(Protocol):
    """
    Durable storage for ideas and reminders. No vector awareness.

    Implemented by:
    - SqliteRecordStore (local)
    - PostgresRecordStore
    """

    async def initialize(self) -> None: ...

    def transaction(self) -> AbstractAsyncContextManager[None]: ...

    async def insert_idea(self, idea: Idea) -> None: ...

    async def update_idea(self, idea: Idea) -> bool: ...

    async def get_idea(self, id: str) -> Optional[Idea]: ...

    async def get_ideas(self, ids: list[str]) -> dict[str, Idea]: ...

    async def delete_idea(self, id: str) -> bool: ...

    async def list_ideas(self, filter: Optional[IdeaFilter], limit: int) -> list[Idea]: ...

    async def replace_reminders(self, idea_id: str, reminders: list[Reminder]) -> None: ...

    async def add_reminder(self, reminder: Reminder) -> None: ...

    async def get_due_reminders(self, now: datetime) -> list[Reminder]: ...

    async def mark_reminder_sent(self, id: str, now: datetime) -> bool: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...
