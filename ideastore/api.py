"""
Core API for the idea store.

IdeaStore coordinates three collaborators:
- an embedding provider (text -> vector)
- a record store (ideas and reminders, the source of truth)
- a vector index (id -> vector, filtered nearest-neighbour queries)

Writes embed first, then persist the record and its vector inside one
record-store transaction, so a stored vector always belongs to the
current title and content.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterator, Optional
from uuid import uuid4

from .backend import create_stores
from .config import IndexParams, SearchDefaults, StoreConfig
from .errors import IdeaStoreError, IndexInconsistency, ValidationError
from .protocol import RecordStore, VectorIndex
from .providers.base import EmbeddingProvider, get_registry
from .types import (
    DEFAULT_CATEGORY,
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    CreateIdeaInput,
    Idea,
    IdeaFilter,
    Reminder,
    ReminderInput,
    SearchResult,
    StoreStats,
    UpdateIdeaInput,
    ensure_utc,
    index_attributes,
    normalize_tags,
    score_from_distance,
    utc_now,
)

logger = logging.getLogger(__name__)


def _truncate(text: str, length: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[:length - 3] + "..."


@contextmanager
def _logged(operation: str, ref: str) -> Iterator[None]:
    """Log an IdeaStoreError with the operation and its subject, then re-raise."""
    try:
        yield
    except IdeaStoreError as e:
        logger.error("%s %s failed: %s: %s", operation, ref, type(e).__name__, e)
        raise


class IdeaStore:
    """
    Semantic idea store with reminders.

    Example:
        async with open_store(load_or_create_config(get_config_dir())) as store:
            idea = await store.create(CreateIdeaInput(
                title="Enterprise Strategy",
                content="Target multi-guild accounts",
                user_id="u1",
            ))
            results = await store.search("enterprise accounts")
    """

    def __init__(
        self,
        records: RecordStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        *,
        dimension: Optional[int] = None,
        index_params: Optional[IndexParams] = None,
        search_defaults: Optional[SearchDefaults] = None,
    ) -> None:
        """
        Args:
            records: Record store holding ideas and reminders
            index: Vector index holding one embedding per idea
            embedder: Provider used for both writes and queries
            dimension: Configured vector size; defaults to the provider's
            index_params: HNSW parameters passed to the index
            search_defaults: Default search limit/threshold and list limit
        """
        self._records = records
        self._index = index
        self._embedder = embedder
        self._dimension = dimension if dimension is not None else embedder.dimension
        self._index_params = index_params or IndexParams()
        self._defaults = search_defaults or SearchDefaults()
        self._initialized = False

    @property
    def dimension(self) -> int:
        return self._dimension

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create tables and the vector index. Idempotent."""
        if self._initialized:
            return
        if self._embedder.dimension != self._dimension:
            raise IndexInconsistency(
                f"Embedding provider {getattr(self._embedder, 'model_name', '?')!r} "
                f"produces {self._embedder.dimension} dimensions, "
                f"configured dimension is {self._dimension}"
            )
        with _logged("initialize", "store"):
            await self._records.initialize()
            await self._index.ensure_index(self._dimension, self._index_params)
        self._initialized = True
        logger.info("Idea store ready (dim=%d)", self._dimension)

    async def close(self) -> None:
        await self._records.close()
        aclose = getattr(self._embedder, "aclose", None)
        if aclose is not None:
            await aclose()
        self._initialized = False

    async def __aenter__(self) -> "IdeaStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Embedding
    # -------------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float]:
        result = await self._embedder.embed(text)
        if len(result.vector) != self._dimension:
            raise IndexInconsistency(
                f"Embedding has {len(result.vector)} dimensions, expected {self._dimension}"
            )
        logger.debug("Embedded %d chars (%d tokens)", len(text), result.tokens)
        return result.vector

    # -------------------------------------------------------------------------
    # Write operations
    # -------------------------------------------------------------------------

    async def create(self, input: CreateIdeaInput) -> Idea:
        """
        Validate, embed and store a new idea with its reminders.

        Nothing is written if embedding fails. If the vector cannot be
        indexed the record is rolled back.
        """
        id = str(uuid4())
        with _logged("create", id):
            input.validate()
            now = utc_now()
            idea = Idea(
                id=id,
                title=input.title,
                content=input.content,
                user_id=input.user_id,
                category=input.category or DEFAULT_CATEGORY,
                priority=input.priority or DEFAULT_PRIORITY,
                status=DEFAULT_STATUS,
                tags=normalize_tags(input.tags),
                chat_id=input.chat_id,
                created_at=now,
                updated_at=now,
            )
            reminders = [_new_reminder(idea.id, r, now) for r in input.reminders or []]

            vector = await self._embed(idea.text)
            indexed = False
            try:
                async with self._records.transaction():
                    await self._records.insert_idea(idea)
                    if reminders:
                        await self._records.replace_reminders(idea.id, reminders)
                    await self._index.upsert(idea.id, vector, index_attributes(idea))
                    indexed = True
            except Exception:
                if indexed:
                    # Record rolled back after the vector landed
                    await self._discard_vector(idea.id)
                raise

        logger.info("Created idea %s (%d reminders)", idea.id, len(reminders))
        stored = await self._records.get_idea(idea.id)
        if stored is not None:
            return stored
        idea.reminders = reminders
        return idea

    async def _discard_vector(self, id: str) -> None:
        try:
            await self._index.remove(id)
        except IdeaStoreError as e:
            logger.warning("Orphan vector %s left in index: %s", id, e)

    async def update(self, input: UpdateIdeaInput) -> Optional[Idea]:
        """
        Partially update an idea.

        Title/content changes re-embed the merged text. A ``reminders``
        list replaces the whole set. Returns None for an unknown id.
        """
        with _logged("update", input.id):
            input.validate()
            existing = await self._records.get_idea(input.id)
            if existing is None:
                logger.debug("update: no idea %s", input.id)
                return None

            now = utc_now()
            # updated_at strictly increases even on a coarse clock
            if now <= existing.updated_at:
                now = existing.updated_at + timedelta(microseconds=1)
            merged = replace(
                existing,
                title=input.title if input.title is not None else existing.title,
                content=input.content if input.content is not None else existing.content,
                category=input.category or existing.category,
                priority=input.priority or existing.priority,
                status=input.status or existing.status,
                tags=normalize_tags(input.tags) if input.tags is not None else existing.tags,
                updated_at=now,
                reminders=[],
            )
            reminders = None
            if input.reminders is not None:
                reminders = [_new_reminder(merged.id, r, now) for r in input.reminders]

            vector = await self._embed(merged.text) if input.touches_text else None

            indexed = False
            try:
                async with self._records.transaction():
                    if not await self._records.update_idea(merged):
                        return None
                    if reminders is not None:
                        await self._records.replace_reminders(merged.id, reminders)
                    if vector is not None:
                        await self._index.upsert(merged.id, vector, index_attributes(merged))
                    else:
                        await self._index.update_attributes(merged.id, index_attributes(merged))
                    indexed = True
            except Exception:
                if indexed:
                    # Record rolled back after the index changed
                    await self._restore_index(existing, reembed=vector is not None)
                raise

        logger.info("Updated idea %s%s", merged.id, " (re-embedded)" if vector else "")
        return await self._records.get_idea(merged.id)

    async def _restore_index(self, idea: Idea, *, reembed: bool) -> None:
        try:
            if reembed:
                await self._index.upsert(idea.id, await self._embed(idea.text), index_attributes(idea))
            else:
                await self._index.update_attributes(idea.id, index_attributes(idea))
        except IdeaStoreError as e:
            logger.warning("Index entry for %s left ahead of its record: %s", idea.id, e)

    async def delete(self, id: str) -> bool:
        """Delete an idea, its vector and its reminders."""
        with _logged("delete", id):
            async with self._records.transaction():
                deleted = await self._records.delete_idea(id)
                if deleted:
                    await self._index.remove(id)
        if deleted:
            logger.info("Deleted idea %s", id)
        return deleted

    # -------------------------------------------------------------------------
    # Query operations
    # -------------------------------------------------------------------------

    async def get(self, id: str) -> Optional[Idea]:
        with _logged("get", id):
            return await self._records.get_idea(id)

    async def list(
        self,
        filter: Optional[IdeaFilter] = None,
        limit: Optional[int] = None,
    ) -> list[Idea]:
        """Structured listing, newest first."""
        limit = self._defaults.list_limit if limit is None else limit
        with _logged("list", f"limit={limit}"):
            if limit <= 0:
                raise ValidationError(f"limit must be positive: {limit}")
            if filter is not None:
                filter.validate()
            return await self._records.list_ideas(filter, limit)

    async def search(
        self,
        query: str,
        *,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        filter: Optional[IdeaFilter] = None,
    ) -> list[SearchResult]:
        """
        Semantic search.

        Returns up to ``limit`` ideas with ``score >= threshold``, highest
        score first. Ties keep the index's order.
        """
        limit = self._defaults.limit if limit is None else limit
        threshold = self._defaults.threshold if threshold is None else threshold
        with _logged("search", repr(_truncate(query or ""))):
            if limit <= 0:
                raise ValidationError(f"limit must be positive: {limit}")
            if not 0.0 <= threshold <= 1.0:
                raise ValidationError(f"threshold must be within [0, 1]: {threshold}")
            if filter is not None:
                filter.validate()
            vector = await self._embed(query)
            hits = await self._index.query(vector, limit, filter)
            ideas = await self._records.get_ideas([id for id, _ in hits])

        results: list[SearchResult] = []
        for id, distance in hits:
            idea = ideas.get(id)
            if idea is None:
                logger.debug("search: index hit %s has no record", id)
                continue
            if filter is not None and not filter.matches(idea):
                continue
            score = score_from_distance(distance)
            if score < threshold:
                continue
            results.append(SearchResult(idea=idea, score=score, distance=1.0 - score))

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug("search %r: %d hits, %d returned", _truncate(query), len(hits), len(results))
        return results

    # -------------------------------------------------------------------------
    # Reminders
    # -------------------------------------------------------------------------

    async def add_reminder(self, idea_id: str, reminder: ReminderInput) -> Optional[Reminder]:
        """Append one reminder to an idea. None if the idea doesn't exist."""
        with _logged("add_reminder", idea_id):
            reminder.validate()
            if await self._records.get_idea(idea_id) is None:
                return None
            created = _new_reminder(idea_id, reminder, utc_now())
            await self._records.add_reminder(created)
        logger.info("Scheduled %s reminder %s for %s", created.type, created.id, created.scheduled_for.isoformat())
        return created

    async def get_due_reminders(self, now: Optional[datetime] = None) -> list[Reminder]:
        """Active, unsent reminders with scheduled_for <= now."""
        now = ensure_utc(now) if now is not None else utc_now()
        with _logged("get_due_reminders", now.isoformat()):
            return await self._records.get_due_reminders(now)

    async def mark_reminder_sent(self, id: str) -> bool:
        """
        Mark a reminder sent.

        Already-sent or unknown ids are a no-op returning False. Of several
        concurrent callers exactly one gets True.
        """
        with _logged("mark_reminder_sent", id):
            changed = await self._records.mark_reminder_sent(id, utc_now())
        if not changed:
            logger.debug("mark_reminder_sent: %s already sent or unknown", id)
        return changed

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def get_stats(self) -> StoreStats:
        """Idea count and index footprint. Index size is best effort."""
        with _logged("get_stats", "store"):
            count = await self._records.count()
        try:
            index_size = await self._index.size()
        except IdeaStoreError as e:
            logger.warning("Index size unavailable: %s", e)
            index_size = 0
        return StoreStats(count=count, index_size=index_size)


def _new_reminder(idea_id: str, reminder: ReminderInput, now: datetime) -> Reminder:
    return Reminder(
        id=str(uuid4()),
        idea_id=idea_id,
        type=reminder.type,
        scheduled_for=ensure_utc(reminder.scheduled_for),
        message=reminder.message,
        created_at=now,
        updated_at=now,
    )


def open_store(config: StoreConfig, *, embedder: Optional[EmbeddingProvider] = None) -> IdeaStore:
    """
    Build an IdeaStore from configuration.

    The store is not initialized; use ``async with`` or call
    ``initialize()``.
    """
    if embedder is None:
        params = dict(config.embedding.params)
        params.setdefault("dimension", config.dimension)
        embedder = get_registry().create_embedding(config.embedding.name, params)
    bundle = create_stores(config)
    logger.debug("Opening %s backend with %s embeddings", bundle.name, config.embedding.name)
    return IdeaStore(
        bundle.record_store,
        bundle.vector_index,
        embedder,
        dimension=config.dimension,
        index_params=config.index.params,
        search_defaults=config.search,
    )
