"""
Shared pytest fixtures for ideastore tests.

Provides a deterministic embedding provider and an in-memory vector index
so the orchestrator runs against a real SQLite record store without ML
models, API keys or servers.
"""

import hashlib
import math
import re
from typing import Any, Optional

import pytest

from ideastore.api import IdeaStore
from ideastore.config import IndexParams
from ideastore.document_store import SqliteRecordStore
from ideastore.errors import IndexInconsistency, ProviderUnavailable, StorageError
from ideastore.providers.base import EmbeddingResult, require_text
from ideastore.types import IdeaFilter, ensure_utc, normalize_tags

_WORD = re.compile(r"[a-z0-9]+")


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Hashed bag of words: each word adds its length to one md5 bucket, and
    the vector is L2-normalised. Texts sharing words score high, texts
    sharing none score zero.
    """

    model_name = "mock-model"

    def __init__(self, dimension: int = 512):
        self.dimension = dimension
        self.calls: list[str] = []
        self.fail = False

    async def embed(self, text: str) -> EmbeddingResult:
        require_text(text)
        self.calls.append(text)
        if self.fail:
            raise ProviderUnavailable("mock provider offline")
        vector = [0.0] * self.dimension
        words = _WORD.findall(text.lower())
        for word in words:
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += len(word)
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return EmbeddingResult(vector=[v / norm for v in vector], tokens=len(words))


def cosine_distance(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 1.0
    return 1.0 - dot / (na * nb)


class MockVectorIndex:
    """Exact cosine search over a dict. Filters on stored attributes."""

    def __init__(self):
        self.vectors: dict[str, list[float]] = {}
        self.attributes: dict[str, dict[str, Any]] = {}
        self.dimension: Optional[int] = None
        self.fail_upsert = False
        self.ensure_calls = 0

    async def ensure_index(self, dimension: int, params: IndexParams) -> None:
        self.ensure_calls += 1
        if self.dimension is not None and self.dimension != dimension:
            raise IndexInconsistency(f"index is {self.dimension}d, asked for {dimension}d")
        self.dimension = dimension

    async def upsert(self, id: str, vector: list[float], attributes: dict[str, Any]) -> None:
        if self.fail_upsert:
            raise StorageError("mock index write failed")
        if len(vector) != self.dimension:
            raise IndexInconsistency(f"vector is {len(vector)}d, index is {self.dimension}d")
        self.vectors[id] = list(vector)
        self.attributes[id] = dict(attributes)

    async def update_attributes(self, id: str, attributes: dict[str, Any]) -> None:
        if id in self.vectors:
            self.attributes[id] = dict(attributes)

    async def remove(self, id: str) -> None:
        self.vectors.pop(id, None)
        self.attributes.pop(id, None)

    async def query(
        self,
        vector: list[float],
        k: int,
        filter: Optional[IdeaFilter] = None,
    ) -> list[tuple[str, float]]:
        hits = [
            (id, cosine_distance(vector, stored))
            for id, stored in self.vectors.items()
            if _attributes_match(self.attributes[id], filter)
        ]
        hits.sort(key=lambda hit: hit[1])
        return hits[:k]

    async def size(self) -> int:
        return len(self.vectors) * (self.dimension or 0) * 4


def _attributes_match(attributes: dict[str, Any], filter: Optional[IdeaFilter]) -> bool:
    if filter is None:
        return True
    for key in ("user_id", "chat_id", "category", "priority", "status"):
        wanted = getattr(filter, key)
        if wanted is not None and attributes.get(key) != wanted:
            return False
    tags = normalize_tags(filter.tags)
    if tags and not set(tags) & set(attributes.get("tags", [])):
        return False
    if filter.date_range is not None:
        created = attributes["created_at"]
        if filter.date_range.start and created < ensure_utc(filter.date_range.start).timestamp():
            return False
        if filter.date_range.end and created > ensure_utc(filter.date_range.end).timestamp():
            return False
    return True


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def vector_index():
    return MockVectorIndex()


@pytest.fixture
async def record_store():
    """An initialized in-memory SQLite record store."""
    records = SqliteRecordStore(":memory:")
    await records.initialize()
    yield records
    await records.close()


@pytest.fixture
async def store(record_store, vector_index, mock_embedding_provider):
    """IdeaStore over SQLite + MockVectorIndex + MockEmbeddingProvider."""
    idea_store = IdeaStore(record_store, vector_index, mock_embedding_provider)
    await idea_store.initialize()
    yield idea_store
    await idea_store.close()
