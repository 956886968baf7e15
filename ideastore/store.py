"""
Vector index backed by a ChromaDB collection.

The collection holds one embedding per idea, keyed by idea id, plus the
filterable idea fields as Chroma metadata so that filtered queries are
answered by the index itself. Tags are stored as one boolean key per tag
(``tag:<name>``) because metadata values are scalars.

The Chroma client is synchronous; every call runs in a worker thread.
"""

import asyncio
import logging
from typing import Any, Optional

from .config import DEFAULT_INDEX_NAME, IndexParams
from .errors import IndexInconsistency, StorageError
from .types import IdeaFilter, ensure_utc, normalize_tags

logger = logging.getLogger(__name__)

TAG_PREFIX = "tag:"


def create_chroma_client(path: str = "", host: str = "", port: int = 8000):
    """
    Build a Chroma client.

    A host selects a remote Chroma server over HTTP; a path selects an
    on-disk store; neither gives an in-process ephemeral store.
    """
    import chromadb
    from chromadb.config import Settings

    settings = Settings(anonymized_telemetry=False)
    if host:
        return chromadb.HttpClient(host=host, port=port, settings=settings)
    if path:
        return chromadb.PersistentClient(path=path, settings=settings)
    return chromadb.EphemeralClient(settings=settings)


class ChromaVectorIndex:
    """HNSW cosine index in a single Chroma collection."""

    def __init__(self, client: Any = None, *, collection_name: str = DEFAULT_INDEX_NAME):
        """
        Args:
            client: A chromadb client; an ephemeral one is created if omitted
            collection_name: Name of the collection holding idea vectors
        """
        self._client = client if client is not None else create_chroma_client()
        self._collection_name = collection_name
        self._collection = None
        self._dimension: Optional[int] = None

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def ensure_index(self, dimension: int, params: IndexParams) -> None:
        """
        Get or create the collection. Idempotent.

        Raises IndexInconsistency if the collection was created for a
        different dimension.
        """
        metadata = {
            "hnsw:space": "cosine",
            "hnsw:M": params.m,
            "hnsw:construction_ef": params.ef_construction,
            "hnsw:search_ef": params.ef_search,
            "dimension": dimension,
        }
        try:
            collection = await asyncio.to_thread(
                self._client.get_or_create_collection,
                name=self._collection_name,
                metadata=metadata,
                embedding_function=None,
            )
        except Exception as e:
            raise StorageError(f"Cannot open Chroma collection {self._collection_name}: {e}") from e

        existing = (collection.metadata or {}).get("dimension")
        sample = await self._call(collection.get, limit=1, include=["embeddings"])
        embeddings = sample.get("embeddings")
        if embeddings is not None and len(embeddings) > 0:
            existing = len(embeddings[0])
        if existing is not None and int(existing) != dimension:
            raise IndexInconsistency(
                f"Collection {self._collection_name} holds {existing}-dimensional "
                f"vectors, configured dimension is {dimension}"
            )
        self._collection = collection
        self._dimension = dimension
        logger.debug("Chroma collection %s ready (dim=%d)", self._collection_name, dimension)

    def _require_collection(self):
        if self._collection is None:
            raise IndexInconsistency(f"Vector index {self._collection_name} is not initialized")
        return self._collection

    def _check_vector(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise IndexInconsistency(
                f"Vector has {len(vector)} dimensions, index expects {self._dimension}"
            )

    async def _call(self, fn, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (IndexInconsistency, StorageError):
            raise
        except Exception as e:
            raise StorageError(f"Chroma {getattr(fn, '__name__', 'call')} failed: {e}") from e

    async def upsert(self, id: str, vector: list[float], attributes: dict[str, Any]) -> None:
        collection = self._require_collection()
        self._check_vector(vector)
        existing = await self._call(collection.get, ids=[id], include=["metadatas"])
        await self._write(collection, id, list(vector), attributes, existing)

    async def update_attributes(self, id: str, attributes: dict[str, Any]) -> None:
        """Replace the stored metadata for an id, keeping its vector."""
        collection = self._require_collection()
        existing = await self._call(
            collection.get, ids=[id], include=["embeddings", "metadatas"]
        )
        embeddings = existing.get("embeddings")
        if not existing.get("ids") or embeddings is None or len(embeddings) == 0:
            logger.warning("update_attributes: no vector for %s", id)
            return
        await self._write(collection, id, list(embeddings[0]), attributes, existing)

    async def _write(
        self,
        collection,
        id: str,
        vector: list[float],
        attributes: dict[str, Any],
        existing: dict[str, Any],
    ) -> None:
        """
        Store ``vector`` with exactly ``attributes`` as its metadata.

        Chroma merges metadata on upsert, so a record carrying keys the new
        metadata lacks (a removed tag) is deleted and added again.
        """
        metadata = to_chroma_metadata(attributes)
        stale: set[str] = set()
        if existing.get("ids"):
            old = (existing.get("metadatas") or [None])[0] or {}
            stale = set(old) - set(metadata)
        if stale:
            logger.debug("Rewriting %s to drop metadata keys %s", id, sorted(stale))
            await self._call(collection.delete, ids=[id])
            await self._call(collection.add, ids=[id], embeddings=[vector], metadatas=[metadata])
        else:
            await self._call(collection.upsert, ids=[id], embeddings=[vector], metadatas=[metadata])

    async def remove(self, id: str) -> None:
        collection = self._require_collection()
        await self._call(collection.delete, ids=[id])

    async def query(
        self,
        vector: list[float],
        k: int,
        filter: Optional[IdeaFilter] = None,
    ) -> list[tuple[str, float]]:
        """Nearest ``k`` ids that pass the filter, as (id, cosine distance)."""
        collection = self._require_collection()
        self._check_vector(vector)

        total = await self._call(collection.count)
        if total == 0 or k <= 0:
            return []

        kwargs: dict[str, Any] = {
            "query_embeddings": [list(vector)],
            "n_results": min(k, total),
            "include": ["distances"],
        }
        where = build_where(filter)
        if where:
            kwargs["where"] = where

        results = await self._call(collection.query, **kwargs)
        ids = results.get("ids") or [[]]
        distances = results.get("distances") or [[]]
        return list(zip(ids[0], (float(d) for d in distances[0])))

    async def size(self) -> int:
        """Approximate vector storage in bytes (float32 per component)."""
        collection = self._require_collection()
        count = await self._call(collection.count)
        return count * (self._dimension or 0) * 4

    async def drop(self) -> None:
        """Delete the whole collection."""
        await self._call(self._client.delete_collection, name=self._collection_name)
        self._collection = None


def to_chroma_metadata(attributes: dict[str, Any]) -> dict[str, Any]:
    """Flatten index attributes into scalar Chroma metadata."""
    metadata: dict[str, Any] = {}
    for key, value in attributes.items():
        if key == "tags":
            for tag in value or []:
                metadata[f"{TAG_PREFIX}{tag}"] = True
        elif value is not None:
            metadata[key] = value
    return metadata


def build_where(filter: Optional[IdeaFilter]) -> Optional[dict[str, Any]]:
    """Translate an IdeaFilter into a Chroma where clause, or None."""
    if filter is None:
        return None

    clauses: list[dict[str, Any]] = []
    for key in ("user_id", "chat_id", "category", "priority", "status"):
        value = getattr(filter, key)
        if value is not None:
            clauses.append({key: value})

    tags = normalize_tags(filter.tags)
    if len(tags) == 1:
        clauses.append({f"{TAG_PREFIX}{tags[0]}": True})
    elif tags:
        clauses.append({"$or": [{f"{TAG_PREFIX}{t}": True} for t in tags]})

    if filter.date_range is not None:
        if filter.date_range.start is not None:
            clauses.append({"created_at": {"$gte": ensure_utc(filter.date_range.start).timestamp()}})
        if filter.date_range.end is not None:
            clauses.append({"created_at": {"$lte": ensure_utc(filter.date_range.end).timestamp()}})

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}
