"""Tests for the Chroma-backed vector index."""

import uuid
from datetime import datetime, timezone

import pytest

from ideastore.api import IdeaStore
from ideastore.config import IndexParams
from ideastore.errors import IndexInconsistency
from ideastore.store import ChromaVectorIndex, build_where, to_chroma_metadata
from ideastore.types import CreateIdeaInput, DateRange, IdeaFilter, UpdateIdeaInput

chromadb = pytest.importorskip("chromadb")

DIM = 8


def unit(i: int, dim: int = DIM) -> list[float]:
    vector = [0.0] * dim
    vector[i] = 1.0
    return vector


def attrs(**kwargs):
    defaults = dict(category="strategy", priority="medium", status="active",
                    user_id="u1", chat_id=None, tags=[], created_at=1_700_000_000.0)
    defaults.update(kwargs)
    return defaults


@pytest.fixture
def chroma_client():
    from chromadb.config import Settings
    return chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False))


@pytest.fixture
async def chroma_index(chroma_client):
    index = ChromaVectorIndex(chroma_client, collection_name=f"ideas_{uuid.uuid4().hex[:8]}")
    await index.ensure_index(DIM, IndexParams())
    yield index
    await index.drop()


class TestMetadata:

    def test_tags_become_flags(self):
        metadata = to_chroma_metadata(attrs(tags=["a", "b"]))
        assert metadata["tag:a"] is True
        assert metadata["tag:b"] is True
        assert "tags" not in metadata

    def test_none_values_dropped(self):
        assert "chat_id" not in to_chroma_metadata(attrs())

    def test_where_none_for_empty_filter(self):
        assert build_where(None) is None
        assert build_where(IdeaFilter()) is None

    def test_where_single_clause(self):
        assert build_where(IdeaFilter(user_id="u1")) == {"user_id": "u1"}

    def test_where_combines_with_and(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        where = build_where(IdeaFilter(category="sales", tags=["x", "y"], date_range=DateRange(start=start)))
        assert where == {"$and": [
            {"category": "sales"},
            {"$or": [{"tag:x": True}, {"tag:y": True}]},
            {"created_at": {"$gte": start.timestamp()}},
        ]}


class TestIndex:

    async def test_nearest_first(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        await chroma_index.upsert("b", unit(1), attrs())
        hits = await chroma_index.query(unit(0), 2)
        assert [id for id, _ in hits] == ["a", "b"]
        assert hits[0][1] == pytest.approx(0.0, abs=1e-5)
        assert hits[1][1] == pytest.approx(1.0, abs=1e-5)

    async def test_empty_collection(self, chroma_index):
        assert await chroma_index.query(unit(0), 5) == []

    async def test_k_larger_than_collection(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        assert len(await chroma_index.query(unit(0), 50)) == 1

    async def test_upsert_replaces(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        await chroma_index.upsert("a", unit(3), attrs())
        hits = await chroma_index.query(unit(3), 1)
        assert hits[0][0] == "a"
        assert hits[0][1] == pytest.approx(0.0, abs=1e-5)

    async def test_filtered_query(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs(user_id="u1", tags=["growth"]))
        await chroma_index.upsert("b", unit(0), attrs(user_id="u2", tags=["growth"]))
        await chroma_index.upsert("c", unit(0), attrs(user_id="u1", tags=["other"]))
        hits = await chroma_index.query(unit(0), 10, IdeaFilter(user_id="u1", tags=["growth"]))
        assert [id for id, _ in hits] == ["a"]

    async def test_update_attributes_clears_old_tags(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs(tags=["old"]))
        await chroma_index.update_attributes("a", attrs(tags=["new"]))
        assert await chroma_index.query(unit(0), 5, IdeaFilter(tags=["old"])) == []
        assert len(await chroma_index.query(unit(0), 5, IdeaFilter(tags=["new"]))) == 1

    async def test_upsert_clears_old_tags(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs(tags=["old"]))
        await chroma_index.upsert("a", unit(1), attrs(tags=["new"]))
        assert await chroma_index.query(unit(1), 5, IdeaFilter(tags=["old"])) == []
        hits = await chroma_index.query(unit(1), 5, IdeaFilter(tags=["new"]))
        assert [id for id, _ in hits] == ["a"]
        assert hits[0][1] == pytest.approx(0.0, abs=1e-5)

    async def test_remove(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        await chroma_index.remove("a")
        await chroma_index.remove("a")
        assert await chroma_index.query(unit(0), 5) == []

    async def test_wrong_vector_size(self, chroma_index):
        with pytest.raises(IndexInconsistency):
            await chroma_index.upsert("a", unit(0, DIM + 1), attrs())

    async def test_size(self, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        assert await chroma_index.size() == DIM * 4

    async def test_dimension_mismatch_on_reopen(self, chroma_client, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        other = ChromaVectorIndex(chroma_client, collection_name=chroma_index.collection_name)
        with pytest.raises(IndexInconsistency):
            await other.ensure_index(DIM * 2, IndexParams())

    async def test_ensure_index_idempotent(self, chroma_client, chroma_index):
        await chroma_index.upsert("a", unit(0), attrs())
        again = ChromaVectorIndex(chroma_client, collection_name=chroma_index.collection_name)
        await again.ensure_index(DIM, IndexParams())
        assert len(await again.query(unit(0), 5)) == 1

    async def test_not_initialized(self, chroma_client):
        with pytest.raises(IndexInconsistency):
            await ChromaVectorIndex(chroma_client).query(unit(0), 1)


class TestStoreOnChroma:

    @pytest.fixture
    async def chroma_store(self, chroma_client, record_store, mock_embedding_provider):
        index = ChromaVectorIndex(chroma_client, collection_name=f"ideas_{uuid.uuid4().hex[:8]}")
        idea_store = IdeaStore(record_store, index, mock_embedding_provider)
        await idea_store.initialize()
        yield idea_store
        await index.drop()
        await idea_store.close()

    async def test_search_and_filter(self, chroma_store):
        await chroma_store.create(CreateIdeaInput(
            title="Enterprise pricing", content="Seat based pricing for enterprise guilds",
            user_id="u1", tags=["pricing"],
        ))
        await chroma_store.create(CreateIdeaInput(
            title="Hiring plan", content="Recruit two support engineers",
            user_id="u2", category="team",
        ))
        results = await chroma_store.search("enterprise pricing")
        assert results[0].idea.title == "Enterprise pricing"

        filtered = await chroma_store.search("enterprise pricing", filter=IdeaFilter(user_id="u2"))
        assert all(r.idea.user_id == "u2" for r in filtered)

    async def test_update_moves_vector(self, chroma_store):
        idea = await chroma_store.create(CreateIdeaInput(
            title="Partner program", content="Referral fees for agencies", user_id="u1",
        ))
        await chroma_store.update(UpdateIdeaInput(
            id=idea.id, title="Churn analysis", content="Interview cancelled customers",
        ))
        results = await chroma_store.search("Churn analysis Interview cancelled customers")
        assert results[0].idea.id == idea.id
        assert results[0].score == pytest.approx(1.0, abs=1e-4)

    async def test_delete_removes_from_search(self, chroma_store):
        idea = await chroma_store.create(CreateIdeaInput(
            title="Community events", content="Monthly office hours", user_id="u1",
        ))
        assert await chroma_store.delete(idea.id)
        assert await chroma_store.search("community events office hours") == []

    async def test_retagged_idea_leaves_filtered_search(self, chroma_store):
        near = await chroma_store.create(CreateIdeaInput(
            title="Enterprise pricing", content="Seat based pricing for enterprise guilds",
            user_id="u1", tags=["old"],
        ))
        far = await chroma_store.create(CreateIdeaInput(
            title="Pricing survey", content="Ask guild admins about budgets",
            user_id="u1", tags=["old"],
        ))
        await chroma_store.update(UpdateIdeaInput(id=near.id, tags=["new"]))

        results = await chroma_store.search(
            "Enterprise pricing Seat based pricing for enterprise guilds",
            limit=1, filter=IdeaFilter(tags=["old"]),
        )
        assert [r.idea.id for r in results] == [far.id]
