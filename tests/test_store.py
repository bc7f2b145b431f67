"""
Test suite for the vector stores.

The in-memory store is the reference backend; the Chroma store is exercised
through its helpers and with an injected client so no database is needed.
"""

import hashlib
from unittest.mock import MagicMock

import pytest

from vectorstore.store import (
    ChromaVectorStore,
    InMemoryVectorStore,
    VectorRecord,
    VectorStoreError,
    _build_where,
    _sanitize_metadata,
    build_vector_store,
)


def record(vector_id: str, embedding: list[float], **metadata) -> VectorRecord:
    return VectorRecord(id=vector_id, embedding=embedding, metadata=metadata)


class TestInMemoryVectorStore:
    """Test suite for InMemoryVectorStore."""

    @pytest.mark.asyncio
    async def test_query_should_never_cross_namespaces(self) -> None:
        # Arrange
        store = InMemoryVectorStore()
        await store.upsert("orgB-vectors", [record("b1", [1.0, 0.0], org_id="orgB")])

        # Act
        matches = await store.query("orgA-vectors", [1.0, 0.0], top_k=5)

        # Assert
        assert matches == []

    @pytest.mark.asyncio
    async def test_upsert_with_same_id_should_overwrite(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("v1", [1.0, 0.0], version=1)])

        await store.upsert("ns", [record("v1", [0.0, 1.0], version=2)])

        assert await store.count("ns") == 1
        matches = await store.query("ns", [0.0, 1.0])
        assert matches[0].metadata["version"] == 2
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_upsert_with_wrong_dimensions_should_raise(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("v1", [1.0, 0.0, 0.0])])

        with pytest.raises(VectorStoreError):
            await store.upsert("ns", [record("v2", [1.0, 0.0])])

    @pytest.mark.asyncio
    async def test_query_with_wrong_dimensions_should_raise(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("v1", [1.0, 0.0, 0.0])])

        with pytest.raises(VectorStoreError):
            await store.query("ns", [1.0, 0.0])

    @pytest.mark.asyncio
    async def test_query_should_order_by_descending_score(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [
            record("far", [0.0, 1.0]),
            record("near", [1.0, 0.1]),
            record("mid", [1.0, 1.0]),
        ])

        matches = await store.query("ns", [1.0, 0.0], top_k=2)

        assert [m.id for m in matches] == ["near", "mid"]
        assert matches[0].score >= matches[1].score

    @pytest.mark.asyncio
    async def test_query_should_apply_equality_filter(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [
            record("a0", [1.0, 0.0], doc_id="a"),
            record("b0", [1.0, 0.0], doc_id="b"),
        ])

        matches = await store.query("ns", [1.0, 0.0], filter={"doc_id": "b"})

        assert [m.id for m in matches] == ["b0"]

    @pytest.mark.asyncio
    async def test_filter_entries_set_to_none_should_be_ignored(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("a0", [1.0, 0.0], doc_id="a")])

        matches = await store.query("ns", [1.0, 0.0], filter={"doc_id": None})

        assert [m.id for m in matches] == ["a0"]

    @pytest.mark.asyncio
    async def test_top_k_below_one_should_raise(self) -> None:
        store = InMemoryVectorStore()

        with pytest.raises(ValueError):
            await store.query("ns", [1.0], top_k=0)

    @pytest.mark.asyncio
    async def test_delete_should_ignore_unknown_ids(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("v1", [1.0]), record("v2", [1.0])])

        await store.delete("ns", ["v1", "missing"])
        await store.delete("other", ["v2"])

        assert await store.count("ns") == 1

    @pytest.mark.asyncio
    async def test_delete_namespace_should_be_idempotent(self) -> None:
        store = InMemoryVectorStore()
        await store.upsert("ns", [record("v1", [1.0, 0.0])])

        await store.delete_namespace("ns")
        await store.delete_namespace("ns")

        assert await store.count("ns") == 0
        # dimensions are forgotten with the namespace
        await store.upsert("ns", [record("v1", [1.0, 0.0, 0.0])])
        assert await store.count("ns") == 1

    @pytest.mark.asyncio
    async def test_stored_metadata_should_not_alias_caller_dict(self) -> None:
        store = InMemoryVectorStore()
        original = record("v1", [1.0], title="Before")
        await store.upsert("ns", [original])

        original.metadata["title"] = "After"

        matches = await store.query("ns", [1.0])
        assert matches[0].metadata["title"] == "Before"


class TestChromaHelpers:
    """Test suite for the Chroma metadata and filter helpers."""

    def test_build_where_should_return_none_without_conditions(self) -> None:
        assert _build_where(None) is None
        assert _build_where({"doc_id": None}) is None

    def test_build_where_should_use_single_condition_directly(self) -> None:
        assert _build_where({"doc_id": "a"}) == {"doc_id": "a"}

    def test_build_where_should_combine_conditions_with_and(self) -> None:
        assert _build_where({"doc_id": "a", "org_id": "o"}) == {
            "$and": [{"doc_id": "a"}, {"org_id": "o"}]
        }

    def test_sanitize_metadata_should_serialize_non_scalars(self) -> None:
        clean = _sanitize_metadata({"tags": ["a", "b"], "n": 3, "skip": None, "ok": True})

        assert clean == {"tags": '["a","b"]', "n": 3, "ok": True}


class TestChromaVectorStore:
    """Test suite for ChromaVectorStore with an injected client."""

    def test_collection_name_should_keep_valid_names_unchanged(self) -> None:
        store = ChromaVectorStore(client=MagicMock())

        assert store.collection_name("orgA-vectors") == "ratu_orgA-vectors"
        assert store.collection_name("org.a_1-vectors") == "ratu_org.a_1-vectors"

    def test_collection_name_should_replace_invalid_characters_and_add_digest(self) -> None:
        store = ChromaVectorStore(client=MagicMock())
        digest = hashlib.sha256(b"org a/vectors").hexdigest()[:12]

        assert store.collection_name("org a/vectors") == f"ratu_org_a_vectors_{digest}"

    def test_namespaces_differing_only_in_invalid_characters_should_not_collide(self) -> None:
        store = ChromaVectorStore(client=MagicMock())

        names = {
            store.collection_name(ns)
            for ns in ("acme corp-vectors", "acme_corp-vectors", "acme/corp-vectors", "acme..corp-vectors")
        }

        assert len(names) == 4

    def test_long_namespaces_should_fit_chroma_limit_and_stay_distinct(self) -> None:
        store = ChromaVectorStore(client=MagicMock())

        first = store.collection_name("t" * 100 + "-vectors")
        second = store.collection_name("t" * 101 + "-vectors")

        assert len(first) <= 63
        assert len(second) <= 63
        assert first != second
        assert first[0].isalnum() and first[-1].isalnum()

    @pytest.mark.asyncio
    async def test_sanitized_namespaces_should_stay_isolated(self) -> None:
        # Arrange: a fake client holding one collection per name
        collections: dict[str, MagicMock] = {}

        def get_or_create_collection(name, metadata):
            collection = collections.setdefault(name, MagicMock(metadata=metadata))
            collection.count.return_value = 1
            collection.query.return_value = {
                "ids": [["v1"]], "distances": [[0.0]], "metadatas": [[{"doc_id": "a"}]],
            }
            return collection

        def get_collection(name):
            if name not in collections:
                raise ValueError(f"Collection {name} does not exist")
            return collections[name]

        client = MagicMock()
        client.get_or_create_collection.side_effect = get_or_create_collection
        client.get_collection.side_effect = get_collection
        store = ChromaVectorStore(client=client)

        # Act
        await store.upsert("acme corp-vectors", [record("v1", [1.0, 0.0], doc_id="a")])

        # Assert
        assert len(await store.query("acme corp-vectors", [1.0, 0.0])) == 1
        assert await store.query("acme_corp-vectors", [1.0, 0.0]) == []
        assert await store.count("acme_corp-vectors") == 0

    @pytest.mark.asyncio
    async def test_query_on_missing_collection_should_return_empty(self) -> None:
        client = MagicMock()
        client.get_collection.side_effect = ValueError("does not exist")
        store = ChromaVectorStore(client=client)

        assert await store.query("orgA-vectors", [1.0, 0.0]) == []
        assert await store.count("orgA-vectors") == 0

    @pytest.mark.asyncio
    async def test_query_should_convert_distance_to_similarity(self) -> None:
        # Arrange
        collection = MagicMock()
        collection.metadata = {"hnsw:space": "cosine", "dimensions": 2}
        collection.count.return_value = 2
        collection.query.return_value = {
            "ids": [["v1", "v2"]],
            "distances": [[0.1, 0.4]],
            "metadatas": [[{"doc_id": "a"}, None]],
        }
        client = MagicMock()
        client.get_collection.return_value = collection
        store = ChromaVectorStore(client=client)

        # Act
        matches = await store.query("ns", [1.0, 0.0], top_k=5, filter={"doc_id": "a"})

        # Assert
        assert [m.id for m in matches] == ["v1", "v2"]
        assert matches[0].score == pytest.approx(0.9)
        assert matches[1].metadata == {}
        kwargs = collection.query.call_args.kwargs
        assert kwargs["n_results"] == 2
        assert kwargs["where"] == {"doc_id": "a"}

    @pytest.mark.asyncio
    async def test_upsert_should_reject_dimension_mismatch(self) -> None:
        collection = MagicMock()
        collection.metadata = {"dimensions": 3}
        client = MagicMock()
        client.get_or_create_collection.return_value = collection
        store = ChromaVectorStore(client=client)

        with pytest.raises(VectorStoreError):
            await store.upsert("ns", [record("v1", [1.0, 0.0])])
        collection.upsert.assert_not_called()


class TestBuildVectorStore:
    """Test suite for build_vector_store."""

    def test_memory_provider_should_build_in_memory_store(self) -> None:
        settings = MagicMock(vector_db_provider="memory")

        assert isinstance(build_vector_store(settings), InMemoryVectorStore)

    def test_unknown_provider_should_raise(self) -> None:
        with pytest.raises(ValueError):
            build_vector_store(MagicMock(vector_db_provider="pinecone"))
