"""Tests for the persisted HNSW vector index."""

from __future__ import annotations

import json
import math

import numpy as np
import pytest
from fakes import DIMENSION, fake_vector

from tabrecall.config.constants import CAPACITY_EVICT_FRACTION
from tabrecall.config.models import VectorIndexConfig
from tabrecall.core.errors import ConfigurationError, PersistenceError
from tabrecall.index._internal.store import InMemoryBlobStore
from tabrecall.index._internal.vectors import VectorIndex, make_document_id
from tabrecall.index.models import TextChunk

_DAY = 86_400.0


class FakeClock:
    """Seconds since epoch, advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(InMemoryBlobStore):
    def put(self, key: str, value: bytes) -> None:
        raise PersistenceError.write_failed(key, "disk full")


def chunk(i: int = 0, text: str | None = None) -> TextChunk:
    body = text or f"chunk body number {i} with enough text"
    return TextChunk(text=body, source=f"content_chunk_{i}", index=i, word_count=len(body.split()))


async def make_index(
    store: InMemoryBlobStore | None = None,
    *,
    dimension: int = DIMENSION,
    clock: FakeClock | None = None,
    **config: object,
) -> VectorIndex:
    index = VectorIndex(
        store if store is not None else InMemoryBlobStore(),
        dimension=dimension,
        config=VectorIndexConfig(**config),  # type: ignore[arg-type]
        clock=clock or FakeClock(),
    )
    await index.initialize()
    return index


class TestInsertAndSearch:
    """Core insert/search contract."""

    @pytest.mark.asyncio
    async def test_given_inserted_vector_when_searched_then_top_hit_with_similarity_one(
        self,
    ) -> None:
        # Given
        index = await make_index()
        for i in range(5):
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))

        # When
        hits = await index.search(fake_vector(3), top_k=3)

        # Then
        assert hits[0].document.owner_id == "tab-3"
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
        assert [h.similarity for h in hits] == sorted((h.similarity for h in hits), reverse=True)

    @pytest.mark.asyncio
    async def test_labels_increase_and_ids_follow_format(self) -> None:
        clock = FakeClock(1000.0)
        index = await make_index(clock=clock)

        first = await index.insert("tab-1", chunk(0), fake_vector(1), url="https://a.example")
        second = await index.insert("tab-1", chunk(1), fake_vector(2))

        assert (first, second) == (0, 1)
        doc = index.get_owner_documents("tab-1")[0]
        assert doc.id == make_document_id("tab-1", 0, 1_000_000) == "tab_tab-1_chunk_0_1000000"
        assert doc.url == "https://a.example"
        assert doc.timestamp == 1_000_000

    @pytest.mark.asyncio
    async def test_unnormalized_embeddings_are_normalized(self) -> None:
        index = await make_index()
        await index.insert("tab", chunk(), fake_vector(9) * 42.0)

        hits = await index.search(fake_vector(9), top_k=1)

        assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)

    @pytest.mark.asyncio
    async def test_empty_index_returns_no_hits(self) -> None:
        index = await make_index()
        assert await index.search(fake_vector(1), top_k=5) == []

    @pytest.mark.asyncio
    async def test_top_k_zero_returns_no_hits(self) -> None:
        index = await make_index()
        await index.insert("tab", chunk(), fake_vector(1))
        assert await index.search(fake_vector(1), top_k=0) == []


class TestValidation:
    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected_before_label_allocated(self) -> None:
        index = await make_index()

        with pytest.raises(ConfigurationError):
            await index.insert("tab", chunk(), np.ones(DIMENSION - 1, dtype=np.float32))

        assert index.stats().next_label == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_value", [np.nan, np.inf])
    async def test_non_finite_rejected(self, bad_value: float) -> None:
        index = await make_index()
        vector = fake_vector(1).copy()
        vector[5] = bad_value

        with pytest.raises(ConfigurationError):
            await index.insert("tab", chunk(), vector)

    @pytest.mark.asyncio
    async def test_zero_vector_rejected(self) -> None:
        index = await make_index()
        with pytest.raises(ConfigurationError):
            await index.insert("tab", chunk(), np.zeros(DIMENSION, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_query_dimension_checked(self) -> None:
        index = await make_index()
        with pytest.raises(ConfigurationError):
            await index.search([1.0, 0.0], top_k=1)

    def test_non_positive_dimension_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            VectorIndex(InMemoryBlobStore(), dimension=0)


class TestRemoval:
    """Soft deletion by owner."""

    @pytest.mark.asyncio
    async def test_given_removed_owner_when_searched_then_never_returned(self) -> None:
        # Given
        index = await make_index()
        for i in range(3):
            await index.insert("keep", chunk(i), fake_vector(i))
        await index.insert("gone", chunk(9), fake_vector(100))

        # When
        removed = await index.remove_owner("gone")
        hits = await index.search(fake_vector(100), top_k=10)

        # Then
        assert removed == 1
        assert all(h.document.owner_id != "gone" for h in hits)
        assert index.stats().graph_entries == 4
        assert index.owner_ids() == ["keep"]

    @pytest.mark.asyncio
    async def test_remove_twice_is_noop(self) -> None:
        index = await make_index()
        await index.insert("tab", chunk(), fake_vector(1))

        assert await index.remove_owner("tab") == 1
        assert await index.remove_owner("tab") == 0
        assert await index.remove_owner("never-seen") == 0
        assert len(index) == 0

    @pytest.mark.asyncio
    async def test_labels_never_reused_after_removal(self) -> None:
        index = await make_index()
        await index.insert("a", chunk(), fake_vector(1))
        await index.remove_owner("a")

        label = await index.insert("b", chunk(), fake_vector(2))

        assert label == 1

    @pytest.mark.asyncio
    async def test_clear_resets_graph_and_labels(self) -> None:
        index = await make_index()
        await index.insert("a", chunk(), fake_vector(1))

        await index.clear()

        stats = index.stats()
        assert (stats.total_documents, stats.graph_entries, stats.next_label) == (0, 0, 0)
        assert await index.search(fake_vector(1), top_k=1) == []


class TestCleanup:
    """Capacity and retention eviction."""

    @pytest.mark.asyncio
    async def test_given_capacity_exceeded_when_insert_then_at_most_80_percent_kept(
        self,
    ) -> None:
        """Inserting capacity + 1 leaves <= 80% and keeps the newest document."""
        # Given
        clock = FakeClock()
        index = await make_index(clock=clock, capacity=10)

        # When
        last = -1
        for i in range(11):
            clock.advance(1)
            last = await index.insert(f"tab-{i}", chunk(i), fake_vector(i))

        # Then
        assert len(index) <= 8
        assert index.get_owner_documents("tab-10")
        assert not index.get_owner_documents("tab-0")
        hits = await index.search(fake_vector(10), top_k=1)
        assert hits[0].document.owner_id == "tab-10"
        assert last == 10

    @pytest.mark.asyncio
    async def test_below_capacity_nothing_evicted(self) -> None:
        index = await make_index(capacity=10)
        for i in range(10):
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))
        assert len(index) == 10

    @pytest.mark.asyncio
    async def test_given_full_index_when_insert_then_evicts_configured_fraction(self) -> None:
        # Given
        clock = FakeClock()
        index = await make_index(clock=clock, capacity=20)
        for i in range(20):
            clock.advance(1)
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))

        # When
        clock.advance(1)
        await index.insert("tab-20", chunk(20), fake_vector(20))

        # Then
        kept = math.floor(20 * (1 - CAPACITY_EVICT_FRACTION))
        assert len(index) == kept
        assert sorted(index.owner_ids()) == sorted(f"tab-{i}" for i in range(21 - kept, 21))

    @pytest.mark.asyncio
    async def test_given_expired_documents_when_cleanup_then_evicted(self) -> None:
        # Given
        clock = FakeClock()
        index = await make_index(clock=clock, retention_days=1.0, auto_cleanup=False)
        await index.insert("old", chunk(0), fake_vector(1))
        clock.advance(2 * _DAY)
        await index.insert("new", chunk(1), fake_vector(2))

        # When
        removed = await index.cleanup()

        # Then
        assert removed == 1
        assert index.owner_ids() == ["new"]

    @pytest.mark.asyncio
    async def test_auto_cleanup_applies_retention_on_insert(self) -> None:
        clock = FakeClock()
        index = await make_index(clock=clock, retention_days=1.0)
        await index.insert("old", chunk(0), fake_vector(1))
        clock.advance(2 * _DAY)

        await index.insert("new", chunk(1), fake_vector(2))

        assert index.owner_ids() == ["new"]


class TestPersistence:
    """Reload from the blob store."""

    @pytest.mark.asyncio
    async def test_given_flushed_index_when_reloaded_then_documents_searchable(self) -> None:
        # Given
        store = InMemoryBlobStore()
        index = await make_index(store)
        for i in range(4):
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))
        await index.remove_owner("tab-1")
        await index.flush()

        # When
        reloaded = await make_index(store)

        # Then
        assert len(reloaded) == 3
        assert reloaded.stats().next_label == 4
        hits = await reloaded.search(fake_vector(2), top_k=1)
        assert hits[0].document.owner_id == "tab-2"
        # Removed owner stays masked in the restored graph
        masked = await reloaded.search(fake_vector(1), top_k=4)
        assert all(h.document.owner_id != "tab-1" for h in masked)

    @pytest.mark.asyncio
    async def test_given_graph_behind_mapping_when_reloaded_then_graph_rebuilt(self) -> None:
        """Inserts after the last graph sync are restored from stored embeddings."""
        # Given: graph is only written every 100 inserts
        store = InMemoryBlobStore()
        index = await make_index(store, graph_sync_every=100)
        for i in range(3):
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))
        assert store.get(index.graph_key) is None

        # When
        reloaded = await make_index(store, graph_sync_every=100)

        # Then
        assert reloaded.stats().graph_entries == 3
        hits = await reloaded.search(fake_vector(0), top_k=1)
        assert hits[0].document.owner_id == "tab-0"

    @pytest.mark.asyncio
    async def test_remove_owner_writes_mapping_but_not_graph(self) -> None:
        # Given
        store = InMemoryBlobStore()
        index = await make_index(store)
        for i in range(2):
            await index.insert(f"tab-{i}", chunk(i), fake_vector(i))
        await index.flush()
        graph_before = store.get(index.graph_key)
        mapping_before = store.get(index.mapping_key)

        # When
        await index.remove_owner("tab-0")

        # Then
        assert store.get(index.graph_key) == graph_before
        assert store.get(index.mapping_key) != mapping_before
        assert json.loads(store.get(index.mapping_key) or b"{}")["owner_labels"] == {"tab-1": [1]}

    @pytest.mark.asyncio
    async def test_given_graph_without_mapping_when_loaded_then_unusable(self) -> None:
        """Drift: a populated graph with an empty mapping is not searched."""
        # Given
        store = InMemoryBlobStore()
        index = await make_index(store)
        await index.insert("tab", chunk(), fake_vector(1))
        await index.flush()
        store.delete(index.mapping_key)

        # When
        reloaded = await make_index(store)

        # Then
        assert reloaded.is_usable is False
        assert await reloaded.search(fake_vector(1), top_k=1) == []

        # And clear() makes it usable again
        await reloaded.clear()
        assert reloaded.is_usable is True

    @pytest.mark.asyncio
    async def test_given_corrupt_graph_when_loaded_then_rebuilt_from_mapping(self) -> None:
        store = InMemoryBlobStore()
        index = await make_index(store)
        await index.insert("tab", chunk(), fake_vector(1))
        await index.flush()
        store.put(index.graph_key, b"not a faiss index")

        reloaded = await make_index(store)

        assert reloaded.is_usable
        hits = await reloaded.search(fake_vector(1), top_k=1)
        assert hits[0].document.owner_id == "tab"

    @pytest.mark.asyncio
    async def test_given_stored_dimension_differs_when_loaded_then_flagged(self) -> None:
        store = InMemoryBlobStore()
        small = await make_index(store, dimension=8)
        await small.insert("tab", chunk(), np.ones(8, dtype=np.float32))
        await small.flush()

        wider = await make_index(store, dimension=DIMENSION)

        assert wider.dimension_changed is True
        assert len(wider) == 0

    @pytest.mark.asyncio
    async def test_mapping_payload_is_json(self) -> None:
        store = InMemoryBlobStore()
        index = await make_index(store)
        await index.insert("tab", chunk(), fake_vector(1))

        payload = json.loads(store.get(index.mapping_key) or b"{}")

        assert payload["dimension"] == DIMENSION
        assert payload["next_label"] == 1
        assert payload["owner_labels"] == {"tab": [0]}

    @pytest.mark.asyncio
    async def test_given_failing_store_when_insert_then_served_from_memory(self) -> None:
        index = await make_index(FailingStore())

        await index.insert("tab", chunk(), fake_vector(1))

        hits = await index.search(fake_vector(1), top_k=1)
        assert hits[0].document.owner_id == "tab"


class TestStats:
    @pytest.mark.asyncio
    async def test_size_estimate_grows_with_documents(self) -> None:
        index = await make_index()
        empty = index.estimate_size_bytes()
        await index.insert("tab", chunk(), fake_vector(1))

        stats = index.stats()

        assert stats.index_size_bytes > empty
        assert stats.index_size_bytes >= DIMENSION * 4
        assert stats.total_owners == 1
        assert stats.dimension == DIMENSION
