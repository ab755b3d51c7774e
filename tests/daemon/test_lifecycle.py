"""Tests for the shared index context and the document lifecycle hub."""

from __future__ import annotations

import asyncio

import pytest
from fakes import fake_engine_factory

from tabrecall.config.models import IndexerConfig, ModelConfig, TabRecallConfig
from tabrecall.daemon.lifecycle import DocumentLifecycle, IndexContext, LifecycleState
from tabrecall.index._internal.store import InMemoryBlobStore
from tabrecall.index.models import ExtractedContent, TextChunk
from tabrecall.index.ops import ContentIndexer, StaticExtractor

PAGE = ExtractedContent(
    url="https://pets.example/cats",
    title="Cat Care",
    text_content="Cats are wonderful pets. A kitten loves to play with every toy.",
)


@pytest.fixture
def store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def context(store: InMemoryBlobStore) -> IndexContext:
    return IndexContext.create(TabRecallConfig(), store=store, engine_factory=fake_engine_factory)


@pytest.fixture
def extractor() -> StaticExtractor:
    return StaticExtractor({"tab-1": PAGE})


async def _ready_indexer(
    context: IndexContext, extractor: StaticExtractor, **config: object
) -> ContentIndexer:
    indexer = ContentIndexer(context, extractor, IndexerConfig(**config))  # type: ignore[arg-type]
    await indexer.initialize()
    return indexer


class TestIndexContext:
    @pytest.mark.asyncio
    async def test_ensure_index_reuses_index_for_same_dimension(
        self, context: IndexContext
    ) -> None:
        first = await context.ensure_index()
        second = await context.ensure_index()

        assert first is second
        assert first.dimension == 384

    @pytest.mark.asyncio
    async def test_given_new_dimension_when_ensuring_then_index_rebuilt_empty(
        self, context: IndexContext
    ) -> None:
        # Given
        await context.engine.initialize()
        old = await context.ensure_index()
        vector = await context.engine.get_embedding("cats and dogs")
        await old.insert("tab", TextChunk("cats and dogs", "title", 0, 3), vector)

        # When
        new = await context.ensure_index(768)

        # Then
        assert new is not old
        assert new.dimension == 768
        assert len(new) == 0

    @pytest.mark.asyncio
    async def test_replace_engine_swaps_model(self, context: IndexContext) -> None:
        old = context.engine
        await old.initialize()

        engine = await context.replace_engine(ModelConfig(preset="multilingual-e5-base"))

        assert engine is context.engine
        assert engine is not old
        assert not old.is_ready
        assert engine.dimension == 768
        assert context.config.model.preset == "multilingual-e5-base"

    @pytest.mark.asyncio
    async def test_given_indexed_documents_when_reopened_then_persisted(
        self, context: IndexContext, store: InMemoryBlobStore, extractor: StaticExtractor
    ) -> None:
        # Given
        indexer = await _ready_indexer(context, extractor)
        chunks = await indexer.index_document("tab-1")
        await context.close()

        # When
        reopened = IndexContext.create(
            TabRecallConfig(), store=store, engine_factory=fake_engine_factory
        )
        index = await reopened.ensure_index()

        # Then
        assert len(index) == chunks
        assert index.owner_ids() == ["tab-1"]


class TestDocumentLifecycle:
    """Lifecycle events drive index operations."""

    @pytest.mark.asyncio
    async def test_given_content_stable_when_settled_then_document_indexed(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        # Given
        indexer = await _ready_indexer(context, extractor)
        hub = DocumentLifecycle(indexer, settle_delay_sec=0.01)

        # When
        hub.on_opened("tab-1")
        hub.on_content_stable("tab-1")
        assert hub.pending_count == 1
        await hub.drain()

        # Then
        assert hub.pending_count == 0
        assert context.index is not None
        assert context.index.get_owner_documents("tab-1")

    @pytest.mark.asyncio
    async def test_newer_event_replaces_pending_one(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor)
        hub = DocumentLifecycle(indexer, settle_delay_sec=0.05)

        hub.on_content_stable("tab-1")
        first = hub._pending["tab-1"]
        hub.on_content_stable("tab-1")
        await hub.drain()

        assert first.cancelled()
        assert hub.pending_count == 0
        assert indexer.indexed_pages == 1

    @pytest.mark.asyncio
    async def test_given_pending_index_when_closed_then_cancelled_and_removed(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        # Given
        indexer = await _ready_indexer(context, extractor)
        await indexer.index_document("tab-1")
        hub = DocumentLifecycle(indexer, settle_delay_sec=10.0)
        hub.on_content_stable("tab-1")

        # When
        hub.on_closed("tab-1")
        await hub.drain()

        # Then
        assert hub.pending_count == 0
        assert context.index is not None
        assert context.index.get_owner_documents("tab-1") == []

    @pytest.mark.asyncio
    async def test_navigated_away_removes_document(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor)
        await indexer.index_document("tab-1")
        hub = DocumentLifecycle(indexer, settle_delay_sec=0.0)

        hub.on_navigated_away("tab-1")
        await hub.drain()

        assert indexer.indexed_pages == 0

    @pytest.mark.asyncio
    async def test_auto_index_disabled_schedules_nothing(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor, auto_index=False)
        hub = DocumentLifecycle(indexer, settle_delay_sec=0.0)

        hub.on_content_stable("tab-1")

        assert hub.pending_count == 0

    @pytest.mark.asyncio
    async def test_settle_delay_defaults_to_indexer_config(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor, settle_delay_sec=0.25)

        hub = DocumentLifecycle(indexer)

        assert hub.settle_delay_sec == 0.25

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_and_ignores_later_events(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor)
        hub = DocumentLifecycle(indexer, settle_delay_sec=10.0)
        hub.on_content_stable("tab-1")
        task = hub._pending["tab-1"]

        await hub.stop()
        await asyncio.gather(task, return_exceptions=True)
        hub.on_content_stable("tab-1")

        assert task.cancelled()
        assert hub.pending_count == 0
        assert hub.status().state == LifecycleState.STOPPED
        assert indexer.indexed_pages == 0

    @pytest.mark.asyncio
    async def test_failed_indexing_recorded_in_status(
        self, context: IndexContext, extractor: StaticExtractor
    ) -> None:
        indexer = await _ready_indexer(context, extractor)

        async def boom(_owner_id: str) -> int:
            raise RuntimeError("extractor crashed")

        indexer.index_document = boom  # type: ignore[method-assign]
        hub = DocumentLifecycle(indexer, settle_delay_sec=0.0)

        hub.on_content_stable("tab-1")
        await hub.drain()

        status = hub.status()
        assert status.last_error == "extractor crashed"
        assert status.pending == 0
