"""Content indexer: the orchestration layer over chunker, engine and index.

Public API used by the lifecycle hub and the CLI:
  - ContentIndexer.index_document / remove_document
  - ContentIndexer.search
  - ContentIndexer.rebuild_all / reinitialize / clear_all
  - ContentIndexer.get_stats

A failure while indexing one document is logged and reported as zero
chunks; it never prevents other documents from being indexed. A failed
search raises SearchError so callers can tell it apart from "no results".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import structlog

from tabrecall.config.constants import (
    EXCLUDED_URL_PREFIXES,
    SEARCH_DEFAULT_TOP_K,
    SEARCH_MAX_TOP_K,
    SNIPPET_MAX_LENGTH,
    SNIPPET_SENTENCE_CUT,
    SNIPPET_WORD_CUT,
)
from tabrecall.config.models import IndexerConfig, ModelConfig
from tabrecall.core.errors import (
    ConfigurationError,
    ExtractionFailure,
    ResourceNotReadyError,
    SearchError,
    TabRecallError,
)
from tabrecall.core.logging import clear_operation_id, set_operation_id
from tabrecall.index._internal.chunking import ChunkingOptions, TextChunker
from tabrecall.index.models import ExtractedContent, IndexStats, SearchHit, SearchResult

if TYPE_CHECKING:
    from tabrecall.daemon.lifecycle import IndexContext
    from tabrecall.index._internal.vectors import VectorIndex

log = structlog.get_logger()

_SENTENCE_ENDS = (".", "!", "?", "。", "！", "？")


class TextExtractor(Protocol):
    """External collaborator that turns a document id into text."""

    async def extract(self, owner_id: str) -> ExtractedContent:
        """Return the document's text. Raise ExtractionFailure if unavailable."""
        ...

    async def list_documents(self) -> list[str]:
        """Ids of every currently open document."""
        ...


class StaticExtractor:
    """Dict-backed TextExtractor for tests and the CLI."""

    def __init__(self, documents: dict[str, ExtractedContent] | None = None) -> None:
        self.documents: dict[str, ExtractedContent] = dict(documents or {})

    async def extract(self, owner_id: str) -> ExtractedContent:
        try:
            return self.documents[owner_id]
        except KeyError:
            raise ExtractionFailure.unavailable(owner_id, "unknown document") from None

    async def list_documents(self) -> list[str]:
        return list(self.documents)


def is_indexable_url(url: str) -> bool:
    return not url.startswith(EXCLUDED_URL_PREFIXES)


def extract_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """Shorten text for display, preferring sentence then word boundaries."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    sentence_end = max(truncated.rfind(c) for c in _SENTENCE_ENDS)
    if sentence_end > max_length * SNIPPET_SENTENCE_CUT:
        return truncated[: sentence_end + 1]
    last_space = truncated.rfind(" ")
    if last_space > max_length * SNIPPET_WORD_CUT:
        return truncated[:last_space] + "..."
    return truncated + "..."


def best_per_owner(hits: list[SearchHit]) -> list[SearchHit]:
    """Keep each owner's highest-similarity hit, best first."""
    best: dict[str, SearchHit] = {}
    for hit in hits:
        current = best.get(hit.document.owner_id)
        if current is None or hit.similarity > current.similarity:
            best[hit.document.owner_id] = hit
    return sorted(best.values(), key=lambda h: h.similarity, reverse=True)


class ContentIndexer:
    """Keeps the vector index in step with open documents and answers searches."""

    def __init__(
        self,
        context: IndexContext,
        extractor: TextExtractor,
        config: IndexerConfig | None = None,
    ) -> None:
        self.context = context
        self.extractor = extractor
        self.config = config or context.config.indexer
        self.chunker = TextChunker(
            ChunkingOptions(
                max_words_per_chunk=self.config.max_words_per_chunk,
                overlap_sentences=self.config.overlap_sentences,
                min_chunk_length=self.config.min_chunk_length,
                include_title=self.config.include_title,
            )
        )
        # dedup key "<url>_<title>" -> owner id
        self._indexed: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the model and open the index for its dimension."""
        await self.context.engine.initialize()
        index = await self.context.ensure_index()
        if not index.is_usable:
            log.warning("indexer.index_unusable_rebuilding")
            await index.clear()
            self._indexed.clear()

    async def reinitialize(self, model_config: ModelConfig | None = None) -> None:
        """Switch model: drop all indexed state, recreate the engine, start again."""
        log.info("indexer.reinitializing", model=(model_config or self.context.config.model).preset)
        if self.context.index is not None:
            await self.context.index.clear()
        self._indexed.clear()
        await self.context.replace_engine(model_config)
        await self.context.ensure_index()
        await self.context.engine.initialize()

    async def clear_all(self) -> None:
        index = await self.context.ensure_index()
        await index.clear()
        self._indexed.clear()
        log.info("indexer.cleared")

    async def rebuild_all(self) -> int:
        """Clear everything and re-index every open document. Returns documents indexed."""
        await self.clear_all()
        owners = await self.extractor.list_documents()
        indexed = 0
        for owner_id in owners:
            if await self.index_document(owner_id):
                indexed += 1
        log.info("indexer.rebuilt", documents=indexed, candidates=len(owners))
        return indexed

    # ------------------------------------------------------------------
    # Index entry points
    # ------------------------------------------------------------------

    async def index_document(self, owner_id: str) -> int:
        """Index one document. Returns the number of chunks stored (0 if skipped)."""
        engine = self.context.engine
        if not (engine.is_ready or engine.is_initializing):
            log.debug("indexer.skipped", owner_id=owner_id, reason="engine_not_ready")
            return 0

        set_operation_id()
        try:
            return await self._index_document(owner_id)
        except TabRecallError as e:
            log.error("indexer.index_failed", owner_id=owner_id, error=str(e))
            return 0
        except Exception as e:
            log.error("indexer.index_failed", owner_id=owner_id, error=str(e), exc_info=True)
            return 0
        finally:
            clear_operation_id()

    async def _extract(self, owner_id: str) -> ExtractedContent:
        try:
            return await self.extractor.extract(owner_id)
        except TabRecallError:
            raise
        except Exception as e:
            raise ExtractionFailure.unavailable(owner_id, str(e)) from e

    async def _index_document(self, owner_id: str) -> int:
        try:
            content = await self._extract(owner_id)
        except ExtractionFailure as e:
            log.info("indexer.skipped", owner_id=owner_id, reason="extraction_failed", error=str(e))
            return 0

        if not is_indexable_url(content.url):
            log.debug("indexer.skipped", owner_id=owner_id, reason="excluded_url", url=content.url)
            return 0

        key = f"{content.url}_{content.title}"
        if self.config.skip_duplicates and key in self._indexed:
            log.debug("indexer.skipped", owner_id=owner_id, reason="duplicate")
            return 0

        engine = self.context.engine
        if engine.is_initializing:
            await engine.initialize()
        index = await self.context.ensure_index()

        await index.remove_owner(owner_id)
        self._forget_owner(owner_id)

        chunks = self.chunker.chunk(content.text_content, content.title)
        chunks = chunks[: self.config.max_chunks_per_page]
        if not chunks:
            log.debug("indexer.skipped", owner_id=owner_id, reason="no_chunks")
            return 0

        embeddings = await engine.get_embeddings_batch([c.text for c in chunks])
        for chunk, embedding in zip(chunks, embeddings, strict=True):
            await index.insert(owner_id, chunk, embedding, url=content.url, title=content.title)

        self._indexed[key] = owner_id
        log.info("indexer.indexed", owner_id=owner_id, chunks=len(chunks), url=content.url)
        return len(chunks)

    async def remove_document(self, owner_id: str) -> int:
        """Remove a document's chunks. Unknown owners are a no-op."""
        self._forget_owner(owner_id)
        index = self.context.index
        if index is None:
            return 0
        return await index.remove_owner(owner_id)

    def _forget_owner(self, owner_id: str) -> None:
        for key in [k for k, owner in self._indexed.items() if owner == owner_id]:
            del self._indexed[key]

    # ------------------------------------------------------------------
    # Search entry point
    # ------------------------------------------------------------------

    async def search(self, query: str, top_k: int = SEARCH_DEFAULT_TOP_K) -> list[SearchResult]:
        """Semantic search over indexed documents, one result per document."""
        if not query or not query.strip():
            raise ConfigurationError.empty_input("query")
        top_k = max(1, min(top_k, SEARCH_MAX_TOP_K))

        set_operation_id()
        try:
            try:
                return await self._search_once(query, top_k)
            except ResourceNotReadyError as e:
                if not e.is_not_initialized:
                    raise
                log.warning("indexer.search_reinitializing")
                await self.context.engine.initialize()
                return await self._search_once(query, top_k)
        except ConfigurationError:
            raise
        except TabRecallError as e:
            log.error("indexer.search_failed", error=str(e))
            raise SearchError.failed(query, str(e)) from e
        finally:
            clear_operation_id()

    async def _search_once(self, query: str, top_k: int) -> list[SearchResult]:
        embedding = await self.context.engine.get_embedding(query)
        index: VectorIndex = await self.context.ensure_index()
        hits = await index.search(embedding, max(self.config.search_overfetch, top_k * 2))
        ranked = best_per_owner(hits)[:top_k]
        log.debug("indexer.searched", candidates=len(hits), results=len(ranked))
        return [
            SearchResult(
                owner_id=hit.document.owner_id,
                url=hit.document.url,
                title=hit.document.title,
                similarity=hit.similarity,
                snippet=extract_snippet(hit.document.chunk.text),
                source=hit.document.chunk.source,
            )
            for hit in ranked
        ]

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def indexed_pages(self) -> int:
        return len(self._indexed)

    async def get_stats(self) -> IndexStats:
        engine = self.context.engine
        index = self.context.index
        if index is None:
            return IndexStats(
                total_documents=0,
                total_owners=0,
                index_size_bytes=0,
                ready=engine.is_ready,
                initializing=engine.is_initializing,
                indexed_pages=self.indexed_pages,
            )
        stats = index.stats()
        return IndexStats(
            total_documents=stats.total_documents,
            total_owners=stats.total_owners,
            index_size_bytes=stats.index_size_bytes,
            ready=engine.is_ready,
            initializing=engine.is_initializing,
            indexed_pages=self.indexed_pages,
        )
