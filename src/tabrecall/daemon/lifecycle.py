"""Shared runtime state and document lifecycle handling."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from tabrecall.config.models import ModelConfig, TabRecallConfig
from tabrecall.daemon.proxy import RemoteEngineProxy, SubprocessChannel
from tabrecall.index._internal.embedding import Embedder, LocalEngine
from tabrecall.index._internal.store import BlobStore, SqliteBlobStore
from tabrecall.index._internal.vectors import VectorIndex

if TYPE_CHECKING:
    from tabrecall.index.ops import ContentIndexer

logger = structlog.get_logger()

EngineFactory = Callable[[TabRecallConfig, ModelConfig], Embedder]


def default_engine_factory(config: TabRecallConfig, model: ModelConfig) -> Embedder:
    """Local engine, or a proxy to a worker-hosted engine when use_remote is set."""
    if model.use_remote:
        channel = SubprocessChannel(model, timeout_sec=config.proxy.request_timeout_sec)
        return RemoteEngineProxy(channel, model, config.proxy)
    return LocalEngine(model)


@dataclass
class IndexContext:
    """
    The one engine and one index shared by everything in a process.

    Built once by create() and passed explicitly to the indexer and the
    lifecycle hub.
    """

    config: TabRecallConfig
    store: BlobStore
    engine_factory: EngineFactory = default_engine_factory

    engine: Embedder = field(init=False)
    index: VectorIndex | None = field(default=None, init=False)
    _index_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        self.engine = self.engine_factory(self.config, self.config.model)

    @classmethod
    def create(
        cls,
        config: TabRecallConfig,
        *,
        store: BlobStore | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> IndexContext:
        if store is None:
            store = SqliteBlobStore(config.storage.db_path)
        return cls(
            config=config,
            store=store,
            engine_factory=engine_factory or default_engine_factory,
        )

    async def ensure_index(self, dimension: int | None = None) -> VectorIndex:
        """Return the index, (re)building it when the dimension changes."""
        dimension = dimension or self.engine.dimension
        async with self._index_lock:
            index = self.index
            if index is not None and index.dimension == dimension:
                return index

            if index is not None:
                logger.info("index_dimension_changed", old=index.dimension, new=dimension)
                await index.flush()

            index = VectorIndex(self.store, dimension=dimension, config=self.config.vectors)
            await index.initialize()
            if index.dimension_changed:
                # Stored vectors came from another model; they cannot be searched
                await index.clear()
            self.index = index
            return index

    async def replace_engine(self, model: ModelConfig | None = None) -> Embedder:
        """Dispose the current engine and create one for a new model config."""
        model = model or self.config.model
        await self.engine.dispose()
        self.config = self.config.model_copy(update={"model": model})
        self.engine = self.engine_factory(self.config, model)
        logger.info("engine_replaced", model=model.preset, remote=model.use_remote)
        return self.engine

    async def close(self) -> None:
        if self.index is not None:
            await self.index.flush()
        await self.engine.dispose()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


class LifecycleState(Enum):
    """Document lifecycle hub state."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class LifecycleStatus:
    state: LifecycleState
    pending: int
    last_error: str | None = None


@dataclass
class DocumentLifecycle:
    """
    Turns document lifecycle events into index operations.

    Events:
    - on_content_stable: index after the settle delay; a newer event for
      the same owner replaces the pending one
    - on_closed / on_navigated_away: cancel pending work, remove the owner
    """

    indexer: ContentIndexer
    settle_delay_sec: float | None = None

    _state: LifecycleState = field(default=LifecycleState.RUNNING, init=False)
    _pending: dict[str, asyncio.Task[Any]] = field(default_factory=dict, init=False)
    _removals: set[asyncio.Task[Any]] = field(default_factory=set, init=False)
    _last_error: str | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.settle_delay_sec is None:
            self.settle_delay_sec = self.indexer.config.settle_delay_sec

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> LifecycleStatus:
        return LifecycleStatus(
            state=self._state,
            pending=self.pending_count,
            last_error=self._last_error,
        )

    def on_opened(self, owner_id: str) -> None:
        logger.debug("document_opened", owner_id=owner_id)

    def on_content_stable(self, owner_id: str) -> None:
        """Schedule indexing once the document has settled."""
        if self._state != LifecycleState.RUNNING:
            return
        if not self.indexer.config.auto_index:
            logger.debug("auto_index_disabled", owner_id=owner_id)
            return

        self._cancel_pending(owner_id)
        loop = asyncio.get_event_loop()
        self._pending[owner_id] = loop.create_task(self._settle_and_index(owner_id))
        logger.debug("index_scheduled", owner_id=owner_id, delay_sec=self.settle_delay_sec)

    def on_closed(self, owner_id: str) -> None:
        self._schedule_removal(owner_id, reason="closed")

    def on_navigated_away(self, owner_id: str) -> None:
        self._schedule_removal(owner_id, reason="navigated_away")

    async def drain(self) -> None:
        """Wait for all scheduled work to finish."""
        while self._pending or self._removals:
            tasks = [*self._pending.values(), *self._removals]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel pending indexing and wait for in-flight removals."""
        self._state = LifecycleState.STOPPING
        for owner_id in list(self._pending):
            self._cancel_pending(owner_id)
        if self._removals:
            await asyncio.gather(*self._removals, return_exceptions=True)
        self._state = LifecycleState.STOPPED
        logger.info("document_lifecycle_stopped")

    def _cancel_pending(self, owner_id: str) -> None:
        task = self._pending.pop(owner_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _schedule_removal(self, owner_id: str, *, reason: str) -> None:
        self._cancel_pending(owner_id)
        if self._state == LifecycleState.STOPPED:
            return
        loop = asyncio.get_event_loop()
        task = loop.create_task(self._remove(owner_id, reason))
        self._removals.add(task)
        task.add_done_callback(self._removals.discard)

    async def _settle_and_index(self, owner_id: str) -> None:
        try:
            await asyncio.sleep(self.settle_delay_sec or 0.0)
            chunks = await self.indexer.index_document(owner_id)
            logger.debug("settled_index_done", owner_id=owner_id, chunks=chunks)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._last_error = str(e)
            logger.error("settled_index_failed", owner_id=owner_id, error=str(e))
        finally:
            current = self._pending.get(owner_id)
            if current is asyncio.current_task():
                del self._pending[owner_id]

    async def _remove(self, owner_id: str, reason: str) -> None:
        try:
            removed = await self.indexer.remove_document(owner_id)
            logger.debug("document_removed", owner_id=owner_id, reason=reason, removed=removed)
        except Exception as e:
            self._last_error = str(e)
            logger.error("document_remove_failed", owner_id=owner_id, error=str(e))

