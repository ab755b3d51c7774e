"""Embedding engine: text in, L2-normalized float32 vectors out.

Lifecycle:
  UNINITIALIZED --initialize()--> INITIALIZING --ok--> READY
                                        |
                                        +--fail--> ERROR --initialize()--> INITIALIZING

Concurrent initialize() calls while INITIALIZING await the same task, so
the model is loaded once per engine. Tokenize + inference run in a
single-worker thread pool; the event loop never blocks on the model.

Two memos sit in front of the model: token ids per text (small) and
embeddings per text (larger). Batch calls only send cache misses to the
model, deduplicated, and reassemble results in input order.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import numpy as np
import structlog

from tabrecall.config.constants import LONG_INPUT_FACTOR, TOKEN_CACHE_MAX, WARMUP_TEXTS
from tabrecall.config.models import ModelConfig
from tabrecall.core.errors import ConfigurationError, ResourceNotReadyError
from tabrecall.index._internal.cache import EvictionCache
from tabrecall.index._internal.model import OnnxEmbeddingModel, TokenizedText, resolve_preset
from tabrecall.index._internal.similarity import SimilarityMath
from tabrecall.index.models import EngineState, EngineStatus

log = structlog.get_logger()

T = TypeVar("T")

Embedding = np.ndarray[Any, np.dtype[np.float32]]


class EmbeddingModel(Protocol):
    """What the engine needs from a loaded model."""

    def tokenize(self, text: str) -> TokenizedText: ...

    def embed_tokens(self, batch: list[TokenizedText]) -> Embedding: ...


ModelLoader = Callable[[ModelConfig], EmbeddingModel]


class Embedder(Protocol):
    """Embedding contract shared by the local engine and the remote proxy."""

    @property
    def dimension(self) -> int: ...

    @property
    def model_name(self) -> str: ...

    @property
    def is_ready(self) -> bool: ...

    @property
    def is_initializing(self) -> bool: ...

    async def initialize(self) -> None: ...

    async def get_embedding(self, text: str) -> Embedding: ...

    async def get_embeddings_batch(self, texts: Sequence[str]) -> list[Embedding]: ...

    async def compute_similarity(self, text_a: str, text_b: str) -> float: ...

    async def get_status(self) -> EngineStatus: ...

    async def dispose(self) -> None: ...


@dataclass
class _Perf:
    hits: int = 0
    misses: int = 0
    embeddings_computed: int = 0
    model_calls: int = 0
    total_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "cache_hits": self.hits,
            "cache_misses": self.misses,
            "cache_hit_rate": self.hits / lookups if lookups else 0.0,
            "embeddings_computed": self.embeddings_computed,
            "model_calls": self.model_calls,
            "average_embedding_ms": (
                self.total_time_ms / self.embeddings_computed if self.embeddings_computed else 0.0
            ),
        }


class LocalEngine:
    """Embedder that hosts the model in this process."""

    def __init__(
        self,
        config: ModelConfig | None = None,
        *,
        loader: ModelLoader | None = None,
        accelerated: bool = True,
    ) -> None:
        self.config = config or ModelConfig()
        self._loader: ModelLoader = loader or OnnxEmbeddingModel.load
        self._math = SimilarityMath(accelerated=accelerated)

        self._state = EngineState.UNINITIALIZED
        self._model: EmbeddingModel | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._last_error: str | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._dimension = resolve_preset(self.config.preset).dimension

        self._token_cache: EvictionCache[str, TokenizedText] = EvictionCache(
            min(self.config.cache_size, TOKEN_CACHE_MAX)
        )
        self._embedding_cache: EvictionCache[str, Embedding] = EvictionCache(self.config.cache_size)
        self._perf = _Perf()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self.config.preset

    @property
    def is_ready(self) -> bool:
        return self._state == EngineState.READY

    @property
    def is_initializing(self) -> bool:
        return self._state == EngineState.INITIALIZING

    async def initialize(self) -> None:
        """Load the model. Idempotent; concurrent callers share one attempt."""
        if self._state == EngineState.READY:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.get_running_loop().create_task(self._do_initialize())
        # Shield so one cancelled waiter does not abort the load for the others
        await asyncio.shield(self._init_task)

    async def _do_initialize(self) -> None:
        self._state = EngineState.INITIALIZING
        self._last_error = None
        log.info("embedding.initializing", model=self.config.preset, version=self.config.version)
        try:
            model = await self._run(self._loader, self.config)
            self._model = model
            if not self._dimension:
                sample = await self._run(self._embed_uncached, ["dimension check"])
                self._dimension = int(sample[0].shape[0])
            self._state = EngineState.READY
        except Exception as e:
            self._model = None
            self._state = EngineState.ERROR
            self._last_error = str(e)
            log.error("embedding.init_failed", model=self.config.preset, error=str(e))
            if isinstance(e, (ConfigurationError, ResourceNotReadyError)):
                raise
            raise ResourceNotReadyError.load_failed(self.config.preset, str(e)) from e

        log.info("embedding.ready", model=self.config.preset, dimension=self._dimension)
        if self.config.warmup:
            try:
                await self.warmup()
            except Exception as e:
                log.warning("embedding.warmup_failed", error=str(e))

    async def warmup(self) -> None:
        """Embed a few throwaway texts, then drop them from the memos."""
        self._require_ready()
        started = time.monotonic()
        for text in WARMUP_TEXTS:
            await self.get_embedding(text)
        self.clear_caches()
        self._perf = _Perf()
        log.debug("embedding.warmup_done", sec=round(time.monotonic() - started, 3))

    async def dispose(self) -> None:
        """Release the model. The engine can be initialized again afterwards."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._init_task
        self._init_task = None
        self._model = None
        self.clear_caches()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._state = EngineState.UNINITIALIZED
        log.info("embedding.disposed", model=self.config.preset)

    def clear_caches(self) -> None:
        self._token_cache.clear()
        self._embedding_cache.clear()

    async def get_status(self) -> EngineStatus:
        return EngineStatus(
            state=self._state,
            model=self.config.preset,
            dimension=self._dimension,
            last_error=self._last_error,
            cache={
                "tokens": self._token_cache.stats(),
                "embeddings": self._embedding_cache.stats(),
            },
            performance=self._perf.to_dict(),
        )

    # ------------------------------------------------------------------
    # Embedding API
    # ------------------------------------------------------------------

    async def get_embedding(self, text: str) -> Embedding:
        return (await self.get_embeddings_batch([text]))[0]

    async def get_embeddings_batch(self, texts: Sequence[str]) -> list[Embedding]:
        self._require_ready()
        for text in texts:
            self._validate(text)

        results: list[Embedding | None] = [None] * len(texts)
        pending: dict[str, list[int]] = {}
        for i, text in enumerate(texts):
            cached = self._embedding_cache.get(text)
            if cached is not None:
                self._perf.hits += 1
                results[i] = cached
            else:
                pending.setdefault(text, []).append(i)

        if pending:
            uncached = list(pending)
            self._perf.misses += len(uncached)
            started = time.monotonic()
            vectors = await self._run(self._embed_uncached, uncached)
            self._perf.total_time_ms += (time.monotonic() - started) * 1000
            self._perf.embeddings_computed += len(uncached)
            for text, vector in zip(uncached, vectors, strict=True):
                self._embedding_cache.set(text, vector)
                for i in pending[text]:
                    results[i] = vector

        return [r for r in results if r is not None]

    async def compute_similarity(self, text_a: str, text_b: str) -> float:
        a, b = await self.get_embeddings_batch([text_a, text_b])
        return self._math.batch([(a, b)])[0]

    async def compute_similarity_batch(self, pairs: Sequence[tuple[str, str]]) -> list[float]:
        if not pairs:
            return []
        flat = [t for pair in pairs for t in pair]
        vectors = await self.get_embeddings_batch(flat)
        return self._math.batch(list(zip(vectors[0::2], vectors[1::2], strict=True)))

    async def compute_similarity_matrix(
        self, queries: Sequence[str], keys: Sequence[str]
    ) -> list[list[float]]:
        if not queries or not keys:
            return []
        vectors = await self.get_embeddings_batch([*queries, *keys])
        matrix = self._math.matrix(vectors[: len(queries)], vectors[len(queries) :])
        return matrix.tolist()  # type: ignore[no-any-return]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        if self._state != EngineState.READY or self._model is None:
            raise ResourceNotReadyError.not_initialized()

    def _validate(self, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ConfigurationError.empty_input("text")
        limit = self.config.max_length * LONG_INPUT_FACTOR
        if len(text) > limit:
            log.warning("embedding.input_truncated", length=len(text), limit=limit)

    def _tokens(self, text: str) -> TokenizedText:
        cached = self._token_cache.get(text)
        if cached is not None:
            return cached
        assert self._model is not None
        tokens = self._model.tokenize(text)
        self._token_cache.set(text, tokens)
        return tokens

    def _embed_uncached(self, texts: list[str]) -> list[Embedding]:
        """Tokenize and run the model in batches. Runs in the worker thread."""
        model = self._model
        if model is None:
            raise ResourceNotReadyError.not_initialized()
        out: list[Embedding] = []
        step = self.config.batch_size
        for start in range(0, len(texts), step):
            batch = [self._tokens(t) for t in texts[start : start + step]]
            matrix = np.asarray(model.embed_tokens(batch), dtype=np.float32)
            self._perf.model_calls += 1
            if self._dimension and matrix.shape[1] != self._dimension:
                raise ConfigurationError.dimension_mismatch(self._dimension, int(matrix.shape[1]))
            for row in matrix:
                vector = np.array(row, dtype=np.float32)
                vector.flags.writeable = False
                out.append(vector)
        return out

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tabrecall-embed")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)
