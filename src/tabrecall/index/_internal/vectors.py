"""Persisted ANN index over chunk embeddings.

Graph: faiss HNSW (inner product on L2-normalized vectors, i.e. cosine)
wrapped in IndexIDMap2 so every vector carries an explicit int64 label.
HNSW does not support removal, so deletion is logical: the mapping table
(label -> VectorDocument) is the source of truth, labels missing from it
are masked out of search results, and real space is reclaimed only by
clear().

Storage (via BlobStore):
  - {index_name}.graph    faiss.serialize_index bytes
  - {index_name}.mapping  JSON: documents, owner_labels, next_label

The mapping is written after every mutation; the graph every
``graph_sync_every`` insertions and on flush()/clear(). A lost graph is
rebuilt from the embeddings stored in the mapping; a lost mapping with a
populated graph is drift and leaves the index unusable until cleared.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from collections.abc import Callable, Sequence
from typing import Any

import faiss
import numpy as np
import structlog

from tabrecall.config.constants import (
    CAPACITY_EVICT_FRACTION,
    INDEX_OVERHEAD_FRACTION,
    INDEX_OVERHEAD_PER_ELEMENT,
    MAPPING_FORMAT_VERSION,
)
from tabrecall.config.models import VectorIndexConfig
from tabrecall.core.errors import ConfigurationError, ConsistencyError, PersistenceError
from tabrecall.index._internal.store import BlobStore
from tabrecall.index.models import SearchHit, TextChunk, VectorDocument, VectorIndexStats

log = structlog.get_logger()

_MS_PER_DAY = 86_400_000


def make_document_id(owner_id: str, chunk_index: int, timestamp_ms: int) -> str:
    return f"tab_{owner_id}_chunk_{chunk_index}_{timestamp_ms}"


class VectorIndex:
    """HNSW graph plus document mapping, persisted to a BlobStore.

    All mutations hold one asyncio.Lock, so insertions are applied (and
    persisted) in call order and cleanup never interleaves with an insert.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        dimension: int,
        config: VectorIndexConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if dimension <= 0:
            raise ConfigurationError.invalid_value("dimension", dimension, "must be positive")
        self.config = config or VectorIndexConfig()
        self.dimension = dimension
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()

        self._graph: Any = self._new_graph()
        self._documents: dict[int, VectorDocument] = {}
        self._owner_labels: dict[str, list[int]] = {}
        self._masked: set[int] = set()
        self._next_label = 0
        self._inserts_since_sync = 0
        self._usable = True
        self._initialized = False
        self.dimension_changed = False

    # ------------------------------------------------------------------
    # Keys and graph helpers
    # ------------------------------------------------------------------

    @property
    def graph_key(self) -> str:
        return f"{self.config.index_name}.graph"

    @property
    def mapping_key(self) -> str:
        return f"{self.config.index_name}.mapping"

    @property
    def is_usable(self) -> bool:
        return self._usable

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _new_graph(self) -> Any:
        hnsw = faiss.IndexHNSWFlat(self.dimension, self.config.m, faiss.METRIC_INNER_PRODUCT)
        hnsw.hnsw.efConstruction = self.config.ef_construction
        hnsw.hnsw.efSearch = self.config.ef_search
        return faiss.IndexIDMap2(hnsw)

    def _hnsw(self) -> Any:
        return faiss.downcast_index(self._graph.index)

    def _graph_labels(self) -> set[int]:
        if self._graph.ntotal == 0:
            return set()
        return {int(x) for x in faiss.vector_to_array(self._graph.id_map)}

    def _add_to_graph(self, labels: Sequence[int], vectors: np.ndarray[Any, Any]) -> None:
        matrix = np.array(vectors, dtype=np.float32, copy=True).reshape(len(labels), -1)
        faiss.normalize_L2(matrix)
        self._graph.add_with_ids(matrix, np.asarray(labels, dtype=np.int64))

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load graph and mapping from the store. Safe to call repeatedly."""
        async with self._lock:
            if self._initialized:
                return
            await self._load()
            self._initialized = True

    async def _load(self) -> None:
        mapping_compatible = True
        payload = await self._read(self.graph_key)
        if payload:
            try:
                graph = faiss.deserialize_index(np.frombuffer(payload, dtype=np.uint8))
                if graph.d != self.dimension:
                    log.warning(
                        "vectors.dimension_changed",
                        stored=graph.d,
                        configured=self.dimension,
                    )
                    mapping_compatible = False
                    self.dimension_changed = True
                else:
                    self._graph = graph
                    self._hnsw().hnsw.efSearch = self.config.ef_search
            except Exception as e:
                log.warning("vectors.graph_load_failed", error=str(e))

        if mapping_compatible:
            await self._load_mapping()
            graph_count = int(self._graph.ntotal)
            if graph_count > 0 and not self._documents:
                # Mapping write may have lagged the graph write; try once more
                await self._load_mapping()
            if graph_count > 0 and not self._documents:
                err = ConsistencyError.drift(graph_count, 0)
                log.error("vectors.drift", **err.to_dict())
                self._usable = False

        graph_labels = self._graph_labels()
        missing = sorted(label for label in self._documents if label not in graph_labels)
        if missing:
            log.warning("vectors.graph_rebuilt_from_mapping", missing=len(missing))
            vectors = np.asarray(
                [self._documents[label].embedding for label in missing], dtype=np.float32
            )
            self._add_to_graph(missing, vectors)
            graph_labels.update(missing)

        self._masked = graph_labels - set(self._documents)
        top = max(graph_labels | set(self._documents), default=-1) + 1
        self._next_label = max(self._next_label, top, int(self._graph.ntotal))

        log.info(
            "vectors.loaded",
            index=self.config.index_name,
            documents=len(self._documents),
            graph_entries=int(self._graph.ntotal),
            masked=len(self._masked),
            next_label=self._next_label,
            usable=self._usable,
        )

    async def _load_mapping(self) -> None:
        raw = await self._read(self.mapping_key)
        if not raw:
            return
        try:
            data = json.loads(raw)
            documents = {
                int(label): VectorDocument.from_dict(doc)
                for label, doc in data.get("documents", {}).items()
            }
        except (ValueError, KeyError, TypeError) as e:
            log.warning("vectors.mapping_load_failed", error=str(e))
            return

        if int(data.get("dimension", self.dimension)) != self.dimension:
            log.warning("vectors.mapping_dimension_changed", stored=data.get("dimension"))
            self.dimension_changed = True
            return

        self._documents = documents
        self._owner_labels = {}
        for label, doc in sorted(documents.items()):
            self._owner_labels.setdefault(doc.owner_id, []).append(label)
        self._next_label = int(data.get("next_label", 0))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def insert(
        self,
        owner_id: str,
        chunk: TextChunk,
        embedding: Sequence[float] | np.ndarray[Any, Any],
        *,
        url: str = "",
        title: str = "",
    ) -> int:
        """Store one chunk. Returns its label."""
        vector = self._validate(embedding)
        async with self._lock:
            timestamp = int(self._clock() * 1000)
            label = self._next_label
            self._next_label += 1
            self._add_to_graph([label], vector)

            document = VectorDocument(
                id=make_document_id(owner_id, chunk.index, timestamp),
                owner_id=owner_id,
                url=url,
                title=title,
                chunk=chunk,
                embedding=[float(x) for x in vector],
                timestamp=timestamp,
            )
            self._documents[label] = document
            self._owner_labels.setdefault(owner_id, []).append(label)

            self._inserts_since_sync += 1
            sync_graph = self._inserts_since_sync >= self.config.graph_sync_every
            await self._persist(graph=sync_graph)

            if self.config.auto_cleanup:
                await self._cleanup()
        log.debug("vectors.inserted", owner_id=owner_id, label=label)
        return label

    async def remove_owner(self, owner_id: str) -> int:
        """Drop every chunk of an owner. Returns how many were removed."""
        async with self._lock:
            removed = self._drop_labels(list(self._owner_labels.get(owner_id, [])))
            if removed:
                await self._persist(graph=False)
        if removed:
            log.debug("vectors.owner_removed", owner_id=owner_id, removed=removed)
        return removed

    async def clear(self) -> None:
        """Discard everything and start a fresh graph."""
        async with self._lock:
            self._graph = self._new_graph()
            self._documents.clear()
            self._owner_labels.clear()
            self._masked.clear()
            self._next_label = 0
            self._inserts_since_sync = 0
            self._usable = True
            self._initialized = True
            await self._persist(graph=True)
        log.info("vectors.cleared", index=self.config.index_name)

    async def flush(self) -> None:
        """Persist graph and mapping now."""
        async with self._lock:
            await self._persist(graph=True)

    async def cleanup(self) -> int:
        """Run capacity and retention eviction outside an insert."""
        async with self._lock:
            return await self._cleanup()

    def _drop_labels(self, labels: list[int]) -> int:
        removed = 0
        for label in labels:
            document = self._documents.pop(label, None)
            if document is None:
                continue
            removed += 1
            self._masked.add(label)
            owned = self._owner_labels.get(document.owner_id)
            if owned is not None:
                owned[:] = [x for x in owned if x != label]
                if not owned:
                    del self._owner_labels[document.owner_id]
        return removed

    async def _cleanup(self) -> int:
        removed = 0
        capacity = self.config.capacity
        if len(self._documents) > capacity:
            target = math.floor(capacity * (1 - CAPACITY_EVICT_FRACTION))
            count = max(
                math.floor(capacity * CAPACITY_EVICT_FRACTION), len(self._documents) - target, 1
            )
            by_age = sorted(self._documents, key=lambda lb: (self._documents[lb].timestamp, lb))
            removed += self._drop_labels(by_age[:count])
            log.info("vectors.capacity_cleanup", removed=removed, remaining=len(self._documents))

        cutoff = int(self._clock() * 1000 - self.config.retention_days * _MS_PER_DAY)
        expired = [lb for lb, doc in self._documents.items() if doc.timestamp < cutoff]
        if expired:
            dropped = self._drop_labels(expired)
            removed += dropped
            log.info("vectors.retention_cleanup", removed=dropped, cutoff_ms=cutoff)

        if removed:
            await self._persist(graph=False)
        return removed

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    async def search(
        self, query_embedding: Sequence[float] | np.ndarray[Any, Any], top_k: int
    ) -> list[SearchHit]:
        """k-NN over live documents, best first."""
        query = self._validate(query_embedding).reshape(1, -1)
        if top_k <= 0 or not self._usable:
            return []
        if self._graph.ntotal == 0 or not self._documents:
            return []

        k = min(int(self._graph.ntotal), top_k * 2 + len(self._masked))
        self._hnsw().hnsw.efSearch = max(self.config.ef_search, k)
        faiss.normalize_L2(query)
        scores, labels = self._graph.search(query, k)

        hits: list[SearchHit] = []
        unresolved: list[int] = []
        for score, raw_label in zip(scores[0], labels[0], strict=True):
            label = int(raw_label)
            if label < 0 or label in self._masked:
                continue
            document = self._documents.get(label)
            if document is None:
                unresolved.append(label)
                continue
            # inner product of unit vectors is the cosine
            similarity = max(-1.0, min(1.0, float(score)))
            hits.append(SearchHit(document=document, similarity=similarity))

        if unresolved:
            err = ConsistencyError.label_mismatch(unresolved)
            log.error("vectors.label_mismatch", **err.to_dict())

        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:top_k]

    def get_owner_documents(self, owner_id: str) -> list[VectorDocument]:
        return [self._documents[lb] for lb in self._owner_labels.get(owner_id, [])]

    def owner_ids(self) -> list[str]:
        return list(self._owner_labels)

    def __len__(self) -> int:
        return len(self._documents)

    def estimate_size_bytes(self) -> int:
        n = len(self._documents)
        mapping_bytes = len(json.dumps(self._mapping_payload())) * 2
        vector_bytes = self.dimension * 4 * n
        overhead = int(vector_bytes * INDEX_OVERHEAD_FRACTION) + INDEX_OVERHEAD_PER_ELEMENT * n
        return mapping_bytes + vector_bytes + overhead

    def stats(self) -> VectorIndexStats:
        return VectorIndexStats(
            total_documents=len(self._documents),
            total_owners=len(self._owner_labels),
            index_size_bytes=self.estimate_size_bytes(),
            graph_entries=int(self._graph.ntotal),
            next_label=self._next_label,
            dimension=self.dimension,
            usable=self._usable,
        )

    # ------------------------------------------------------------------
    # Validation and persistence
    # ------------------------------------------------------------------

    def _validate(self, embedding: Sequence[float] | np.ndarray[Any, Any]) -> np.ndarray[Any, Any]:
        try:
            vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        except (TypeError, ValueError) as e:
            raise ConfigurationError.invalid_vector(str(e)) from e
        if vector.shape[0] != self.dimension:
            raise ConfigurationError.dimension_mismatch(self.dimension, int(vector.shape[0]))
        if not np.all(np.isfinite(vector)):
            raise ConfigurationError.invalid_vector("contains NaN or infinite values")
        if not np.any(vector):
            raise ConfigurationError.invalid_vector("zero vector")
        return np.array(vector, dtype=np.float32)

    def _mapping_payload(self) -> dict[str, Any]:
        return {
            "version": MAPPING_FORMAT_VERSION,
            "dimension": self.dimension,
            "next_label": self._next_label,
            "documents": {str(lb): doc.to_dict() for lb, doc in self._documents.items()},
            "owner_labels": self._owner_labels,
        }

    async def _persist(self, *, graph: bool) -> None:
        mapping = json.dumps(self._mapping_payload()).encode()
        await self._write(self.mapping_key, mapping)
        if graph:
            blob = faiss.serialize_index(self._graph).tobytes()
            await self._write(self.graph_key, blob)
            self._inserts_since_sync = 0

    async def _read(self, key: str) -> bytes | None:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._store.get, key)
        except PersistenceError as e:
            log.warning("vectors.read_failed", key=key, error=str(e))
            return None

    async def _write(self, key: str, value: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._store.put, key, value)
        except PersistenceError as e:
            # In-memory state stays authoritative; next write retries
            log.warning("vectors.persist_failed", key=key, error=str(e))
