"""Data types shared by the chunker, vector index and content indexer.

All records are immutable. Embeddings are stored as plain float lists on
VectorDocument so documents serialize to JSON unchanged; the vector index
keeps its own float32 copy in the ANN graph.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True, slots=True)
class TextChunk:
    """One bounded piece of a document's text."""

    text: str
    source: str
    index: int
    word_count: int


@dataclass(frozen=True, slots=True)
class VectorDocument:
    """A stored chunk with its embedding. Owned by VectorIndex once inserted."""

    id: str
    owner_id: str
    url: str
    title: str
    chunk: TextChunk
    embedding: list[float]
    timestamp: int  # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VectorDocument:
        return cls(
            id=data["id"],
            owner_id=str(data["owner_id"]),
            url=data.get("url", ""),
            title=data.get("title", ""),
            chunk=TextChunk(**data["chunk"]),
            embedding=[float(x) for x in data["embedding"]],
            timestamp=int(data["timestamp"]),
        )


@dataclass(frozen=True, slots=True)
class SearchHit:
    """Raw ANN result: a document and its cosine similarity."""

    document: VectorDocument
    similarity: float


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Search entry point result, one per owning document."""

    owner_id: str
    url: str
    title: str
    similarity: float
    snippet: str
    source: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ExtractedContent:
    """What the text extraction collaborator returns for one document."""

    text_content: str
    title: str = ""
    url: str = ""


@dataclass(frozen=True, slots=True)
class VectorIndexStats:
    """VectorIndex.stats() result."""

    total_documents: int
    total_owners: int
    index_size_bytes: int
    graph_entries: int
    next_label: int
    dimension: int
    usable: bool


@dataclass(frozen=True, slots=True)
class IndexStats:
    """ContentIndexer.get_stats() result."""

    total_documents: int
    total_owners: int
    index_size_bytes: int
    ready: bool
    initializing: bool
    indexed_pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EngineState(Enum):
    """Embedding engine lifecycle state."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


@dataclass
class EngineStatus:
    """Snapshot of an engine's state, caches and timings."""

    state: EngineState
    model: str
    dimension: int
    last_error: str | None = None
    cache: dict[str, Any] = field(default_factory=dict)
    performance: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.state == EngineState.READY

    @property
    def is_initializing(self) -> bool:
        return self.state == EngineState.INITIALIZING
