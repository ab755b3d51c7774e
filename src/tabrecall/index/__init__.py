"""Index module - semantic search over open documents.

This module provides:
- Chunking: sentence-aware splitting of page text
- Embedding: ONNX sentence embeddings behind an LRU/frequency memo
- Vector index: faiss HNSW graph with soft deletion, persisted to SQLite

Public API is in `tabrecall.index.ops`:
- ContentIndexer: index, remove, search, rebuild
- SearchResult, IndexStats: result types

Internal implementations are in `tabrecall.index._internal/`.
"""

from tabrecall.index.models import (
    EngineState,
    EngineStatus,
    ExtractedContent,
    IndexStats,
    SearchHit,
    SearchResult,
    TextChunk,
    VectorDocument,
)
from tabrecall.index.ops import ContentIndexer, StaticExtractor, TextExtractor, extract_snippet

__all__ = [
    # Public API (ops.py)
    "ContentIndexer",
    "StaticExtractor",
    "TextExtractor",
    "extract_snippet",
    # Data types
    "EngineState",
    "EngineStatus",
    "ExtractedContent",
    "IndexStats",
    "SearchHit",
    "SearchResult",
    "TextChunk",
    "VectorDocument",
]
