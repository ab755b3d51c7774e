"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (TABRECALL__SECTION__KEY)
3. YAML file (--config path, or ~/.config/tabrecall/config.yaml)
4. Built-in defaults (this file)

Environment Variable Format:
    TABRECALL__<SECTION>__<KEY>=<VALUE>

Examples:
    TABRECALL__LOGGING__LEVEL=DEBUG
    TABRECALL__MODEL__PRESET=multilingual-e5-small
    TABRECALL__VECTORS__CAPACITY=50000
    TABRECALL__INDEXER__SETTLE_DELAY_SEC=1.5
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
ModelVersion = Literal["full", "quantized", "compressed"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        TABRECALL__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every embedding call.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ModelConfig(BaseModel):
    """Embedding model configuration.

    Env vars:
        TABRECALL__MODEL__PRESET: Preset name or local model directory
        TABRECALL__MODEL__VERSION: full, quantized, or compressed ONNX weights
        TABRECALL__MODEL__CACHE_SIZE: Embedding memo capacity
        TABRECALL__MODEL__USE_REMOTE: Host the model in a worker process
    """

    preset: str = Field(
        default="bge-small-en-v1.5",
        description="Model preset name (see `tabrecall models`) or a local directory "
        "containing tokenizer.json and an onnx/ folder.",
    )
    version: ModelVersion = Field(
        default="quantized",
        description="ONNX weight variant. quantized is ~4x smaller with little recall loss.",
    )
    max_length: int = Field(default=256, description="Tokenizer truncation length.")
    cache_size: int = Field(
        default=500,
        description="Embedding memo capacity. Tokenization memo is min(cache_size, 200).",
    )
    batch_size: int = Field(default=16, description="Texts per inference call.")
    threads: int | None = Field(
        default=None,
        description="ONNX intra-op threads. Default: half the CPU count.",
    )
    cache_dir: str | None = Field(
        default=None,
        description="Model download directory. Default: huggingface_hub cache.",
    )
    warmup: bool = Field(
        default=True,
        description="Run a few throwaway embeddings after load so the first real call is fast.",
    )
    use_remote: bool = Field(
        default=False,
        description="Run the model in a separate worker process and talk to it over a pipe.",
    )

    @field_validator("max_length", "cache_size", "batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v

    def resolved_threads(self) -> int:
        return self.threads or max(1, (os.cpu_count() or 2) // 2)


class VectorIndexConfig(BaseModel):
    """ANN index configuration.

    Env vars:
        TABRECALL__VECTORS__CAPACITY: Max documents before capacity cleanup
        TABRECALL__VECTORS__RETENTION_DAYS: Evict documents older than this
        TABRECALL__VECTORS__AUTO_CLEANUP: Run cleanup after each insertion
    """

    capacity: int = Field(
        default=100_000,
        description="Max stored chunks. Exceeding it evicts the oldest down to 80%.",
    )
    m: int = Field(default=48, description="HNSW graph degree.")
    ef_construction: int = Field(default=200, description="HNSW build-time beam width.")
    ef_search: int = Field(default=50, description="HNSW query-time beam width.")
    retention_days: float = Field(default=30.0, description="Document retention window.")
    auto_cleanup: bool = Field(default=True, description="Run cleanup after each insertion.")
    index_name: str = Field(default="tab_content_index", description="Store key prefix.")
    graph_sync_every: int = Field(
        default=10,
        description="Persist the graph every N insertions. The mapping is always persisted.",
    )

    @field_validator("capacity", "m", "ef_construction", "ef_search", "graph_sync_every")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v


class IndexerConfig(BaseModel):
    """Content indexer configuration.

    Env vars:
        TABRECALL__INDEXER__MAX_CHUNKS_PER_PAGE: Chunk cap per document
        TABRECALL__INDEXER__SETTLE_DELAY_SEC: Wait after load before indexing
    """

    max_chunks_per_page: int = Field(default=50, description="Chunk cap per document.")
    skip_duplicates: bool = Field(default=True, description="Skip already indexed (url, title).")
    auto_index: bool = Field(default=True, description="Index on content-stable events.")
    settle_delay_sec: float = Field(default=2.0, description="Delay after content-stable.")
    search_overfetch: int = Field(
        default=50,
        description="Candidates fetched before per-document deduplication.",
    )
    max_words_per_chunk: int = Field(default=80)
    overlap_sentences: int = Field(default=1)
    min_chunk_length: int = Field(default=20)
    include_title: bool = Field(default=True)


class ProxyConfig(BaseModel):
    """Remote engine proxy configuration.

    Env vars:
        TABRECALL__PROXY__MAX_RETRIES: Attempts per request
        TABRECALL__PROXY__RETRY_DELAY_SEC: Linear backoff step
    """

    max_retries: int = Field(default=3, description="Attempts per request.")
    retry_delay_sec: float = Field(default=0.1, description="Backoff is delay * attempt.")
    request_timeout_sec: float = Field(
        default=120.0,
        description="Max wait for one host response. Model download counts against it.",
    )


class StorageConfig(BaseModel):
    """Durable store configuration.

    Env vars:
        TABRECALL__STORAGE__DATA_DIR: Directory holding tabrecall.db
    """

    data_dir: str = Field(
        default="~/.local/share/tabrecall",
        description="Directory for the SQLite blob store.",
    )

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "tabrecall.db"


class TabRecallConfig(BaseModel):
    """Root configuration."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    vectors: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
