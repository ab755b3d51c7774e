"""Config module exports."""

from tabrecall.config.loader import load_config
from tabrecall.config.models import (
    IndexerConfig,
    LoggingConfig,
    ModelConfig,
    ProxyConfig,
    StorageConfig,
    TabRecallConfig,
    VectorIndexConfig,
)

__all__ = [
    "load_config",
    "TabRecallConfig",
    "IndexerConfig",
    "LoggingConfig",
    "ModelConfig",
    "ProxyConfig",
    "StorageConfig",
    "VectorIndexConfig",
]
