"""TabRecall daemon - shared engine host, proxy and document lifecycle."""

from tabrecall.daemon.lifecycle import DocumentLifecycle, IndexContext
from tabrecall.daemon.proxy import (
    EngineHost,
    InProcessChannel,
    RemoteEngineProxy,
    SubprocessChannel,
)

__all__ = [
    "DocumentLifecycle",
    "EngineHost",
    "IndexContext",
    "InProcessChannel",
    "RemoteEngineProxy",
    "SubprocessChannel",
]
