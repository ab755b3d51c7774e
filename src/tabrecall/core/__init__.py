"""Core module exports."""

from tabrecall.core.errors import (
    ConfigurationError,
    ConsistencyError,
    ErrorCode,
    ExtractionFailure,
    InternalError,
    PersistenceError,
    ResourceNotReadyError,
    SearchError,
    TabRecallError,
)
from tabrecall.core.logging import (
    clear_operation_id,
    configure_logging,
    get_logger,
    get_operation_id,
    set_operation_id,
)

__all__ = [
    # Errors
    "ErrorCode",
    "TabRecallError",
    "ConfigurationError",
    "ConsistencyError",
    "ExtractionFailure",
    "InternalError",
    "PersistenceError",
    "ResourceNotReadyError",
    "SearchError",
    # Logging
    "clear_operation_id",
    "configure_logging",
    "get_logger",
    "get_operation_id",
    "set_operation_id",
]
