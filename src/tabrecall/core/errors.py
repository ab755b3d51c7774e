"""TabRecall error types with typed error codes.

Error code ranges:
- 2xxx: Configuration (bad config, dimension mismatch, invalid vectors)
- 3xxx: Index (persistence, consistency)
- 4xxx: Engine (model not ready, load failure, transport)
- 5xxx: Extraction
- 6xxx: Search
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Configuration (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_DIMENSION_MISMATCH = 2003
    CONFIG_INVALID_VECTOR = 2004
    CONFIG_EMPTY_INPUT = 2005

    # Index (3xxx)
    INDEX_PERSIST_READ_FAILED = 3001
    INDEX_PERSIST_WRITE_FAILED = 3002
    INDEX_DRIFT = 3003
    INDEX_LABEL_MISMATCH = 3004

    # Engine (4xxx)
    ENGINE_NOT_INITIALIZED = 4001
    ENGINE_LOAD_FAILED = 4002
    ENGINE_TRANSPORT_FAILED = 4003

    # Extraction (5xxx)
    EXTRACTION_UNAVAILABLE = 5001

    # Search (6xxx)
    SEARCH_FAILED = 6001

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class TabRecallError(Exception):
    """Base error with structured context for callers and the engine protocol."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'ENGINE_NOT_INITIALIZED')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigurationError(TabRecallError):
    """Invalid configuration or input. Rejected immediately, never retried."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def dimension_mismatch(cls, expected: int, actual: int) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_DIMENSION_MISMATCH,
            message=f"Vector dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )

    @classmethod
    def invalid_vector(cls, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VECTOR,
            message=f"Invalid vector: {reason}",
            details={"reason": reason},
        )

    @classmethod
    def empty_input(cls, what: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_EMPTY_INPUT,
            message=f"{what} must not be empty",
            details={"input": what},
        )


class ResourceNotReadyError(TabRecallError):
    """The model or its host is not usable yet."""

    @classmethod
    def not_initialized(cls, resource: str = "embedding engine") -> "ResourceNotReadyError":
        return cls(
            code=ErrorCode.ENGINE_NOT_INITIALIZED,
            message=f"{resource} not initialized",
            retryable=True,
            details={"resource": resource},
        )

    @classmethod
    def load_failed(cls, model: str, reason: str) -> "ResourceNotReadyError":
        return cls(
            code=ErrorCode.ENGINE_LOAD_FAILED,
            message=f"Failed to load model {model}: {reason}",
            retryable=True,
            details={"model": model, "reason": reason},
        )

    @classmethod
    def transport_failed(cls, reason: str) -> "ResourceNotReadyError":
        return cls(
            code=ErrorCode.ENGINE_TRANSPORT_FAILED,
            message=f"Engine host unreachable: {reason}",
            retryable=True,
            details={"reason": reason},
        )

    @property
    def is_not_initialized(self) -> bool:
        return self.code == ErrorCode.ENGINE_NOT_INITIALIZED


class PersistenceError(TabRecallError):
    """Durable store read/write failure. Callers degrade to in-memory state."""

    @classmethod
    def read_failed(cls, key: str, reason: str) -> "PersistenceError":
        return cls(
            code=ErrorCode.INDEX_PERSIST_READ_FAILED,
            message=f"Failed to read '{key}': {reason}",
            retryable=True,
            details={"key": key, "reason": reason},
        )

    @classmethod
    def write_failed(cls, key: str, reason: str) -> "PersistenceError":
        return cls(
            code=ErrorCode.INDEX_PERSIST_WRITE_FAILED,
            message=f"Failed to write '{key}': {reason}",
            retryable=True,
            details={"key": key, "reason": reason},
        )


class ConsistencyError(TabRecallError):
    """Graph and mapping table disagree."""

    @classmethod
    def drift(cls, graph_count: int, mapping_count: int) -> "ConsistencyError":
        return cls(
            code=ErrorCode.INDEX_DRIFT,
            message=(
                f"Index graph has {graph_count} entries but mapping has {mapping_count}"
            ),
            details={"graph_count": graph_count, "mapping_count": mapping_count},
        )

    @classmethod
    def label_mismatch(cls, labels: list[int]) -> "ConsistencyError":
        return cls(
            code=ErrorCode.INDEX_LABEL_MISMATCH,
            message=f"{len(labels)} search labels have no mapped document",
            details={"labels": labels[:20]},
        )


class ExtractionFailure(TabRecallError):
    """The text extractor could not produce content for a document."""

    @classmethod
    def unavailable(cls, owner_id: str, reason: str) -> "ExtractionFailure":
        return cls(
            code=ErrorCode.EXTRACTION_UNAVAILABLE,
            message=f"No content for document {owner_id}: {reason}",
            details={"owner_id": owner_id, "reason": reason},
        )


class SearchError(TabRecallError):
    """A search that failed, as opposed to one with zero results."""

    @classmethod
    def failed(cls, query: str, reason: str) -> "SearchError":
        return cls(
            code=ErrorCode.SEARCH_FAILED,
            message=f"Search failed: {reason}",
            details={"query": query[:100], "reason": reason},
        )


class InternalError(TabRecallError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )


_CLASS_BY_RANGE: dict[int, type[TabRecallError]] = {
    2: ConfigurationError,
    4: ResourceNotReadyError,
    5: ExtractionFailure,
    6: SearchError,
    9: InternalError,
}


def error_from_payload(
    code: int, message: str, retryable: bool = False, details: dict[str, Any] | None = None
) -> TabRecallError:
    """Rebuild a typed error from its serialized form.

    Used on the proxy side of the engine protocol.
    """
    try:
        error_code = ErrorCode(code)
    except ValueError:
        error_code = ErrorCode.INTERNAL_ERROR
    if error_code in (ErrorCode.INDEX_DRIFT, ErrorCode.INDEX_LABEL_MISMATCH):
        cls: type[TabRecallError] = ConsistencyError
    elif error_code.value // 1000 == 3:
        cls = PersistenceError
    else:
        cls = _CLASS_BY_RANGE.get(error_code.value // 1000, InternalError)
    return cls(code=error_code, message=message, retryable=retryable, details=details or {})
