"""Request/response protocol between RemoteEngineProxy and EngineHost.

Every message is a pydantic model tagged by ``type``; requests and
responses are validated at the boundary with TypeAdapters over
discriminated unions, so a malformed message fails loudly instead of
reaching the engine. Wire format is JSON bytes.

Responses always carry ``ok`` and, when ``ok`` is false, an
``ErrorPayload`` that rebuilds into the matching TabRecallError subclass.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from tabrecall.config.models import ModelConfig
from tabrecall.core.errors import InternalError, TabRecallError, error_from_payload
from tabrecall.index.models import EngineState, EngineStatus

# ===================================================================
# Requests
# ===================================================================


class InitRequest(BaseModel):
    type: Literal["init"] = "init"
    model: ModelConfig | None = None


class EmbedRequest(BaseModel):
    type: Literal["embed"] = "embed"
    text: str


class BatchEmbedRequest(BaseModel):
    type: Literal["batch_embed"] = "batch_embed"
    texts: list[str]


class SimilarityBatchRequest(BaseModel):
    type: Literal["similarity_batch"] = "similarity_batch"
    pairs: list[tuple[str, str]]


class StatusRequest(BaseModel):
    type: Literal["status"] = "status"


EngineRequest = Annotated[
    InitRequest | EmbedRequest | BatchEmbedRequest | SimilarityBatchRequest | StatusRequest,
    Field(discriminator="type"),
]

# ===================================================================
# Responses
# ===================================================================


class ErrorPayload(BaseModel):
    code: int
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: BaseException) -> ErrorPayload:
        if not isinstance(error, TabRecallError):
            error = InternalError.unexpected(str(error), error_type=type(error).__name__)
        return cls(
            code=error.code.value,
            message=error.message,
            retryable=error.retryable,
            details={k: _jsonable(v) for k, v in error.details.items()},
        )

    def to_error(self) -> TabRecallError:
        return error_from_payload(self.code, self.message, self.retryable, self.details)


class StatusPayload(BaseModel):
    state: str
    model: str
    dimension: int
    last_error: str | None = None
    cache: dict[str, Any] = Field(default_factory=dict)
    performance: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_status(cls, status: EngineStatus) -> StatusPayload:
        return cls(
            state=status.state.value,
            model=status.model,
            dimension=status.dimension,
            last_error=status.last_error,
            cache=status.cache,
            performance=status.performance,
        )

    def to_status(self) -> EngineStatus:
        return EngineStatus(
            state=EngineState(self.state),
            model=self.model,
            dimension=self.dimension,
            last_error=self.last_error,
            cache=self.cache,
            performance=self.performance,
        )


class _Response(BaseModel):
    ok: bool = True
    error: ErrorPayload | None = None


class InitResponse(_Response):
    type: Literal["init"] = "init"
    status: StatusPayload | None = None


class EmbedResponse(_Response):
    type: Literal["embed"] = "embed"
    embedding: list[float] | None = None


class BatchEmbedResponse(_Response):
    type: Literal["batch_embed"] = "batch_embed"
    embeddings: list[list[float]] | None = None


class SimilarityBatchResponse(_Response):
    type: Literal["similarity_batch"] = "similarity_batch"
    similarities: list[float] | None = None


class StatusResponse(_Response):
    type: Literal["status"] = "status"
    status: StatusPayload | None = None


class ErrorResponse(_Response):
    """Reply to a request that could not be parsed at all."""

    type: Literal["error"] = "error"
    ok: bool = False


EngineResponse = Annotated[
    InitResponse
    | EmbedResponse
    | BatchEmbedResponse
    | SimilarityBatchResponse
    | StatusResponse
    | ErrorResponse,
    Field(discriminator="type"),
]

_RESPONSE_FOR: dict[str, type[_Response]] = {
    "init": InitResponse,
    "embed": EmbedResponse,
    "batch_embed": BatchEmbedResponse,
    "similarity_batch": SimilarityBatchResponse,
    "status": StatusResponse,
}

request_adapter: TypeAdapter[Any] = TypeAdapter(EngineRequest)
response_adapter: TypeAdapter[Any] = TypeAdapter(EngineResponse)


def encode(message: BaseModel) -> bytes:
    return message.model_dump_json().encode()


def decode_request(raw: bytes) -> Any:
    """Parse a request. Raises pydantic.ValidationError on malformed input."""
    return request_adapter.validate_json(raw)


def decode_response(raw: bytes) -> Any:
    """Parse a response. Raises pydantic.ValidationError on malformed input."""
    return response_adapter.validate_json(raw)


def error_response(request_type: str | None, error: BaseException) -> _Response:
    """Build the failure response matching a request type."""
    cls = _RESPONSE_FOR.get(request_type or "", ErrorResponse)
    return cls(ok=False, error=ErrorPayload.from_error(error))


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


__all__ = [
    "BatchEmbedRequest",
    "BatchEmbedResponse",
    "EmbedRequest",
    "EmbedResponse",
    "EngineRequest",
    "EngineResponse",
    "ErrorPayload",
    "ErrorResponse",
    "InitRequest",
    "InitResponse",
    "SimilarityBatchRequest",
    "SimilarityBatchResponse",
    "StatusPayload",
    "StatusRequest",
    "StatusResponse",
    "decode_request",
    "decode_response",
    "encode",
    "error_response",
]
