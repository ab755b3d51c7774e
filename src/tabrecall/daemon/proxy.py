"""Shared model host and the proxy that talks to it.

One EngineHost owns the single LocalEngine of a process tree. Callers
that should not load the model themselves hold a RemoteEngineProxy, which
speaks the tagged-union protocol over a Channel:

  - InProcessChannel: hands bytes straight to a host in this process
  - SubprocessChannel: a worker process running the host, over a pipe

The proxy retries transient failures (linear backoff). When the host
answers "not initialized" (e.g. the worker was restarted) the proxy sends
an init request first and then resends the original request.
"""

from __future__ import annotations

import asyncio
import multiprocessing
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from typing import Any, Protocol

import numpy as np
import structlog
from pydantic import ValidationError

from tabrecall.config.models import ModelConfig, ProxyConfig
from tabrecall.core.errors import ResourceNotReadyError, TabRecallError
from tabrecall.daemon.protocol import (
    BatchEmbedRequest,
    BatchEmbedResponse,
    EmbedRequest,
    EmbedResponse,
    InitRequest,
    InitResponse,
    SimilarityBatchRequest,
    SimilarityBatchResponse,
    StatusPayload,
    StatusRequest,
    StatusResponse,
    decode_request,
    decode_response,
    encode,
    error_response,
)
from tabrecall.index._internal.embedding import Embedding, LocalEngine
from tabrecall.index._internal.model import resolve_preset
from tabrecall.index.models import EngineState, EngineStatus

log = structlog.get_logger()

EngineFactory = Callable[[ModelConfig], LocalEngine]

# ===================================================================
# Host
# ===================================================================


class EngineHost:
    """Answers protocol requests with one LocalEngine."""

    def __init__(
        self,
        config: ModelConfig | None = None,
        *,
        engine_factory: EngineFactory = LocalEngine,
    ) -> None:
        self._factory = engine_factory
        self.engine = engine_factory(config or ModelConfig())

    async def handle(self, request: Any) -> Any:
        try:
            if isinstance(request, InitRequest):
                if request.model is not None and request.model != self.engine.config:
                    log.info("host.model_changed", model=request.model.preset)
                    await self.engine.dispose()
                    self.engine = self._factory(request.model)
                await self.engine.initialize()
                status = await self.engine.get_status()
                return InitResponse(status=StatusPayload.from_status(status))
            if isinstance(request, EmbedRequest):
                vector = await self.engine.get_embedding(request.text)
                return EmbedResponse(embedding=vector.tolist())
            if isinstance(request, BatchEmbedRequest):
                vectors = await self.engine.get_embeddings_batch(request.texts)
                return BatchEmbedResponse(embeddings=[v.tolist() for v in vectors])
            if isinstance(request, SimilarityBatchRequest):
                scores = await self.engine.compute_similarity_batch(request.pairs)
                return SimilarityBatchResponse(similarities=scores)
            if isinstance(request, StatusRequest):
                status = await self.engine.get_status()
                return StatusResponse(status=StatusPayload.from_status(status))
        except Exception as e:
            if not isinstance(e, TabRecallError):
                log.error("host.request_failed", request=request.type, error=str(e))
            return error_response(request.type, e)
        return error_response(None, ValueError(f"Unknown request: {request!r}"))

    async def handle_raw(self, raw: bytes) -> bytes:
        try:
            request = decode_request(raw)
        except ValidationError as e:
            log.warning("host.invalid_request", error=str(e))
            return encode(error_response(None, e))
        return encode(await self.handle(request))

    async def close(self) -> None:
        await self.engine.dispose()


# ===================================================================
# Channels
# ===================================================================


class Channel(Protocol):
    async def send(self, raw: bytes) -> bytes: ...

    async def close(self) -> None: ...


@dataclass
class InProcessChannel:
    """Direct channel to a host living in this process."""

    host: EngineHost

    async def send(self, raw: bytes) -> bytes:
        return await self.host.handle_raw(raw)

    async def close(self) -> None:
        return None


def _serve(conn: Connection, config_json: str) -> None:
    """Worker process entry point: answer requests until the pipe closes."""
    config = ModelConfig.model_validate_json(config_json)

    async def loop_forever() -> None:
        host = EngineHost(config)
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    raw = await loop.run_in_executor(None, conn.recv_bytes)
                except (EOFError, OSError):
                    break
                conn.send_bytes(await host.handle_raw(raw))
        finally:
            await host.close()

    asyncio.run(loop_forever())


@dataclass
class SubprocessChannel:
    """Channel to an EngineHost in a spawned worker process.

    The worker is started lazily and restarted if it dies; a fresh worker
    reports "not initialized" and the proxy re-runs the init handshake.
    """

    config: ModelConfig
    timeout_sec: float = 120.0

    _process: Any = field(default=None, init=False)
    _conn: Connection | None = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _executor: ThreadPoolExecutor = field(
        default_factory=lambda: ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="tabrecall-channel"
        ),
        init=False,
    )

    def _ensure_worker(self) -> Connection:
        if self._process is not None and self._process.is_alive() and self._conn is not None:
            return self._conn
        if self._process is not None:
            log.warning("channel.worker_restarting", exitcode=self._process.exitcode)
        ctx = multiprocessing.get_context("spawn")
        parent, child = ctx.Pipe()
        process = ctx.Process(
            target=_serve,
            args=(child, self.config.model_dump_json()),
            name="tabrecall-engine-host",
            daemon=True,
        )
        process.start()
        child.close()
        self._process, self._conn = process, parent
        log.info("channel.worker_started", pid=process.pid)
        return parent

    def _roundtrip(self, raw: bytes) -> bytes:
        with self._lock:
            conn = self._ensure_worker()
            conn.send_bytes(raw)
            if not conn.poll(self.timeout_sec):
                # A late reply would desynchronize the pipe; start over with a new worker
                self._process.terminate()
                self._process, self._conn = None, None
                raise TimeoutError(f"no reply within {self.timeout_sec}s")
            return conn.recv_bytes()

    async def send(self, raw: bytes) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._roundtrip, raw)

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            if self._process is not None:
                self._process.join(timeout=5)
                if self._process.is_alive():
                    self._process.terminate()
                self._process = None
        self._executor.shutdown(wait=False)


# ===================================================================
# Proxy
# ===================================================================


class RemoteEngineProxy:
    """Embedder that forwards every call to an EngineHost."""

    def __init__(
        self,
        channel: Channel,
        config: ModelConfig | None = None,
        proxy_config: ProxyConfig | None = None,
    ) -> None:
        self.config = config or ModelConfig()
        self.proxy_config = proxy_config or ProxyConfig()
        self._channel = channel
        self._state = EngineState.UNINITIALIZED
        self._dimension = resolve_preset(self.config.preset).dimension
        self._init_task: asyncio.Task[None] | None = None

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
        if self._state == EngineState.READY:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.get_running_loop().create_task(self._do_initialize())
        await asyncio.shield(self._init_task)

    async def _do_initialize(self) -> None:
        self._state = EngineState.INITIALIZING
        try:
            await self._request(InitRequest(model=self.config))
        except Exception:
            self._state = EngineState.ERROR
            raise

    def _apply_status(self, payload: StatusPayload | None) -> None:
        if payload is None:
            return
        self._state = EngineState(payload.state)
        if payload.dimension:
            self._dimension = payload.dimension

    async def get_embedding(self, text: str) -> Embedding:
        response = await self._request(EmbedRequest(text=text))
        return np.asarray(response.embedding, dtype=np.float32)

    async def get_embeddings_batch(self, texts: Sequence[str]) -> list[Embedding]:
        if not texts:
            return []
        response = await self._request(BatchEmbedRequest(texts=list(texts)))
        return [np.asarray(v, dtype=np.float32) for v in response.embeddings]

    async def compute_similarity(self, text_a: str, text_b: str) -> float:
        return (await self.compute_similarity_batch([(text_a, text_b)]))[0]

    async def compute_similarity_batch(self, pairs: Sequence[tuple[str, str]]) -> list[float]:
        if not pairs:
            return []
        response = await self._request(SimilarityBatchRequest(pairs=list(pairs)))
        return list(response.similarities)

    async def get_status(self) -> EngineStatus:
        response = await self._request(StatusRequest())
        return response.status.to_status()

    async def dispose(self) -> None:
        await self._channel.close()
        self._state = EngineState.UNINITIALIZED

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _exchange(self, request: Any) -> Any:
        try:
            raw = await asyncio.wait_for(
                self._channel.send(encode(request)),
                timeout=self.proxy_config.request_timeout_sec,
            )
            response = decode_response(raw)
        except (OSError, EOFError, TimeoutError, ValidationError) as e:
            raise ResourceNotReadyError.transport_failed(str(e)) from e
        if isinstance(response, (InitResponse, StatusResponse)):
            self._apply_status(response.status)
        return response

    async def _force_init(self) -> None:
        response = await self._exchange(InitRequest(model=self.config))
        if not response.ok:
            raise response.error.to_error()

    async def _request(self, request: Any) -> Any:
        attempts = max(1, self.proxy_config.max_retries)
        last_error: TabRecallError | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self._exchange(request)
                if response.ok:
                    return response
                error = response.error.to_error()
                if (
                    isinstance(error, ResourceNotReadyError)
                    and error.is_not_initialized
                    and not isinstance(request, InitRequest)
                ):
                    log.warning("proxy.reinitializing", request=request.type, attempt=attempt)
                    self._state = EngineState.INITIALIZING
                    await self._force_init()
                    response = await self._exchange(request)
                    if response.ok:
                        return response
                    error = response.error.to_error()
                if not error.retryable:
                    raise error
                last_error = error
            except ResourceNotReadyError as e:
                last_error = e

            if attempt < attempts:
                delay = self.proxy_config.retry_delay_sec * attempt
                log.warning(
                    "proxy.retry",
                    request=request.type,
                    attempt=attempt,
                    max_retries=attempts,
                    delay_sec=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        log.error("proxy.request_failed", request=request.type, error=str(last_error))
        raise last_error


