"""Durable key-value blob store for the vector index.

The vector index persists two values per index name: the serialized ANN
graph and the JSON document mapping. Both live in one SQLite table
managed through sqlmodel, with WAL mode so a reader never blocks the
writer.

Writes retry "database is locked" errors with exponential backoff. A
write that still fails raises PersistenceError; the vector index logs it
and keeps serving from memory.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from sqlalchemy import Column, LargeBinary, event
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from tabrecall.core.errors import PersistenceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

log = structlog.get_logger()

# Retry configuration for SQLite busy handling
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.1  # 100ms base
DEFAULT_RETRY_MAX_DELAY = 2.0  # 2s max


class BlobStore(Protocol):
    """Persistent key-value store keyed by string."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class Blob(SQLModel, table=True):
    """One stored value."""

    key: str = Field(primary_key=True)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    updated_at: float = Field(default_factory=time.time)


def _is_database_locked_error(error: Exception) -> bool:
    """Check if error is a SQLite database locked error."""
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


def _configure_pragmas(dbapi_conn: Any, _connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


class SqliteBlobStore:
    """SQLite-backed BlobStore with retry on lock contention."""

    def __init__(
        self,
        db_path: Path,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self.engine = self._create_engine()
        SQLModel.metadata.create_all(self.engine, tables=[Blob.__table__])  # type: ignore[attr-defined]

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        event.listen(engine, "connect", _configure_pragmas)
        return engine

    def get(self, key: str) -> bytes | None:
        try:
            with Session(self.engine) as session:
                row = session.get(Blob, key)
                return bytes(row.value) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError.read_failed(key, str(e)) from e

    def put(self, key: str, value: bytes) -> None:
        def write(session: Session) -> None:
            row = session.get(Blob, key)
            if row is None:
                session.add(Blob(key=key, value=value))
            else:
                row.value = value
                row.updated_at = time.time()
                session.add(row)

        self._write_with_retry(key, write)

    def delete(self, key: str) -> None:
        def remove(session: Session) -> None:
            row = session.get(Blob, key)
            if row is not None:
                session.delete(row)

        self._write_with_retry(key, remove)

    def keys(self) -> list[str]:
        try:
            with Session(self.engine) as session:
                return list(session.exec(select(Blob.key)).all())
        except SQLAlchemyError as e:
            raise PersistenceError.read_failed("*", str(e)) from e

    def close(self) -> None:
        self.engine.dispose()

    def _write_with_retry(self, key: str, op: Any) -> None:
        for attempt in range(self._max_retries + 1):  # +1 for initial attempt
            try:
                with Session(self.engine) as session:
                    op(session)
                    session.commit()
                return
            except OperationalError as e:
                if _is_database_locked_error(e) and attempt < self._max_retries:
                    delay = min(
                        self._retry_base_delay * (2**attempt),
                        self._retry_max_delay,
                    )
                    log.warning(
                        "store.busy_retry",
                        key=key,
                        attempt=attempt + 1,
                        max_retries=self._max_retries,
                        delay_sec=delay,
                    )
                    time.sleep(delay)
                    continue
                log.error("store.write_failed", key=key, error=str(e))
                raise PersistenceError.write_failed(key, str(e)) from e
            except SQLAlchemyError as e:
                log.error("store.write_failed", key=key, error=str(e))
                raise PersistenceError.write_failed(key, str(e)) from e


class InMemoryBlobStore:
    """Dict-backed BlobStore for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
