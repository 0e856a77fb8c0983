"""Database engine and bulk writer.

This module provides:
- Database: Connection manager with WAL mode for concurrent readers
- BulkWriter: Core-SQL bulk writes for chunks, postings and embeddings
- Retry logic for SQLite busy timeout handling

Writes are serialized through a single process-wide lock per database so the
indexing pipeline's worker threads never race each other into SQLITE_BUSY.
Reads go through ``fetch_all`` / ``session`` and never take the lock.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import bindparam, event, text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

if TYPE_CHECKING:
    from sqlalchemy import Engine, Row

logger = structlog.get_logger()

# Retry configuration for SQLite busy handling
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.1  # 100ms base
DEFAULT_RETRY_MAX_DELAY = 2.0  # 2s max
DEFAULT_BUSY_TIMEOUT_MS = 30000

# SQLite caps host parameters per statement; stay well below it
_IN_CLAUSE_BATCH = 500


def _is_database_locked_error(error: Exception) -> bool:
    """Check if error is a SQLite database locked error."""
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


def batched(items: Sequence[Any], size: int = _IN_CLAUSE_BATCH) -> Generator[Sequence[Any], None, None]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class Database:
    """SQLite connection manager with WAL mode for concurrent access.

    Includes retry logic with exponential backoff for handling
    SQLite busy timeouts during concurrent writes.
    """

    def __init__(
        self,
        db_path: Path,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._busy_timeout_ms = busy_timeout_ms
        self._write_lock = threading.RLock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = self._create_engine()

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        busy_timeout = self._busy_timeout_ms

        def _on_connect(dbapi_conn: Any, _connection_record: Any) -> None:
            _configure_pragmas(dbapi_conn, busy_timeout)

        event.listen(engine, "connect", _on_connect)
        return engine

    def create_all(self) -> None:
        """Create all tables from SQLModel metadata."""
        # Register table classes on the metadata before creating
        import codescout.index.models  # noqa: F401

        SQLModel.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """ORM session for low-volume reads."""
        with Session(self.engine) as session:
            yield session

    def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[Row[Any]]:
        """Run a read query and materialize every row."""
        with self.engine.connect() as conn:
            return list(conn.execute(text(sql), params or {}).fetchall())

    def fetch_in(
        self,
        sql: str,
        values: Sequence[Any],
        params: dict[str, Any] | None = None,
    ) -> list[Row[Any]]:
        """Run *sql* once per batch of *values*, bound to the ``:values`` IN list."""
        if not values:
            return []
        stmt = text(sql).bindparams(bindparam("values", expanding=True))
        rows: list[Row[Any]] = []
        with self.engine.connect() as conn:
            for batch in batched(list(values)):
                rows.extend(conn.execute(stmt, {**(params or {}), "values": list(batch)}))
        return rows

    @contextmanager
    def bulk_writer(self) -> Generator[BulkWriter, None, None]:
        """
        Bulk writer for high-volume writes.

        Auto-commits on successful exit, rolls back on exception.
        """
        with self._write_lock:
            writer = self._open_writer()
            try:
                yield writer
                writer.commit()
            except Exception:
                writer.rollback()
                raise
            finally:
                writer.close()

    def _open_writer(self) -> BulkWriter:
        for attempt in range(self._max_retries + 1):
            try:
                return BulkWriter(self.engine)
            except OperationalError as e:
                if _is_database_locked_error(e) and attempt < self._max_retries:
                    self._backoff(attempt, self._max_retries)
                    continue
                raise
        raise RuntimeError("unreachable")

    def _backoff(self, attempt: int, retries: int) -> None:
        delay = min(self._retry_base_delay * (2**attempt), self._retry_max_delay)
        logger.warning(
            "sqlite_busy_retry",
            attempt=attempt + 1,
            max_retries=retries,
            delay_sec=delay,
        )
        time.sleep(delay)

    def checkpoint(self, mode: str = "PASSIVE") -> None:
        """Run WAL checkpoint.

        Args:
            mode: PASSIVE (default), FULL, RESTART, or TRUNCATE
        """
        valid_modes = {"PASSIVE", "FULL", "RESTART", "TRUNCATE"}
        if mode.upper() not in valid_modes:
            raise ValueError(f"Invalid checkpoint mode: {mode}. Must be one of {valid_modes}")

        with self.engine.connect() as conn:
            conn.execute(text(f"PRAGMA wal_checkpoint({mode.upper()})"))
            logger.debug("wal_checkpoint_completed", mode=mode)


def _configure_pragmas(dbapi_conn: Any, busy_timeout_ms: int) -> None:
    """Configure SQLite for concurrent access and performance."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
    cursor.close()


class BulkWriter:
    """High-performance bulk writes using Core SQL, bypassing ORM overhead."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.conn = engine.connect()
        self.transaction = self.conn.begin()

    def insert_many(self, model_class: type[SQLModel], records: list[dict[str, Any]]) -> int:
        """Bulk insert records into table, returning count inserted."""
        if not records:
            return 0

        table = model_class.__table__  # type: ignore[attr-defined]
        self.conn.execute(table.insert(), records)
        return len(records)

    def insert_returning_id(self, model_class: type[SQLModel], record: dict[str, Any]) -> int:
        """Insert one row and return its generated primary key."""
        table = model_class.__table__  # type: ignore[attr-defined]
        result = self.conn.execute(table.insert(), record)
        return int(result.inserted_primary_key[0])

    def upsert_many(
        self,
        model_class: type[SQLModel],
        records: list[dict[str, Any]],
        conflict_columns: list[str],
        update_columns: list[str],
    ) -> int:
        """Bulk upsert (insert or update on conflict), returning count processed."""
        if not records:
            return 0

        table = model_class.__table__  # type: ignore[attr-defined]

        conflict_cols = ", ".join(conflict_columns)
        update_sets = ", ".join(f"{col} = excluded.{col}" for col in update_columns)

        columns = list(records[0].keys())
        col_names = ", ".join(columns)
        placeholders = ", ".join(f":{col}" for col in columns)

        sql = f"""
            INSERT INTO {table.name} ({col_names})
            VALUES ({placeholders})
            ON CONFLICT ({conflict_cols})
            DO UPDATE SET {update_sets}
        """
        self.conn.execute(text(sql), records)
        return len(records)

    def increment_many(
        self,
        model_class: type[SQLModel],
        key_column: str,
        counter_column: str,
        deltas: dict[Any, int],
    ) -> int:
        """Add each delta to ``counter_column`` of the row keyed by ``key_column``.

        Missing rows are created with the delta as their initial value.
        """
        if not deltas:
            return 0

        table = model_class.__table__  # type: ignore[attr-defined]
        sql = f"""
            INSERT INTO {table.name} ({key_column}, {counter_column})
            VALUES (:key, :delta)
            ON CONFLICT ({key_column})
            DO UPDATE SET {counter_column} = {counter_column} + excluded.{counter_column}
        """
        self.conn.execute(text(sql), [{"key": k, "delta": d} for k, d in deltas.items()])
        return len(deltas)

    def delete_where(
        self,
        model_class: type[SQLModel],
        condition: str,
        params: dict[str, Any],
    ) -> int:
        """Bulk delete rows matching condition, returning count affected."""
        table = model_class.__table__  # type: ignore[attr-defined]
        sql = f"DELETE FROM {table.name} WHERE {condition}"
        result = self.conn.execute(text(sql), params)
        return int(result.rowcount)

    def delete_in(self, model_class: type[SQLModel], column: str, values: Sequence[Any]) -> int:
        """Delete rows whose *column* is in *values*, batching the IN list."""
        if not values:
            return 0
        table = model_class.__table__  # type: ignore[attr-defined]
        stmt = text(f"DELETE FROM {table.name} WHERE {column} IN :values").bindparams(
            bindparam("values", expanding=True)
        )
        total = 0
        for batch in batched(list(values)):
            total += int(self.conn.execute(stmt, {"values": list(batch)}).rowcount)
        return total

    def update_where(
        self,
        model_class: type[SQLModel],
        updates: dict[str, Any],
        condition: str,
        params: dict[str, Any],
    ) -> int:
        """
        Bulk update with condition.

        Returns:
            Number of rows affected
        """
        table = model_class.__table__  # type: ignore[attr-defined]
        set_clause = ", ".join(f"{k} = :upd_{k}" for k in updates)
        sql = f"UPDATE {table.name} SET {set_clause} WHERE {condition}"
        update_params = {f"upd_{k}": v for k, v in updates.items()}
        result = self.conn.execute(text(sql), {**update_params, **params})
        return int(result.rowcount)

    def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[Row[Any]]:
        """Read inside the write transaction (sees uncommitted rows)."""
        return list(self.conn.execute(text(sql), params or {}).fetchall())

    def commit(self) -> None:
        """Commit the current transaction."""
        self.transaction.commit()

    def rollback(self) -> None:
        """Rollback the current transaction."""
        self.transaction.rollback()

    def close(self) -> None:
        """Close the connection."""
        self.conn.close()
