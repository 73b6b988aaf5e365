"""SQLite storage with a fixed-size connection pool, query metrics and transactions."""

from __future__ import annotations

import collections
import contextlib
import dataclasses
import os
import queue
import re
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pubdatahub.models import PoolStats, ProgressInfo, QueryMetrics, QueryResult, StorageStats

ProgressCallback = Callable[[str, ProgressInfo], None]

DATABASE_FILENAME = "pubdatahub.sqlite"
CONNECTION_TIMEOUT_SECONDS = 30.0
SLOW_QUERY_THRESHOLD = timedelta(seconds=1)
_WAIT_TIME_HISTORY = 1000

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CONNECTION_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA cache_size=10000",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=30000",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id INTEGER PRIMARY KEY,
    type TEXT NOT NULL,
    by TEXT,
    time INTEGER,
    text TEXT,
    dead BOOLEAN DEFAULT FALSE,
    deleted BOOLEAN DEFAULT FALSE,
    parent INTEGER,
    kids TEXT,
    url TEXT,
    score INTEGER,
    title TEXT,
    descendants INTEGER,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS job_progress (
    job_id TEXT PRIMARY KEY,
    current_count INTEGER DEFAULT 0,
    total_count INTEGER DEFAULT 0,
    last_processed_id INTEGER,
    status TEXT DEFAULT 'running',
    data_source TEXT,
    started_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    completed_at DATETIME
);

CREATE TABLE IF NOT EXISTS query_cache (
    query_hash TEXT PRIMARY KEY,
    query_text TEXT NOT NULL,
    result_data TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    expires_at DATETIME NOT NULL,
    hit_count INTEGER DEFAULT 0,
    last_accessed DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS download_metadata (
    key TEXT PRIMARY KEY,
    value TEXT,
    data_source TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS batch_status (
    batch_start INTEGER,
    batch_end INTEGER,
    batch_size INTEGER,
    data_source TEXT,
    completed BOOLEAN DEFAULT FALSE,
    items_downloaded INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    completed_at DATETIME,
    PRIMARY KEY (batch_start, batch_end, data_source)
);

CREATE INDEX IF NOT EXISTS idx_items_type_score ON items(type, score DESC);
CREATE INDEX IF NOT EXISTS idx_items_by_time ON items(by, time DESC);
CREATE INDEX IF NOT EXISTS idx_items_time_type ON items(time DESC, type);
CREATE INDEX IF NOT EXISTS idx_items_parent_time ON items(parent, time DESC);
CREATE INDEX IF NOT EXISTS idx_job_progress_status ON job_progress(status);
CREATE INDEX IF NOT EXISTS idx_job_progress_data_source ON job_progress(data_source);
CREATE INDEX IF NOT EXISTS idx_query_cache_expires ON query_cache(expires_at);
CREATE INDEX IF NOT EXISTS idx_batch_status_completed ON batch_status(completed, data_source);
"""


class StorageError(Exception):
    """Raised when a storage operation fails."""


def _ns_to_timedelta(nanoseconds: int) -> timedelta:
    return timedelta(microseconds=nanoseconds / 1000)


def _quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return f'"{name}"'


def _record_as_mapping(data: Any) -> Mapping[str, Any]:
    if isinstance(data, Mapping):
        return data
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return dataclasses.asdict(data)
    raise TypeError(f"cannot insert record of type {type(data).__name__}")


def _insert_statement(table: str, record: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not record:
        raise ValueError("cannot insert an empty record")
    columns = ", ".join(_quote_identifier(column) for column in record)
    placeholders = ", ".join("?" for _ in record)
    sql = f"INSERT INTO {_quote_identifier(table)} ({columns}) VALUES ({placeholders})"
    return sql, list(record.values())


class Transaction:
    """A transaction on one pooled connection; the connection returns to the pool when it ends."""

    def __init__(self, storage: SQLiteStorage, conn: sqlite3.Connection) -> None:
        self._storage = storage
        self._conn: sqlite3.Connection | None = conn

    def _active(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("transaction has already been committed or rolled back")
        return self._conn

    def execute(self, query: str, *args: Any) -> sqlite3.Cursor:
        """Run a statement inside the transaction and return its cursor."""
        try:
            return self._active().execute(query, args)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to execute statement: {exc}") from exc

    def query(self, query: str, *args: Any) -> list[tuple[Any, ...]]:
        """Run a query inside the transaction and return all rows."""
        return self.execute(query, *args).fetchall()

    def query_row(self, query: str, *args: Any) -> tuple[Any, ...] | None:
        """Run a query inside the transaction and return its first row, if any."""
        return self.execute(query, *args).fetchone()

    def _finish(self, statement: str) -> None:
        conn = self._active()
        self._conn = None
        try:
            conn.execute(statement)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to {statement.lower()} transaction: {exc}") from exc
        finally:
            self._storage.release_connection(conn)

    def commit(self) -> None:
        """Commit the transaction."""
        self._finish("COMMIT")

    def rollback(self) -> None:
        """Roll the transaction back; does nothing once it has ended."""
        if self._conn is None:
            return
        self._finish("ROLLBACK")

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self._conn is not None:
            self.commit()
        else:
            self.rollback()


class SQLiteStorage:
    """Thread-safe SQLite storage backed by a fixed pool of connections."""

    def __init__(self, max_connections: int) -> None:
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.max_connections = max_connections
        self._db_path: Path | None = None
        self._pool: queue.Queue[sqlite3.Connection] = queue.Queue(maxsize=max_connections)
        self._closed = False
        self._state_lock = threading.Lock()

        self._pool_lock = threading.Lock()
        self._total_requests = 0
        self._connection_timeouts = 0
        self._wait_times: collections.deque[int] = collections.deque(maxlen=_WAIT_TIME_HISTORY)

        self._metrics_lock = threading.Lock()
        self._total_queries = 0
        self._total_latency_ns = 0
        self._slow_queries = 0
        self._active_queries = 0
        self._cache_hits = 0
        self._cache_misses = 0
        self._last_slow_query = ""
        self._last_slow_query_time: datetime | None = None

        self._callbacks_lock = threading.Lock()
        self._progress_callbacks: dict[str, ProgressCallback] = {}

    @property
    def db_path(self) -> Path | None:
        """Path of the database file, once initialized."""
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    def initialize(self, storage_path: str | os.PathLike[str]) -> None:
        """Create the storage directory, open the pool and apply the schema."""
        if self._closed:
            raise StorageError("storage is closed")
        if self._db_path is not None:
            raise StorageError("storage is already initialized")
        directory = Path(storage_path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"failed to create storage directory: {exc}") from exc

        self._db_path = directory / DATABASE_FILENAME
        try:
            self._fill_pool()
        except StorageError as exc:
            raise StorageError(f"failed to initialize connection pool: {exc}") from exc
        try:
            self._migrate()
        except (StorageError, sqlite3.Error) as exc:
            raise StorageError(f"failed to migrate database: {exc}") from exc

    def _fill_pool(self) -> None:
        for index in range(self.max_connections):
            try:
                conn = self._create_connection()
            except StorageError as exc:
                raise StorageError(f"failed to create connection {index}: {exc}") from exc
            self._pool.put_nowait(conn)

    def _create_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                str(self._db_path),
                timeout=CONNECTION_TIMEOUT_SECONDS,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise StorageError(f"failed to open database: {exc}") from exc
        try:
            for pragma in _CONNECTION_PRAGMAS:
                conn.execute(pragma)
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            conn.close()
            raise StorageError(f"failed to ping database: {exc}") from exc
        return conn

    def _migrate(self) -> None:
        with self.connection() as conn:
            conn.executescript(_SCHEMA)

    def get_connection(self) -> sqlite3.Connection:
        """Take a connection from the pool, waiting up to 30 seconds."""
        if self._closed:
            raise StorageError("storage is closed")
        with self._pool_lock:
            self._total_requests += 1
        started = time.perf_counter_ns()
        try:
            conn = self._pool.get(timeout=CONNECTION_TIMEOUT_SECONDS)
        except queue.Empty:
            with self._pool_lock:
                self._connection_timeouts += 1
            raise StorageError(
                f"connection timeout after {CONNECTION_TIMEOUT_SECONDS:g} seconds"
            ) from None
        with self._pool_lock:
            self._wait_times.append(time.perf_counter_ns() - started)
        return conn

    def release_connection(self, conn: sqlite3.Connection | None) -> None:
        """Return a connection to the pool, or close it if the pool is closed or full."""
        if conn is None:
            return
        if self._closed:
            conn.close()
            return
        try:
            self._pool.put_nowait(conn)
        except queue.Full:
            conn.close()

    @contextlib.contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a pooled connection for the duration of a with block."""
        conn = self.get_connection()
        try:
            yield conn
        finally:
            self.release_connection(conn)

    def query(self, query: str, *args: Any) -> QueryResult:
        """Run a query and collect its rows."""
        return self.query_concurrent(query, *args)

    def query_concurrent(self, query: str, *args: Any) -> QueryResult:
        """Run a query on a pooled connection, recording its metrics."""
        started = time.perf_counter_ns()
        with self._metrics_lock:
            self._active_queries += 1
        try:
            try:
                conn = self.get_connection()
            except StorageError as exc:
                raise StorageError(f"failed to get connection: {exc}") from exc
            try:
                try:
                    cursor = conn.execute(query, args)
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to execute query: {exc}") from exc
                columns = [column[0] for column in cursor.description or ()]
                try:
                    rows = [
                        [
                            value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
                            for value in row
                        ]
                        for row in cursor
                    ]
                except sqlite3.Error as exc:
                    raise StorageError(f"error iterating rows: {exc}") from exc
            finally:
                self.release_connection(conn)
        finally:
            with self._metrics_lock:
                self._active_queries -= 1

        elapsed_ns = time.perf_counter_ns() - started
        self._record_query_metrics(query, elapsed_ns)
        return QueryResult(
            columns=columns,
            rows=rows,
            count=len(rows),
            duration=_ns_to_timedelta(elapsed_ns),
            from_cache=False,
        )

    def _record_query_metrics(self, query: str, elapsed_ns: int) -> None:
        with self._metrics_lock:
            self._total_queries += 1
            self._total_latency_ns += elapsed_ns
            if _ns_to_timedelta(elapsed_ns) > SLOW_QUERY_THRESHOLD:
                self._slow_queries += 1
                self._last_slow_query = query
                self._last_slow_query_time = datetime.now()

    def insert(self, table: str, data: Any) -> None:
        """Insert one record, given as a mapping or dataclass instance."""
        self.insert_concurrent(table, data)

    def insert_concurrent(self, table: str, data: Any) -> None:
        """Insert one record on a pooled connection."""
        sql, values = _insert_statement(table, _record_as_mapping(data))
        try:
            conn = self.get_connection()
        except StorageError as exc:
            raise StorageError(f"failed to get connection: {exc}") from exc
        try:
            conn.execute(sql, values)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to insert into {table}: {exc}") from exc
        finally:
            self.release_connection(conn)

    def insert_batch(self, table: str, data: Sequence[Any]) -> None:
        """Insert many records in a single transaction; nothing is kept if one fails."""
        statements = [_insert_statement(table, _record_as_mapping(item)) for item in data]
        with self.begin_transaction() as tx:
            for sql, values in statements:
                tx.execute(sql, *values)

    def begin_transaction(self) -> Transaction:
        """Start a transaction on a connection taken from the pool."""
        try:
            conn = self.get_connection()
        except StorageError as exc:
            raise StorageError(f"failed to get connection: {exc}") from exc
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as exc:
            self.release_connection(conn)
            raise StorageError(f"failed to begin transaction: {exc}") from exc
        return Transaction(self, conn)

    def register_job_progress(self, job_id: str, callback: ProgressCallback) -> None:
        """Register a progress callback for a job, replacing any earlier one."""
        with self._callbacks_lock:
            self._progress_callbacks[job_id] = callback

    def get_storage_stats(self) -> StorageStats:
        """Return a snapshot of record count, file size and connection use."""
        with self._metrics_lock:
            active_queries = self._active_queries
        return StorageStats(
            total_records=self._total_records(),
            database_size=self._database_size(),
            active_queries=active_queries,
            queued_writes=0,
            connections_used=self._used_connections(),
            connections_max=self.max_connections,
            last_update=datetime.now(),
        )

    def get_active_connections(self) -> int:
        """Number of connections currently taken from the pool."""
        return self._used_connections()

    def get_query_metrics(self) -> QueryMetrics:
        """Return aggregated query performance figures."""
        with self._metrics_lock:
            average = (
                _ns_to_timedelta(self._total_latency_ns // self._total_queries)
                if self._total_queries
                else timedelta(0)
            )
            lookups = self._cache_hits + self._cache_misses
            hit_rate = self._cache_hits / lookups if lookups else 0.0
            return QueryMetrics(
                total_queries=self._total_queries,
                average_latency=average,
                slow_queries=self._slow_queries,
                cache_hit_rate=hit_rate,
                active_queries=self._active_queries,
                last_slow_query=self._last_slow_query,
                last_slow_query_time=self._last_slow_query_time,
            )

    def get_pool_stats(self) -> PoolStats:
        """Return connection pool usage statistics."""
        with self._pool_lock:
            waits = list(self._wait_times)
            total_requests = self._total_requests
            timeouts = self._connection_timeouts
        average_wait = _ns_to_timedelta(sum(waits) // len(waits)) if waits else timedelta(0)
        return PoolStats(
            max_connections=self.max_connections,
            active_connections=self._used_connections(),
            idle_connections=self._pool.qsize(),
            waiting_requests=0,
            total_requests=total_requests,
            average_wait_time=average_wait,
            connection_timeouts=timeouts,
        )

    def close(self) -> None:
        """Close every pooled connection; later calls do nothing."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        while True:
            try:
                conn = self._pool.get_nowait()
            except queue.Empty:
                break
            with contextlib.suppress(sqlite3.Error):
                conn.close()

    def __enter__(self) -> SQLiteStorage:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _total_records(self) -> int:
        try:
            with self.connection() as conn:
                row = conn.execute("SELECT COUNT(*) FROM items").fetchone()
        except (StorageError, sqlite3.Error):
            return 0
        return int(row[0]) if row else 0

    def _database_size(self) -> int:
        if self._db_path is None:
            return 0
        try:
            return self._db_path.stat().st_size
        except OSError:
            return 0

    def _used_connections(self) -> int:
        return self.max_connections - self._pool.qsize()