"""SQLite storage with health reporting and scheduled maintenance for interactive use."""

from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Any

from pubdatahub.models import (
    DiskHealth,
    HealthStatus,
    IndexStat,
    PerformanceHealth,
    PoolHealth,
)
from pubdatahub.sqlite_storage import SQLiteStorage, StorageError

_log = logging.getLogger(__name__)

VACUUM_CHECK_INTERVAL_SECONDS = 3600.0
VACUUM_MAX_AGE = timedelta(hours=24)

_DEGRADED_LATENCY = timedelta(milliseconds=500)
_UNHEALTHY_LATENCY = timedelta(seconds=2)

_INDEX_STATS_QUERY = """
SELECT
    m.tbl_name AS table_name,
    m.name AS index_name,
    0.0 AS hit_rate,
    0 AS size_bytes,
    CURRENT_TIMESTAMP AS last_used
FROM sqlite_master m
WHERE m.type = 'index'
AND m.name NOT LIKE 'sqlite_%'
ORDER BY m.tbl_name, m.name
"""

_INTERACTIVE_PRAGMAS = (
    "PRAGMA cache_size = 20000",
    "PRAGMA temp_store = memory",
    "PRAGMA mmap_size = 268435456",
    "PRAGMA optimize",
)


def _overall_status(issues: list[str]) -> str:
    if not issues:
        return "healthy"
    if len(issues) <= 2:
        return "degraded"
    return "unhealthy"


class TUIStorage(SQLiteStorage):
    """Pooled SQLite storage that reports its health and vacuums itself once a day."""

    def __init__(self, max_connections: int) -> None:
        super().__init__(max_connections)
        self._last_check = datetime.now()
        self._issues: list[str] = []
        self._health_lock = threading.Lock()

        self._last_vacuum: datetime | None = None
        self._vacuum_lock = threading.Lock()
        self._stop = threading.Event()
        self._scheduler = threading.Thread(
            target=self._run_scheduler, name="pubdatahub-vacuum", daemon=True
        )
        self._scheduler.start()

    def get_storage_health(self) -> HealthStatus:
        """Check every component and return the combined health report."""
        pool = self._pool_health()
        disk = self._disk_health()
        performance = self._performance_health()

        issues = [
            f"{label}: {status}"
            for label, status in (
                ("Connection pool", pool.status),
                ("Disk space", disk.status),
                ("Query performance", performance.status),
            )
            if status != "healthy"
        ]
        with self._health_lock:
            self._last_check = datetime.now()
            self._issues = issues
            last_check = self._last_check

        return HealthStatus(
            status=_overall_status(issues),
            connection_pool=self._pool_health(),
            disk_space=self._disk_health(),
            query_performance=self._performance_health(),
            last_check=last_check,
            issues=list(issues),
        )

    def vacuum_database(self) -> None:
        """Vacuum, truncate the WAL and refresh the query planner statistics."""
        try:
            conn = self.get_connection()
        except StorageError as exc:
            raise StorageError(f"failed to get connection for vacuum: {exc}") from exc
        try:
            for statement, action in (
                ("VACUUM", "vacuum database"),
                ("PRAGMA wal_checkpoint(TRUNCATE)", "checkpoint WAL"),
                ("ANALYZE", "analyze database"),
            ):
                try:
                    conn.execute(statement).fetchall()
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to {action}: {exc}") from exc
        finally:
            self.release_connection(conn)
        with self._vacuum_lock:
            self._last_vacuum = datetime.now()

    def get_index_stats(self) -> list[IndexStat]:
        """List the user-defined indexes, ordered by table and index name."""
        try:
            conn = self.get_connection()
        except StorageError:
            return []
        try:
            rows = conn.execute(_INDEX_STATS_QUERY).fetchall()
        except sqlite3.Error:
            return []
        finally:
            self.release_connection(conn)

        stats = []
        for table_name, index_name, hit_rate, size, last_used_text in rows:
            try:
                last_used: datetime | None = datetime.strptime(
                    str(last_used_text), "%Y-%m-%d %H:%M:%S"
                )
            except ValueError:
                last_used = None
            stats.append(
                IndexStat(
                    table_name=table_name,
                    index_name=index_name,
                    hit_rate=float(hit_rate),
                    size=int(size),
                    last_used=last_used,
                )
            )
        return stats

    def get_detailed_stats(self) -> dict[str, Any]:
        """Gather statistics, metrics, health and index details for display."""
        stats = self.get_storage_stats()
        metrics = self.get_query_metrics()
        health = self.get_storage_health()
        index_stats = self.get_index_stats()
        with self._vacuum_lock:
            last_vacuum = self._last_vacuum
        with self._health_lock:
            uptime = datetime.now() - self._last_check
        return {
            "basic_stats": stats,
            "query_metrics": metrics,
            "health_status": health,
            "index_stats": index_stats,
            "last_vacuum": last_vacuum,
            "uptime": uptime,
        }

    def optimize_for_interactive_queries(self) -> None:
        """Tune cache, temp storage and memory mapping for interactive querying."""
        try:
            conn = self.get_connection()
        except StorageError as exc:
            raise StorageError(f"failed to get connection for optimization: {exc}") from exc
        try:
            for pragma in _INTERACTIVE_PRAGMAS:
                try:
                    conn.execute(pragma).fetchall()
                except sqlite3.Error as exc:
                    raise StorageError(
                        f"failed to execute optimization {pragma}: {exc}"
                    ) from exc
        finally:
            self.release_connection(conn)

    def close(self) -> None:
        """Stop background maintenance and close the pool."""
        self._stop.set()
        if self._scheduler.is_alive() and self._scheduler is not threading.current_thread():
            self._scheduler.join(timeout=5)
        super().close()

    def _pool_health(self) -> PoolHealth:
        utilization = self._used_connections() / self.max_connections
        if utilization > 0.9:
            status = "critical"
        elif utilization > 0.7:
            status = "degraded"
        else:
            status = "healthy"
        return PoolHealth(
            status=status,
            utilization=utilization,
            waiting_count=0,
            timeout_count=self.get_pool_stats().connection_timeouts,
        )

    def _disk_health(self) -> DiskHealth:
        path = self.db_path
        if path is None:
            return DiskHealth(status="unknown")
        try:
            db_size = path.stat().st_size
            usage = shutil.disk_usage(path)
        except OSError:
            return DiskHealth(status="unknown")
        if usage.total <= 0:
            return DiskHealth(status="unknown", used_space=db_size)

        utilization = (usage.total - usage.free) / usage.total
        if utilization > 0.95:
            status = "critical"
        elif utilization > 0.85:
            status = "degraded"
        else:
            status = "healthy"
        return DiskHealth(
            status=status,
            used_space=db_size,
            available_space=usage.free,
            utilization=utilization,
        )

    def _performance_health(self) -> PerformanceHealth:
        metrics = self.get_query_metrics()
        status = "healthy"
        if metrics.average_latency > _DEGRADED_LATENCY:
            status = "degraded"
        if metrics.average_latency > _UNHEALTHY_LATENCY:
            status = "unhealthy"
        return PerformanceHealth(
            status=status,
            average_latency=metrics.average_latency,
            slow_query_count=metrics.slow_queries,
            error_rate=0.0,
        )

    def _run_scheduler(self) -> None:
        while not self._stop.wait(VACUUM_CHECK_INTERVAL_SECONDS):
            if self._vacuum_due():
                self._perform_vacuum()

    def _vacuum_due(self) -> bool:
        with self._vacuum_lock:
            last = self._last_vacuum
        return last is None or datetime.now() - last > VACUUM_MAX_AGE

    def _perform_vacuum(self) -> None:
        if self.closed or self.db_path is None:
            return
        if self.get_active_connections() >= self.max_connections // 2:
            return
        try:
            self.vacuum_database()
        except StorageError as exc:
            _log.warning("scheduled vacuum failed: %s", exc)