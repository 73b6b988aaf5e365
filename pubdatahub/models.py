"""Value types shared by the storage layer: query results, statistics and health reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any


def _duration_ns(value: timedelta) -> int:
    """Express a duration as whole nanoseconds, the unit used in serialized reports."""
    return (value // timedelta(microseconds=1)) * 1000


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class QueryResult:
    """Rows and column names returned by a query, with timing information."""

    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    count: int = 0
    duration: timedelta = timedelta(0)
    from_cache: bool = False


@dataclass
class StorageStats:
    """A snapshot of storage size and connection usage."""

    total_records: int = 0
    database_size: int = 0
    active_queries: int = 0
    queued_writes: int = 0
    connections_used: int = 0
    connections_max: int = 0
    last_update: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "database_size": self.database_size,
            "active_queries": self.active_queries,
            "queued_writes": self.queued_writes,
            "connections_used": self.connections_used,
            "connections_max": self.connections_max,
            "last_update": _timestamp(self.last_update),
        }


@dataclass
class QueryMetrics:
    """Aggregated query performance figures."""

    total_queries: int = 0
    average_latency: timedelta = timedelta(0)
    slow_queries: int = 0
    cache_hit_rate: float = 0.0
    active_queries: int = 0
    last_slow_query: str = ""
    last_slow_query_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "total_queries": self.total_queries,
            "average_latency": _duration_ns(self.average_latency),
            "slow_queries": self.slow_queries,
            "cache_hit_rate": self.cache_hit_rate,
            "active_queries": self.active_queries,
        }
        if self.last_slow_query:
            result["last_slow_query"] = self.last_slow_query
        if self.last_slow_query_time is not None:
            result["last_slow_query_time"] = _timestamp(self.last_slow_query_time)
        return result


@dataclass
class PoolHealth:
    """Health of the connection pool; utilization runs from 0.0 to 1.0."""

    status: str = ""
    utilization: float = 0.0
    waiting_count: int = 0
    timeout_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "utilization": self.utilization,
            "waiting_count": self.waiting_count,
            "timeout_count": self.timeout_count,
        }


@dataclass
class DiskHealth:
    """Disk usage around the database file; utilization runs from 0.0 to 1.0."""

    status: str = ""
    used_space: int = 0
    available_space: int = 0
    utilization: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "used_space_bytes": self.used_space,
            "available_space_bytes": self.available_space,
            "utilization": self.utilization,
        }


@dataclass
class PerformanceHealth:
    """Health of query performance."""

    status: str = ""
    average_latency: timedelta = timedelta(0)
    slow_query_count: int = 0
    error_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "average_latency": _duration_ns(self.average_latency),
            "slow_query_count": self.slow_query_count,
            "error_rate": self.error_rate,
        }


@dataclass
class HealthStatus:
    """Overall storage health: "healthy", "degraded" or "unhealthy"."""

    status: str = ""
    connection_pool: PoolHealth = field(default_factory=PoolHealth)
    disk_space: DiskHealth = field(default_factory=DiskHealth)
    query_performance: PerformanceHealth = field(default_factory=PerformanceHealth)
    last_check: datetime | None = None
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status,
            "connection_pool": self.connection_pool.to_dict(),
            "disk_space": self.disk_space.to_dict(),
            "query_performance": self.query_performance.to_dict(),
            "last_check": _timestamp(self.last_check),
        }
        if self.issues:
            result["issues"] = list(self.issues)
        return result


@dataclass
class IndexStat:
    """Statistics for one database index."""

    table_name: str = ""
    index_name: str = ""
    hit_rate: float = 0.0
    size: int = 0
    last_used: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "index_name": self.index_name,
            "hit_rate": self.hit_rate,
            "size_bytes": self.size,
            "last_used": _timestamp(self.last_used),
        }


@dataclass
class ProgressInfo:
    """Progress of a storage operation belonging to a job."""

    items_processed: int = 0
    total_items: int = 0
    bytes_written: int = 0
    current_item: Any = None
    start_time: datetime | None = None
    last_update: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "items_processed": self.items_processed,
            "total_items": self.total_items,
            "bytes_written": self.bytes_written,
        }
        if self.current_item is not None:
            result["current_item"] = self.current_item
        result["start_time"] = _timestamp(self.start_time)
        result["last_update"] = _timestamp(self.last_update)
        return result


@dataclass
class PoolStats:
    """Connection pool usage statistics."""

    max_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0
    waiting_requests: int = 0
    total_requests: int = 0
    average_wait_time: timedelta = timedelta(0)
    connection_timeouts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_connections": self.max_connections,
            "active_connections": self.active_connections,
            "idle_connections": self.idle_connections,
            "waiting_requests": self.waiting_requests,
            "total_requests": self.total_requests,
            "average_wait_time": _duration_ns(self.average_wait_time),
            "connection_timeouts": self.connection_timeouts,
        }