from datetime import datetime, timedelta, timezone

import pytest

from pubdatahub.models import HealthStatus, IndexStat, QueryMetrics, StorageStats
from pubdatahub.tui_storage import TUIStorage


@pytest.fixture
def storage(tmp_path):
    store = TUIStorage(3)
    store.initialize(tmp_path)
    yield store
    store.close()


def test_health_checking(storage):
    health = storage.get_storage_health()
    assert health.status in ("healthy", "degraded", "unhealthy")
    assert health.last_check is not None
    assert health.last_check > datetime.now() - timedelta(minutes=1)

    assert health.connection_pool.status == "healthy"
    assert 0 <= health.connection_pool.utilization <= 1

    assert health.disk_space.status in ("healthy", "degraded")
    assert health.disk_space.available_space > 0
    assert health.disk_space.used_space > 0


def test_performance_healthy_with_fast_queries(storage):
    for _ in range(5):
        storage.query_concurrent("SELECT COUNT(*) FROM items")
    health = storage.get_storage_health()
    assert health.query_performance.status == "healthy"
    assert health.query_performance.slow_query_count == 0
    assert health.query_performance.error_rate == 0.0


def test_pool_exhaustion_reported_as_critical(storage):
    held = [storage.get_connection() for _ in range(3)]
    try:
        health = storage.get_storage_health()
    finally:
        for conn in held:
            storage.release_connection(conn)
    assert health.connection_pool.status == "critical"
    assert health.connection_pool.utilization == 1.0
    assert "Connection pool: critical" in health.issues
    assert health.status in ("degraded", "unhealthy")

    recovered = storage.get_storage_health()
    assert recovered.connection_pool.status == "healthy"
    assert recovered.connection_pool.utilization == 0.0


def test_pool_degraded_between_thresholds(tmp_path):
    store = TUIStorage(10)
    store.initialize(tmp_path)
    try:
        held = [store.get_connection() for _ in range(8)]
        try:
            health = store.get_storage_health()
        finally:
            for conn in held:
                store.release_connection(conn)
    finally:
        store.close()
    assert health.connection_pool.status == "degraded"
    assert health.connection_pool.utilization == pytest.approx(0.8)


def test_uninitialized_storage_is_degraded():
    store = TUIStorage(3)
    try:
        health = store.get_storage_health()
    finally:
        store.close()
    assert health.disk_space.status == "unknown"
    assert health.connection_pool.status == "critical"
    assert health.issues == ["Connection pool: critical", "Disk space: unknown"]
    assert health.status == "degraded"


def test_vacuum_operations(storage):
    storage.vacuum_database()
    storage.optimize_for_interactive_queries()
    result = storage.query_concurrent("SELECT COUNT(*) FROM items")
    assert result.rows == [[0]]
    assert storage.get_active_connections() == 0


def test_vacuum_records_time(storage):
    assert storage.get_detailed_stats()["last_vacuum"] is None
    before = datetime.now()
    storage.vacuum_database()
    last_vacuum = storage.get_detailed_stats()["last_vacuum"]
    assert last_vacuum >= before


def test_index_stats_lists_schema_indexes(storage):
    stats = storage.get_index_stats()
    assert [(s.table_name, s.index_name) for s in stats] == [
        ("batch_status", "idx_batch_status_completed"),
        ("items", "idx_items_by_time"),
        ("items", "idx_items_parent_time"),
        ("items", "idx_items_time_type"),
        ("items", "idx_items_type_score"),
        ("job_progress", "idx_job_progress_data_source"),
        ("job_progress", "idx_job_progress_status"),
        ("query_cache", "idx_query_cache_expires"),
    ]
    assert all(s.hit_rate == 0.0 and s.size == 0 for s in stats)
    now_utc = datetime.now(timezone.utc).replace(tzinfo=None)
    assert all(abs(s.last_used - now_utc) < timedelta(minutes=5) for s in stats)


def test_index_stats_empty_after_close(tmp_path):
    store = TUIStorage(2)
    store.initialize(tmp_path)
    store.close()
    assert store.get_index_stats() == []


def test_detailed_stats(storage):
    storage.query_concurrent("SELECT 1")
    details = storage.get_detailed_stats()
    assert set(details) == {
        "basic_stats",
        "query_metrics",
        "health_status",
        "index_stats",
        "last_vacuum",
        "uptime",
    }
    assert isinstance(details["basic_stats"], StorageStats)
    assert details["basic_stats"].connections_max == 3
    assert isinstance(details["query_metrics"], QueryMetrics)
    assert details["query_metrics"].total_queries == 1
    assert isinstance(details["health_status"], HealthStatus)
    assert details["health_status"].connection_pool.status == "healthy"
    assert len(details["index_stats"]) == 8
    assert all(isinstance(stat, IndexStat) for stat in details["index_stats"])
    assert timedelta(0) <= details["uptime"] < timedelta(minutes=1)


def test_close_is_idempotent_and_stops_scheduler(tmp_path):
    store = TUIStorage(2)
    store.initialize(tmp_path)
    store.close()
    store.close()
    assert store.closed is True
    assert store._scheduler.is_alive() is False


def test_tables_survive_vacuum(storage):
    storage.insert("download_metadata", {"key": "k", "value": "v", "data_source": "test"})
    storage.vacuum_database()
    result = storage.query_concurrent("SELECT key, value FROM download_metadata")
    assert result.rows == [["k", "v"]]