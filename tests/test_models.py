import json
from datetime import datetime, timedelta

import pytest

from pubdatahub.models import (
    DiskHealth,
    HealthStatus,
    IndexStat,
    PerformanceHealth,
    PoolHealth,
    PoolStats,
    ProgressInfo,
    QueryMetrics,
    QueryResult,
    StorageStats,
)

NOW = datetime(2024, 5, 17, 12, 30, 45, 123456)


def test_query_result_defaults_are_independent():
    first = QueryResult()
    second = QueryResult()
    first.rows.append([1])
    assert second.rows == []
    assert first.count == 0
    assert first.duration == timedelta(0)
    assert first.from_cache is False


def test_storage_stats_to_dict_keys_and_values():
    stats = StorageStats(
        total_records=5,
        database_size=4096,
        active_queries=1,
        queued_writes=0,
        connections_used=2,
        connections_max=3,
        last_update=NOW,
    )
    data = stats.to_dict()
    assert set(data) == {
        "total_records",
        "database_size",
        "active_queries",
        "queued_writes",
        "connections_used",
        "connections_max",
        "last_update",
    }
    assert data["total_records"] == 5
    assert data["connections_max"] == 3
    assert datetime.fromisoformat(data["last_update"]) == NOW


def test_storage_stats_without_timestamp_serializes_none():
    assert StorageStats().to_dict()["last_update"] is None


def test_duration_is_serialized_in_nanoseconds():
    metrics = QueryMetrics(average_latency=timedelta(seconds=2))
    assert metrics.to_dict()["average_latency"] == 2_000_000_000


def test_query_metrics_omits_empty_slow_query_fields():
    data = QueryMetrics(total_queries=10).to_dict()
    assert "last_slow_query" not in data
    assert "last_slow_query_time" not in data
    assert data["total_queries"] == 10


def test_query_metrics_includes_slow_query_when_set():
    data = QueryMetrics(
        slow_queries=1,
        last_slow_query="SELECT COUNT(*) FROM items",
        last_slow_query_time=NOW,
    ).to_dict()
    assert data["last_slow_query"] == "SELECT COUNT(*) FROM items"
    assert datetime.fromisoformat(data["last_slow_query_time"]) == NOW
    assert data["slow_queries"] == 1


def test_disk_health_uses_byte_suffixed_keys():
    data = DiskHealth(
        status="healthy", used_space=100, available_space=200, utilization=0.5
    ).to_dict()
    assert data == {
        "status": "healthy",
        "used_space_bytes": 100,
        "available_space_bytes": 200,
        "utilization": 0.5,
    }


def test_pool_health_to_dict():
    data = PoolHealth(
        status="degraded", utilization=0.75, waiting_count=0, timeout_count=4
    ).to_dict()
    assert data == {
        "status": "degraded",
        "utilization": 0.75,
        "waiting_count": 0,
        "timeout_count": 4,
    }


def test_health_status_nests_components_and_omits_empty_issues():
    health = HealthStatus(
        status="healthy",
        connection_pool=PoolHealth(status="healthy"),
        disk_space=DiskHealth(status="healthy"),
        query_performance=PerformanceHealth(status="healthy"),
        last_check=NOW,
    )
    data = health.to_dict()
    assert "issues" not in data
    assert data["connection_pool"] == health.connection_pool.to_dict()
    assert data["disk_space"] == health.disk_space.to_dict()
    assert data["query_performance"] == health.query_performance.to_dict()
    assert datetime.fromisoformat(data["last_check"]) == NOW


def test_health_status_issues_are_copied():
    health = HealthStatus(status="degraded", issues=["Disk space: degraded"])
    data = health.to_dict()
    data["issues"].append("extra")
    assert health.issues == ["Disk space: degraded"]


def test_index_stat_to_dict_uses_size_bytes():
    data = IndexStat(
        table_name="items", index_name="idx_items_type_score", size=0, last_used=NOW
    ).to_dict()
    assert data["size_bytes"] == 0
    assert data["table_name"] == "items"
    assert data["index_name"] == "idx_items_type_score"
    assert "size" not in data


@pytest.mark.parametrize("item, present", [(None, False), ("test_item", True)])
def test_progress_info_current_item_is_omitted_when_none(item, present):
    data = ProgressInfo(items_processed=100, total_items=1000, current_item=item).to_dict()
    assert ("current_item" in data) is present
    assert data["items_processed"] == 100
    assert data["total_items"] == 1000


def test_pool_stats_round_trips_through_json():
    stats = PoolStats(
        max_connections=5,
        active_connections=2,
        idle_connections=3,
        total_requests=42,
        average_wait_time=timedelta(milliseconds=3),
        connection_timeouts=1,
    )
    data = json.loads(json.dumps(stats.to_dict()))
    assert data["max_connections"] == 5
    assert data["idle_connections"] == 3
    assert timedelta(microseconds=data["average_wait_time"] / 1000) == stats.average_wait_time


def test_all_reports_are_json_serializable():
    reports = [
        StorageStats(last_update=NOW),
        QueryMetrics(last_slow_query="q", last_slow_query_time=NOW),
        HealthStatus(last_check=NOW, issues=["Connection pool: critical"]),
        IndexStat(last_used=NOW),
        ProgressInfo(start_time=NOW, last_update=NOW, current_item={"id": 1}),
        PoolStats(),
    ]
    for report in reports:
        assert json.loads(json.dumps(report.to_dict())) == report.to_dict()