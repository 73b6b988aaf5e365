# pubdatahub

Thread-safe SQLite storage for interactive tools and background jobs. It uses only the standard library.

## Modules

- `pubdatahub.sqlite_storage`
  - `SQLiteStorage` keeps a fixed-size pool of SQLite connections. Every connection runs in WAL mode with a 30-second busy timeout.
  - `initialize(path)` creates the directory and the database file `pubdatahub.sqlite`. It also creates the schema: the tables `items`, `job_progress`, `query_cache`, `download_metadata` and `batch_status`, plus their indexes.
  - The class also records query metrics and pool statistics.
  - `Transaction` wraps a transaction on one pooled connection.
- `pubdatahub.tui_storage`
  - `TUIStorage` extends `SQLiteStorage` with health reports for the connection pool, disk space and query latency.
  - It also offers index statistics, vacuuming and tuning for interactive queries.
  - A background thread checks once an hour whether a vacuum is due and runs one if so. A vacuum is due when none has run in the last 24 hours. It only runs while fewer than half of the connections are in use.
- `pubdatahub.job_integration`
  - `JobStorageIntegration` tracks long-running jobs. It writes a row to `job_progress` when tracking starts, and updates that row every 5 seconds from a background thread. It writes the final values when tracking stops.
  - `JobProgressTracker` holds the progress of one job.
  - `JobMetricsCollector` and `JobMetrics` record per-job timing and rates.
- `pubdatahub.models`
  - This module holds the dataclasses that the storage returns: `QueryResult`, `StorageStats`, `QueryMetrics`, `PoolStats`, `HealthStatus`, `PoolHealth`, `DiskHealth`, `PerformanceHealth`, `IndexStat` and `ProgressInfo`.
  - The statistics classes have a `to_dict()` method that returns a JSON-friendly dictionary. In that dictionary, durations are given in nanoseconds and timestamps as ISO strings.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

```python
from pubdatahub.tui_storage import TUIStorage
from pubdatahub.job_integration import JobStorageIntegration

storage = TUIStorage(3)
storage.initialize("./data")   # creates ./data/pubdatahub.sqlite

result = storage.query("SELECT COUNT(*) FROM items")
print(result.columns, result.rows, result.count)

# Commits on a clean exit, rolls back if the block raises.
with storage.begin_transaction() as tx:
    tx.execute(
        "INSERT INTO download_metadata (key, value, data_source) VALUES (?, ?, ?)",
        "last_id", "42", "example",
    )

# Records may be mappings or dataclass instances.
storage.insert("download_metadata", {"key": "cursor", "value": "7", "data_source": "example"})
storage.insert_batch("download_metadata", [
    {"key": "a", "value": "1", "data_source": "example"},
    {"key": "b", "value": "2", "data_source": "example"},
])

health = storage.get_storage_health()
print(health.status, health.issues)   # "healthy", "degraded" or "unhealthy"

integration = JobStorageIntegration(storage, 100)
tracker = integration.start_job_tracking(
    "job-1", "example", 1000,
    lambda job_id, info: print(job_id, info.items_processed),
)
tracker.update_progress(100, "item-100")
integration.stop_job_tracking("job-1")
print(integration.get_job_metrics("job-1").status)   # "completed"

storage.close()
```

`SQLiteStorage` can also be used as a context manager. Leaving the `with` block closes the pool.

To borrow a raw `sqlite3.Connection` for the length of a block, use `storage.connection()`.

## Errors

Failures raise `pubdatahub.sqlite_storage.StorageError`. For example:

- using storage after it has been closed;
- initializing the same storage twice;
- no connection becoming free within 30 seconds;
- SQL errors;
- starting to track a job that is already tracked;
- stopping a job that is not tracked.

Invalid table or column names passed to `insert` raise `ValueError`. Records that are neither mappings nor dataclasses raise `TypeError`.

## What it does not do

- There is no command-line program, no terminal interface and no downloader. The package is only the storage layer.
- The `query_cache` table is created but never filled. `QueryResult.from_cache` is therefore always `False`, and the cache hit rate is always `0.0`.
- `register_job_progress` stores a callback per job, but the storage never calls it. Job callbacks run only when `JobProgressTracker.update_progress` is called.
- Index statistics list each index's table and name. The hit rate and size are always zero, because SQLite does not track them.