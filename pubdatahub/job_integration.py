"""Tracking of background job progress and metrics, persisted through the storage layer."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pubdatahub.models import ProgressInfo
from pubdatahub.sqlite_storage import SQLiteStorage, StorageError

_log = logging.getLogger(__name__)

ProgressCallback = Callable[[str, ProgressInfo], None]

PERSIST_INTERVAL_SECONDS = 5.0
MAX_ERRORS_BEFORE_FAILURE = 10

_INSERT_PROGRESS = """
INSERT INTO job_progress
(job_id, current_count, total_count, status, data_source, started_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_PROGRESS = """
UPDATE job_progress
SET current_count = ?, status = ?, updated_at = ?
WHERE job_id = ?
"""

_FINALIZE_PROGRESS = """
UPDATE job_progress
SET current_count = ?, status = ?, updated_at = ?, completed_at = ?
WHERE job_id = ?
"""


def _db_time(value: datetime) -> str:
    return value.isoformat(sep=" ")


@dataclass
class JobMetrics:
    """Performance figures collected for one job."""

    job_id: str
    data_source: str
    start_time: datetime
    end_time: datetime | None = None
    duration: timedelta = timedelta(0)
    items_per_second: float = 0.0
    bytes_per_second: float = 0.0
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    batch_count: int = 0
    average_batch_size: float = 0.0
    database_operations: dict[str, int] = field(default_factory=dict)
    error_rate: float = 0.0
    status: str = "running"


class JobProgressTracker:
    """Progress of one job, persisted to the job_progress table in the background."""

    def __init__(
        self,
        job_id: str,
        data_source: str,
        total_items: int,
        storage: SQLiteStorage,
        callback: ProgressCallback | None = None,
    ) -> None:
        now = datetime.now()
        self.job_id = job_id
        self.data_source = data_source
        self.start_time = now
        self.last_update = now
        self.items_processed = 0
        self.total_items = total_items
        self.bytes_processed = 0
        self.current_batch = 0
        self.total_batches = 0
        self.status = "running"
        self.error_count = 0
        self.last_error = ""
        self.callback = callback
        self._storage = storage
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def update_progress(self, items_processed: int, current_item: Any) -> None:
        """Record how many items are done and notify the callback."""
        with self._lock:
            self.items_processed = items_processed
            self.last_update = datetime.now()
            info = ProgressInfo(
                items_processed=items_processed,
                total_items=self.total_items,
                bytes_written=self.bytes_processed,
                current_item=current_item,
                start_time=self.start_time,
                last_update=self.last_update,
            )
            callback = self.callback
        if callback is not None:
            callback(self.job_id, info)

    def mark_error(self, err: BaseException | str) -> None:
        """Count an error; the job fails once more than ten have been seen."""
        with self._lock:
            self.error_count += 1
            self.last_error = str(err)
            if self.error_count > MAX_ERRORS_BEFORE_FAILURE:
                self.status = "failed"

    def set_status(self, status: str) -> None:
        """Change the job status."""
        with self._lock:
            self.status = status
            self.last_update = datetime.now()

    def get_progress(self) -> ProgressInfo:
        """Return a snapshot of the current progress."""
        with self._lock:
            return ProgressInfo(
                items_processed=self.items_processed,
                total_items=self.total_items,
                bytes_written=self.bytes_processed,
                start_time=self.start_time,
                last_update=self.last_update,
            )

    def _handle_progress(self, job_id: str, progress: ProgressInfo) -> None:
        self.update_progress(progress.items_processed, progress.current_item)

    def _start_persistence(self) -> None:
        self._thread = threading.Thread(
            target=self._persist_loop, name=f"job-progress-{self.job_id}", daemon=True
        )
        self._thread.start()

    def _stop_persistence(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join()

    def _persist_loop(self) -> None:
        while not self._stop.wait(PERSIST_INTERVAL_SECONDS):
            self._update_database_progress()
        self._update_database_progress()

    def _update_database_progress(self) -> None:
        with self._lock:
            items_processed = self.items_processed
            status = self.status
            last_update = self.last_update
        try:
            with self._storage.begin_transaction() as tx:
                tx.execute(
                    _UPDATE_PROGRESS, items_processed, status, _db_time(last_update), self.job_id
                )
        except StorageError as exc:
            _log.debug("could not persist progress for job %s: %s", self.job_id, exc)


class JobMetricsCollector:
    """Collects performance metrics for jobs by id."""

    def __init__(self) -> None:
        self._metrics: dict[str, JobMetrics] = {}
        self._lock = threading.Lock()

    def start_tracking(self, job_id: str, data_source: str, total_items: int) -> None:
        """Begin collecting metrics for a job."""
        with self._lock:
            self._metrics[job_id] = JobMetrics(
                job_id=job_id,
                data_source=data_source,
                start_time=datetime.now(),
                total_items=total_items,
            )

    def finish_tracking(self, job_id: str) -> None:
        """Close a job's metrics, computing its rates; unknown jobs are ignored."""
        with self._lock:
            metrics = self._metrics.get(job_id)
            if metrics is None:
                return
            end_time = datetime.now()
            metrics.end_time = end_time
            metrics.duration = end_time - metrics.start_time
            seconds = metrics.duration.total_seconds()
            if seconds > 0:
                metrics.items_per_second = metrics.processed_items / seconds
                metrics.bytes_per_second = metrics.processed_items / seconds
            if metrics.processed_items > 0:
                metrics.error_rate = metrics.failed_items / metrics.processed_items
            metrics.status = "completed"

    def get_metrics(self, job_id: str) -> JobMetrics:
        """Return a copy of a job's metrics."""
        with self._lock:
            metrics = self._metrics.get(job_id)
            if metrics is None:
                raise StorageError(f"no metrics found for job {job_id}")
            return self._copy(metrics)

    def get_all_metrics(self) -> dict[str, JobMetrics]:
        """Return copies of every job's metrics, keyed by job id."""
        with self._lock:
            return {job_id: self._copy(metrics) for job_id, metrics in self._metrics.items()}

    @staticmethod
    def _copy(metrics: JobMetrics) -> JobMetrics:
        duplicate = copy.copy(metrics)
        duplicate.database_operations = dict(metrics.database_operations)
        return duplicate


class JobStorageIntegration:
    """Connects running jobs to storage: progress rows, callbacks and metrics."""

    def __init__(self, storage: SQLiteStorage, batch_size: int) -> None:
        self.storage = storage
        self.batch_size = batch_size
        self._trackers: dict[str, JobProgressTracker] = {}
        self._lock = threading.Lock()
        self._metrics = JobMetricsCollector()

    def start_job_tracking(
        self,
        job_id: str,
        data_source: str,
        total_items: int,
        callback: ProgressCallback | None,
    ) -> JobProgressTracker:
        """Start tracking a job; raises StorageError if it is already tracked."""
        with self._lock:
            if job_id in self._trackers:
                raise StorageError(f"job {job_id} is already being tracked")

            tracker = JobProgressTracker(job_id, data_source, total_items, self.storage, callback)
            try:
                self._initialize_job_progress(tracker)
            except StorageError as exc:
                raise StorageError(f"failed to initialize job progress: {exc}") from exc
            try:
                self.storage.register_job_progress(job_id, tracker._handle_progress)
            except StorageError as exc:
                raise StorageError(f"failed to register progress callback: {exc}") from exc

            self._trackers[job_id] = tracker
            self._metrics.start_tracking(job_id, data_source, total_items)
            tracker._start_persistence()
            return tracker

    def stop_job_tracking(self, job_id: str) -> None:
        """Stop tracking a job, writing its final progress and closing its metrics."""
        with self._lock:
            tracker = self._trackers.get(job_id)
            if tracker is None:
                raise StorageError(f"job {job_id} is not being tracked")
            tracker._stop_persistence()
            try:
                self._finalize_job_progress(tracker)
            except StorageError as exc:
                raise StorageError(f"failed to finalize job progress: {exc}") from exc
            self._metrics.finish_tracking(job_id)
            del self._trackers[job_id]

    def get_job_progress(self, job_id: str) -> JobProgressTracker:
        """Return the tracker of a job that is being tracked."""
        with self._lock:
            tracker = self._trackers.get(job_id)
        if tracker is None:
            raise StorageError(f"job {job_id} is not being tracked")
        return tracker

    def get_all_job_progress(self) -> dict[str, JobProgressTracker]:
        """Return the trackers of all active jobs, keyed by job id."""
        with self._lock:
            return dict(self._trackers)

    def get_job_metrics(self, job_id: str) -> JobMetrics:
        """Return a copy of a job's metrics."""
        return self._metrics.get_metrics(job_id)

    def get_all_job_metrics(self) -> dict[str, JobMetrics]:
        """Return copies of every job's metrics."""
        return self._metrics.get_all_metrics()

    def _initialize_job_progress(self, tracker: JobProgressTracker) -> None:
        with self.storage.begin_transaction() as tx:
            tx.execute(
                _INSERT_PROGRESS,
                tracker.job_id,
                0,
                tracker.total_items,
                tracker.status,
                tracker.data_source,
                _db_time(tracker.start_time),
                _db_time(tracker.last_update),
            )

    def _finalize_job_progress(self, tracker: JobProgressTracker) -> None:
        with tracker._lock:
            items_processed = tracker.items_processed
            status = tracker.status
        completed_at = _db_time(datetime.now())
        with self.storage.begin_transaction() as tx:
            tx.execute(
                _FINALIZE_PROGRESS,
                items_processed,
                status,
                completed_at,
                completed_at,
                tracker.job_id,
            )