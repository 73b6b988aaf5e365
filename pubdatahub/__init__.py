"""Pooled SQLite storage with query metrics, health checks and job progress tracking."""

__version__ = "0.1.0"

__all__ = ["models", "sqlite_storage", "tui_storage", "job_integration"]