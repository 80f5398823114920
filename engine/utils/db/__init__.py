"""
Database utilities for the leveling engine.

This module provides database connection, the processing-job queue and the
report store. Supports both real PostgreSQL and a mock in-memory
implementation for development/testing.
"""

from utils.db.connection import get_db_connection, init_db, reset_mock_db
from utils.db.job_queue import (
    enqueue_processing_job,
    claim_next_job,
    get_processing_job,
    list_processing_jobs,
    update_job_progress,
    mark_job_succeeded,
    mark_job_failed,
    save_level_report,
    get_latest_level_report,
    get_cached_extraction,
    save_cached_extraction,
    JobStatus,
)

__all__ = [
    "get_db_connection",
    "init_db",
    "reset_mock_db",
    "enqueue_processing_job",
    "claim_next_job",
    "get_processing_job",
    "list_processing_jobs",
    "update_job_progress",
    "mark_job_succeeded",
    "mark_job_failed",
    "save_level_report",
    "get_latest_level_report",
    "get_cached_extraction",
    "save_cached_extraction",
    "JobStatus",
]
