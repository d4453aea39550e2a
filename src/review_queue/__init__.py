"""Persistent work queue for automated commit reviews.

Worker processes coordinate only through the SQLite database: each ``claim``
is a single conditional UPDATE, so concurrent workers never receive the same
job.
"""

from review_queue.catalog import CommitStore, RepoStore
from review_queue.config import StoreSettings, default_db_path
from review_queue.errors import MigrationError, StoreBusyError, StoreError, StoreSetupError
from review_queue.job_queue import JobQueue
from review_queue.models import (
    CommitView,
    JobCounts,
    JobStatus,
    RepoView,
    ResponseView,
    ReviewJobView,
    ReviewView,
)
from review_queue.outcomes import ResponseStore, ReviewStore
from review_queue.storage.database import Database
from review_queue.storage.schema import CURRENT_SCHEMA_VERSION, SchemaManager

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "CommitStore",
    "CommitView",
    "Database",
    "JobCounts",
    "JobQueue",
    "JobStatus",
    "MigrationError",
    "RepoStore",
    "RepoView",
    "ResponseStore",
    "ResponseView",
    "ReviewJobView",
    "ReviewStore",
    "ReviewView",
    "SchemaManager",
    "StoreBusyError",
    "StoreError",
    "StoreSettings",
    "StoreSetupError",
    "default_db_path",
]
