"""Work queue, record stores and job publishing."""

from .backends import JobStore, VideoStore, WorkQueue
from .publisher import DEFAULT_QUEUE_NAME, JobPublisher
from .sqlite_backend import SQLiteJobStore, SQLiteVideoStore, SQLiteWorkQueue, open_database

__all__ = [
    "WorkQueue",
    "JobStore",
    "VideoStore",
    "JobPublisher",
    "DEFAULT_QUEUE_NAME",
    "SQLiteWorkQueue",
    "SQLiteJobStore",
    "SQLiteVideoStore",
    "open_database",
]
