"""SQLite implementations of WorkQueue, JobStore and VideoStore.

This module provides the local-first, crash-safe backends using:
- sqlite-utils for schema management and row access
- WAL mode for better concurrent performance across worker processes
- BEGIN IMMEDIATE transactions for atomic dequeue and read-modify-write
- Exponential backoff retry for database lock handling on dequeue

All three backends can share one database file; every worker process opens
its own connection with open_database().
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlite_utils import Database

from ..errors import (
    DuplicateJobError,
    DuplicateVideoError,
    JobNotFoundError,
    QueueUnavailable,
    StoreUnavailable,
    VideoNotFoundError,
)
from ..models import Job, JobStatus, Video, VideoFormat, VideoStatus
from .backends import JobStore, VideoStore, WorkQueue


# SQLite schema SQL
SCHEMA_SQL = """
-- Video records
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    uploaded_by TEXT NOT NULL DEFAULT '',
    original_filename TEXT NOT NULL DEFAULT '',
    duration REAL NOT NULL DEFAULT 0,
    size INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    formats TEXT NOT NULL DEFAULT '[]',
    thumbnails TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
CREATE INDEX IF NOT EXISTS idx_videos_created ON videos(created_at DESC);

-- Job records (one row per fan-out task)
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL REFERENCES videos(id),
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    worker_id TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);

-- Work queue messages (FIFO per queue_name by autoincrement id)
CREATE TABLE IF NOT EXISTS queue_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_name TEXT NOT NULL,
    body TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_name_id ON queue_messages(queue_name, id);
"""

JOB_COLUMNS = (
    "video_id", "type", "status", "progress", "error_message", "worker_id",
    "payload", "created_at", "updated_at", "started_at", "completed_at",
)

VIDEO_COLUMNS = (
    "title", "description", "uploaded_by", "original_filename", "duration", "size",
    "status", "formats", "thumbnails", "error_message", "created_at", "updated_at",
)


def open_database(db_path: str, busy_timeout_s: float = 30.0) -> Database:
    """Open (and create if needed) the pipeline database.

    Args:
        db_path: Path to SQLite database file
        busy_timeout_s: How long a connection waits on a locked database

    Enables WAL mode and foreign keys, then creates the schema.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), timeout=busy_timeout_s)
    db = Database(conn)

    # Enable WAL mode for better concurrent performance
    db.conn.execute("PRAGMA journal_mode=WAL")
    db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.conn.execute("PRAGMA foreign_keys=ON")
    db.conn.commit()

    db.executescript(SCHEMA_SQL)
    return db


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


@contextmanager
def _immediate(db: Database) -> Iterator[Database]:
    """Run a block inside BEGIN IMMEDIATE (write lock from the start)."""
    db.conn.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.conn.rollback()
        raise
    else:
        db.conn.commit()


@contextmanager
def _store_errors(store: str) -> Iterator[None]:
    """Translate storage-engine failures into StoreUnavailable."""
    try:
        yield
    except sqlite3.IntegrityError:
        raise
    except sqlite3.DatabaseError as e:
        raise StoreUnavailable(store, str(e)) from e


class SQLiteWorkQueue(WorkQueue):
    """SQLite-backed FIFO queue with atomic pop.

    Features:
    - Atomic dequeue via DELETE...RETURNING inside BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Blocking dequeue implemented by polling until the timeout elapses

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never pop the same row
    """

    def __init__(self, db: Database, poll_interval_s: float = 0.2, max_retries: int = 3):
        self.db = db
        self.poll_interval_s = poll_interval_s
        self.max_retries = max_retries

    def enqueue(self, queue_name: str, message: str) -> None:
        try:
            with self.db.conn:
                self.db.execute(
                    "INSERT INTO queue_messages (queue_name, body, enqueued_at) VALUES (?, ?, ?)",
                    (queue_name, message, _ts(datetime.now())),
                )
        except sqlite3.DatabaseError as e:
            raise QueueUnavailable(queue_name, str(e)) from e

    def dequeue(self, queue_name: str, timeout: float) -> Optional[str]:
        """Pop the head message, polling until ``timeout`` seconds elapse.

        Returns:
            Message text, or None if the queue stayed empty
        """
        deadline = time.monotonic() + max(0.0, timeout)

        while True:
            message = self._pop_with_retry(queue_name)
            if message is not None:
                return message

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_s, remaining))

    def _pop_with_retry(self, queue_name: str) -> Optional[str]:
        """Pop with exponential backoff on SQLITE_BUSY.

        Exponential backoff: 100ms, 200ms, 400ms delays. Any other
        operational error (or exhausted retries) is QueueUnavailable.
        """
        for attempt in range(self.max_retries):
            try:
                with _immediate(self.db):
                    cursor = self.db.conn.execute("""
                        DELETE FROM queue_messages
                        WHERE id = (
                            SELECT id FROM queue_messages
                            WHERE queue_name = ?
                            ORDER BY id ASC
                            LIMIT 1
                        )
                        RETURNING body
                    """, (queue_name,))
                    rows = cursor.fetchall()
                return rows[0][0] if rows else None

            except sqlite3.OperationalError as e:
                error_msg = str(e).lower()
                if "database is locked" in error_msg and attempt < self.max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueUnavailable(queue_name, str(e)) from e
            except sqlite3.DatabaseError as e:
                raise QueueUnavailable(queue_name, str(e)) from e

        return None

    def size(self, queue_name: str) -> int:
        try:
            return self.db["queue_messages"].count_where("queue_name = ?", [queue_name])
        except sqlite3.DatabaseError as e:
            raise QueueUnavailable(queue_name, str(e)) from e

    def close(self) -> None:
        self.db.close()


class SQLiteJobStore(JobStore):
    """Job records in the ``jobs`` table."""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_row(job: Job) -> Dict[str, Any]:
        return {
            "id": job.id,
            "video_id": job.video_id,
            "type": job.type.value,
            "status": job.status.value,
            "progress": job.progress,
            "error_message": job.error_message,
            "worker_id": job.worker_id,
            "payload": json.dumps(job.payload),
            "created_at": _ts(job.created_at),
            "updated_at": _ts(job.updated_at),
            "started_at": _ts(job.started_at),
            "completed_at": _ts(job.completed_at),
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Job:
        data = dict(row)
        data["payload"] = json.loads(data["payload"]) if data.get("payload") else {}
        return Job.model_validate(data)

    def create(self, job: Job) -> None:
        with _store_errors("job"):
            try:
                self.db["jobs"].insert(self._to_row(job))
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e).upper():
                    raise VideoNotFoundError(job.video_id) from e
                raise DuplicateJobError(job.id) from e

    def get_by_id(self, job_id: str) -> Job:
        with _store_errors("job"):
            rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            raise JobNotFoundError(job_id)
        return self._from_row(rows[0])

    def update(self, job: Job) -> None:
        row = self._to_row(job)
        assignments = ", ".join(f"{col} = ?" for col in JOB_COLUMNS)
        params = [row[col] for col in JOB_COLUMNS] + [job.id]

        with _store_errors("job"):
            with self.db.conn:
                cursor = self.db.execute(f"UPDATE jobs SET {assignments} WHERE id = ?", params)
        if cursor.rowcount == 0:
            raise JobNotFoundError(job.id)

    def delete(self, job_id: str) -> None:
        with _store_errors("job"):
            with self.db.conn:
                cursor = self.db.execute("DELETE FROM jobs WHERE id = ?", [job_id])
        if cursor.rowcount == 0:
            raise JobNotFoundError(job_id)

    def get_by_video_id(self, video_id: str) -> List[Job]:
        with _store_errors("job"):
            rows = list(self.db["jobs"].rows_where("video_id = ?", [video_id]))
        return [self._from_row(r) for r in rows]

    def get_by_status(self, status: JobStatus) -> List[Job]:
        with _store_errors("job"):
            rows = list(self.db["jobs"].rows_where(
                "status = ?", [JobStatus(status).value], order_by="created_at"
            ))
        return [self._from_row(r) for r in rows]

    def get_pending_jobs(self, limit: int) -> List[Job]:
        with _store_errors("job"):
            rows = list(self.db["jobs"].rows_where(
                "status = ?", [JobStatus.PENDING.value], order_by="created_at", limit=limit
            ))
        return [self._from_row(r) for r in rows]

    def get_active_jobs(self) -> List[Job]:
        return self.get_by_status(JobStatus.PROCESSING)


class SQLiteVideoStore(VideoStore):
    """Video records in the ``videos`` table.

    Append and status operations run as one BEGIN IMMEDIATE transaction
    each (atomic single-document read-modify-write).
    """

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_row(video: Video) -> Dict[str, Any]:
        return {
            "id": video.id,
            "title": video.title,
            "description": video.description,
            "uploaded_by": video.uploaded_by,
            "original_filename": video.original_filename,
            "duration": video.duration,
            "size": video.size,
            "status": video.status.value,
            "formats": json.dumps([f.model_dump() for f in video.formats]),
            "thumbnails": json.dumps(video.thumbnails),
            "error_message": video.error_message,
            "created_at": _ts(video.created_at),
            "updated_at": _ts(video.updated_at),
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Video:
        data = dict(row)
        data["formats"] = json.loads(data["formats"]) if data.get("formats") else []
        data["thumbnails"] = json.loads(data["thumbnails"]) if data.get("thumbnails") else []
        return Video.model_validate(data)

    def _fetch(self, video_id: str) -> Video:
        rows = list(self.db["videos"].rows_where("id = ?", [video_id]))
        if not rows:
            raise VideoNotFoundError(video_id)
        return self._from_row(rows[0])

    def _write(self, video: Video) -> int:
        row = self._to_row(video)
        assignments = ", ".join(f"{col} = ?" for col in VIDEO_COLUMNS)
        params = [row[col] for col in VIDEO_COLUMNS] + [video.id]
        cursor = self.db.execute(f"UPDATE videos SET {assignments} WHERE id = ?", params)
        return cursor.rowcount

    def create(self, video: Video) -> None:
        with _store_errors("video"):
            try:
                self.db["videos"].insert(self._to_row(video))
            except sqlite3.IntegrityError as e:
                raise DuplicateVideoError(video.id) from e

    def get_by_id(self, video_id: str) -> Video:
        with _store_errors("video"):
            return self._fetch(video_id)

    def update(self, video: Video) -> None:
        with _store_errors("video"):
            with self.db.conn:
                updated = self._write(video)
        if updated == 0:
            raise VideoNotFoundError(video.id)

    def append_format(self, video_id: str, video_format: VideoFormat) -> None:
        with _store_errors("video"):
            with _immediate(self.db):
                video = self._fetch(video_id)
                video.add_format(video_format.quality, video_format.filename, video_format.size)
                self._write(video)

    def append_thumbnail(self, video_id: str, filename: str) -> None:
        with _store_errors("video"):
            with _immediate(self.db):
                video = self._fetch(video_id)
                video.add_thumbnail(filename)
                self._write(video)

    def update_status(
        self,
        video_id: str,
        status: VideoStatus,
        error_message: Optional[str] = None
    ) -> Video:
        with _store_errors("video"):
            with _immediate(self.db):
                video = self._fetch(video_id)
                video.transition_to(status, error_message)
                self._write(video)
        return video

    def get_by_status(self, status: VideoStatus) -> List[Video]:
        with _store_errors("video"):
            rows = list(self.db["videos"].rows_where(
                "status = ?", [VideoStatus(status).value], order_by="created_at"
            ))
        return [self._from_row(r) for r in rows]

    def list_videos(self, limit: int = 50, offset: int = 0) -> List[Video]:
        with _store_errors("video"):
            rows = list(self.db["videos"].rows_where(
                order_by="created_at DESC", limit=limit, offset=offset
            ))
        return [self._from_row(r) for r in rows]
