"""Wiring: build queue, stores, storage and services from a PipelineConfig.

Every process (CLI command or pool worker) builds its own Services; SQLite
connections and boto3 clients are never shared across processes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from sqlite_utils import Database

from .aggregator import CompletionAggregator
from .config import PipelineConfig
from .executors import TaskExecutor, build_executors
from .ffmpeg_runner import FfmpegProgress, FfmpegRunner
from .models import JobType
from .queue import JobPublisher, SQLiteJobStore, SQLiteVideoStore, SQLiteWorkQueue, open_database
from .queue.backends import JobStore, VideoStore, WorkQueue
from .scheduler import FanOutScheduler, UploadService
from .storage import LocalObjectStorage, ObjectStorage, S3ObjectStorage

logger = logging.getLogger(__name__)


def log_ffmpeg_progress(progress: FfmpegProgress) -> None:
    logger.debug("ffmpeg progress: time=%.1fs frame=%d fps=%.1f speed=%.2fx",
                 progress.current_time_s, progress.frame, progress.fps, progress.speed)


@dataclass
class Services:
    config: PipelineConfig
    db: Database
    queue: WorkQueue
    job_store: JobStore
    video_store: VideoStore
    storage: ObjectStorage
    runner: FfmpegRunner
    publisher: JobPublisher
    scheduler: FanOutScheduler
    aggregator: CompletionAggregator
    uploads: UploadService
    executors: Dict[JobType, TaskExecutor]

    def close(self) -> None:
        self.queue.close()
        self.db.close()


def build_queue(config: PipelineConfig, db: Database) -> WorkQueue:
    if config.queue.backend == "redis":
        from .queue.redis_backend import RedisWorkQueue, connect

        # Socket timeout must outlast a blocking BRPOP
        client = connect(config.queue.redis_url, socket_timeout_s=config.queue.dequeue_timeout_s + 5)
        return RedisWorkQueue(client)
    return SQLiteWorkQueue(db, poll_interval_s=config.queue.poll_interval_s)


def build_storage(config: PipelineConfig) -> ObjectStorage:
    settings = config.storage
    if settings.backend == "s3":
        storage = S3ObjectStorage.from_settings(
            endpoint_url=settings.endpoint_url,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            region=settings.region,
        )
    else:
        storage = LocalObjectStorage(Path(settings.root))

    for bucket in (settings.videos_bucket, settings.thumbnails_bucket):
        storage.ensure_bucket(bucket)
    return storage


def build_services(config: PipelineConfig) -> Services:
    """Open every backend named by ``config``."""
    db = open_database(config.store.db_path, busy_timeout_s=config.store.busy_timeout_s)
    queue = build_queue(config, db)
    job_store = SQLiteJobStore(db)
    video_store = SQLiteVideoStore(db)
    storage = build_storage(config)
    runner = FfmpegRunner.from_config(config.ffmpeg, progress_callback=log_ffmpeg_progress)

    publisher = JobPublisher(queue, config.queue.name)
    scheduler = FanOutScheduler(video_store, job_store, publisher, config.qualities)
    aggregator = CompletionAggregator(job_store, video_store)
    uploads = UploadService(storage, video_store, scheduler, config.storage.videos_bucket)
    executors = build_executors(
        storage, video_store, runner, config.storage, scratch_dir=config.worker.scratch_dir
    )

    logger.debug("Services ready: queue=%s db=%s storage=%s",
                 config.queue.backend, config.store.db_path, config.storage.backend)

    return Services(
        config=config,
        db=db,
        queue=queue,
        job_store=job_store,
        video_store=video_store,
        storage=storage,
        runner=runner,
        publisher=publisher,
        scheduler=scheduler,
        aggregator=aggregator,
        uploads=uploads,
        executors=executors,
    )
