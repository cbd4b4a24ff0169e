"""Upload registration and fan-out of processing jobs.

Fan-out persists each job before publishing it, so a worker never receives a
message whose job record does not exist yet. A crash between the two leaves
a pending job with no message; ``video-pipeline jobs --status pending`` lists
those and ``video-pipeline republish`` re-enqueues them.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import InvalidUpload
from .models import Job, JobType, Video, VideoStatus
from .profiles import DEFAULT_QUALITIES
from .queue.backends import JobStore, VideoStore
from .queue.publisher import JobPublisher
from .storage import ObjectStorage, original_key

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv"}
MAX_UPLOAD_BYTES = 1024 * 1024 * 1024  # 1 GiB


def validate_upload(title: str, original_filename: str, size: int) -> None:
    """Raise InvalidUpload unless the upload metadata is acceptable."""
    if not title or not title.strip():
        raise InvalidUpload("title is required")
    if not original_filename or not original_filename.strip():
        raise InvalidUpload("filename is required")

    extension = Path(original_filename).suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise InvalidUpload(f"unsupported file type: {extension or '(none)'}")

    if size <= 0:
        raise InvalidUpload("file is empty")
    if size > MAX_UPLOAD_BYTES:
        raise InvalidUpload(f"file too large: {size} bytes (max {MAX_UPLOAD_BYTES})")


def register_upload(
    video_store: VideoStore,
    title: str,
    description: str,
    uploaded_by: str,
    original_filename: str,
    size: int,
    duration: float = 0.0,
) -> Video:
    """Validate upload metadata and create the video in ``uploaded``."""
    validate_upload(title, original_filename, size)

    video = Video(
        title=title.strip(),
        description=description,
        uploaded_by=uploaded_by,
        original_filename=original_filename,
        size=size,
        duration=duration,
    )
    video_store.create(video)
    logger.info("Registered upload: video_id=%s file=%s size=%d", video.id, original_filename, size)
    return video


class FanOutScheduler:
    """Create and publish the thumbnail job plus one transcode job per tier."""

    def __init__(
        self,
        video_store: VideoStore,
        job_store: JobStore,
        publisher: JobPublisher,
        qualities: Optional[Iterable[str]] = None,
    ):
        self.video_store = video_store
        self.job_store = job_store
        self.publisher = publisher
        self.qualities = list(qualities) if qualities is not None else list(DEFAULT_QUALITIES)

    def plan(self, video_id: str) -> List[Job]:
        """Jobs for one video, in publishing order (thumbnail first)."""
        jobs = [Job.new(video_id, JobType.THUMBNAIL)]
        for quality in self.qualities:
            jobs.append(Job.new(video_id, JobType.TRANSCODE, {"quality": quality}))
        return jobs

    def schedule(self, video_id: str) -> List[Job]:
        """
        Move the video to processing and fan out its jobs.

        Each job is persisted, then published. Errors propagate to the
        caller; jobs already published stay published.

        Returns:
            The jobs created, in publishing order

        Raises:
            VideoNotFoundError: No such video
            InvalidStatusTransition: The video was already scheduled
            QueueUnavailable: Publishing failed
        """
        self.video_store.get_by_id(video_id)
        self.video_store.update_status(video_id, VideoStatus.PROCESSING)

        jobs = self.plan(video_id)
        for job in jobs:
            self.job_store.create(job)
            self.publisher.publish(job)
            logger.debug("Scheduled %s job %s for video %s", job.type.value, job.id, video_id)

        logger.info("Fanned out %d jobs for video %s", len(jobs), video_id)
        return jobs


class UploadService:
    """Store a local file as an original upload and schedule its processing."""

    def __init__(
        self,
        storage: ObjectStorage,
        video_store: VideoStore,
        scheduler: FanOutScheduler,
        videos_bucket: str = "videos",
    ):
        self.storage = storage
        self.video_store = video_store
        self.scheduler = scheduler
        self.videos_bucket = videos_bucket

    def upload_file(
        self,
        path: Path,
        title: Optional[str] = None,
        description: str = "",
        uploaded_by: str = "",
        duration: float = 0.0,
    ) -> Video:
        """
        Register, store and schedule one local video file.

        Args:
            path: Local video file
            title: Display title (file stem if None)

        Returns:
            The video as stored after scheduling
        """
        path = Path(path)
        if not path.is_file():
            raise InvalidUpload(f"not a file: {path}")

        video = register_upload(
            self.video_store,
            title=title if title is not None else path.stem,
            description=description,
            uploaded_by=uploaded_by,
            original_filename=path.name,
            size=path.stat().st_size,
            duration=duration,
        )

        key = original_key(video.id, video.extension)
        self.storage.upload(self.videos_bucket, key, path, "video/" + video.extension.lstrip(".").lower())
        logger.debug("Stored original %s as %s/%s", path, self.videos_bucket, key)

        self.scheduler.schedule(video.id)
        return self.video_store.get_by_id(video.id)
