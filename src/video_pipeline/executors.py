"""Task executors: fetch the source, run ffmpeg, upload, record the artifact.

Each executor reports coarse progress at fixed milestones through the
callback it is given, and raises TaskExecutionError with a message that is
recorded verbatim on the job and its video.
"""

import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from .errors import PipelineError, StorageError, TaskExecutionError
from .ffmpeg_runner import FfmpegResult, FfmpegRunner
from .models import Job, JobType, ThumbnailPayload, TranscodePayload, Video, VideoFormat
from .profiles import quality_profile
from .queue.backends import VideoStore
from .storage import ObjectStorage, original_key, processed_key, thumbnail_key

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

VIDEO_CONTENT_TYPE = "video/mp4"
THUMBNAIL_CONTENT_TYPE = "image/jpeg"


class TaskExecutor(ABC):
    """Runs one typed task for a claimed job."""

    job_type: JobType

    def __init__(
        self,
        storage: ObjectStorage,
        video_store: VideoStore,
        runner: FfmpegRunner,
        videos_bucket: str = "videos",
        scratch_dir: Optional[str] = None,
    ):
        self.storage = storage
        self.video_store = video_store
        self.runner = runner
        self.videos_bucket = videos_bucket
        self.scratch_dir = scratch_dir

    @abstractmethod
    def execute(self, job: Job, task, report_progress: ProgressCallback) -> None:
        """
        Run the task.

        Args:
            job: The claimed job (status processing)
            task: Typed payload matching ``job_type``
            report_progress: Called with milestone percentages

        Raises:
            TaskExecutionError: Download, tool, upload or record failure
        """
        pass

    def _load_video(self, video_id: str) -> Video:
        try:
            return self.video_store.get_by_id(video_id)
        except PipelineError as e:
            raise TaskExecutionError(f"failed to get video info: {e}") from e

    def _fetch_source(self, video: Video, workdir: Path) -> Path:
        key = original_key(video.id, video.extension)
        dest = workdir / f"input{video.extension}"
        try:
            return self.storage.download(self.videos_bucket, key, dest)
        except StorageError as e:
            raise TaskExecutionError(f"failed to download original video: {e}") from e

    def _tool_failure(self, job: Job, what: str, result: FfmpegResult) -> TaskExecutionError:
        error_type = result.error_type.value if result.error_type else "unknown"
        logger.warning("%s for job %s (video %s): error_type=%s returncode=%s",
                       what, job.id, job.video_id, error_type, result.returncode)
        return TaskExecutionError(f"{what}: {result.error_summary()}")

    def _scratch(self) -> tempfile.TemporaryDirectory:
        if self.scratch_dir:
            Path(self.scratch_dir).mkdir(parents=True, exist_ok=True)
        return tempfile.TemporaryDirectory(prefix=f"{self.job_type.value}_", dir=self.scratch_dir)


class TranscodeExecutor(TaskExecutor):
    """Produce one H.264/AAC rendition at the requested quality tier."""

    job_type = JobType.TRANSCODE

    def execute(self, job: Job, task: TranscodePayload, report_progress: ProgressCallback) -> None:
        video = self._load_video(job.video_id)
        profile = quality_profile(task.quality)

        with self._scratch() as tmp:
            workdir = Path(tmp)

            report_progress(10)
            source = self._fetch_source(video, workdir)

            report_progress(30)
            output = workdir / f"output_{task.quality}.mp4"
            result = self.runner.transcode(str(source), str(output), profile)
            if not result.success:
                raise self._tool_failure(job, "ffmpeg transcoding failed", result)

            report_progress(80)
            key = processed_key(video.id, task.quality)
            try:
                size = self.storage.upload(self.videos_bucket, key, output, VIDEO_CONTENT_TYPE)
            except StorageError as e:
                raise TaskExecutionError(f"failed to upload processed video: {e}") from e

        try:
            self.video_store.append_format(
                video.id, VideoFormat(quality=task.quality, filename=key, size=size)
            )
        except PipelineError as e:
            raise TaskExecutionError(f"failed to update video record: {e}") from e

        logger.info("Transcoded video %s to %s (%d bytes, %.1fs)",
                    video.id, task.quality, size, result.duration_s)


class ThumbnailExecutor(TaskExecutor):
    """Extract one representative frame as a JPEG thumbnail."""

    job_type = JobType.THUMBNAIL

    def __init__(self, *args, thumbnails_bucket: str = "thumbnails", **kwargs):
        super().__init__(*args, **kwargs)
        self.thumbnails_bucket = thumbnails_bucket

    def execute(self, job: Job, task: ThumbnailPayload, report_progress: ProgressCallback) -> None:
        video = self._load_video(job.video_id)

        with self._scratch() as tmp:
            workdir = Path(tmp)

            report_progress(20)
            source = self._fetch_source(video, workdir)

            report_progress(50)
            output = workdir / "thumbnail.jpg"
            result = self.runner.extract_thumbnail(str(source), str(output))
            if not result.success:
                raise self._tool_failure(job, "thumbnail generation failed", result)

            report_progress(80)
            key = thumbnail_key(video.id)
            try:
                self.storage.upload(self.thumbnails_bucket, key, output, THUMBNAIL_CONTENT_TYPE)
            except StorageError as e:
                raise TaskExecutionError(f"failed to upload thumbnail: {e}") from e

        try:
            self.video_store.append_thumbnail(video.id, key)
        except PipelineError as e:
            raise TaskExecutionError(f"failed to update video record: {e}") from e

        logger.info("Generated thumbnail for video %s", video.id)


def build_executors(storage, video_store, runner, storage_config, scratch_dir=None):
    """Executor registry keyed by job type."""
    common = dict(
        videos_bucket=storage_config.videos_bucket,
        scratch_dir=scratch_dir,
    )
    return {
        JobType.TRANSCODE: TranscodeExecutor(storage, video_store, runner, **common),
        JobType.THUMBNAIL: ThumbnailExecutor(
            storage, video_store, runner,
            thumbnails_bucket=storage_config.thumbnails_bucket, **common
        ),
    }
