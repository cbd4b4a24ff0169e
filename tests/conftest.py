from pathlib import Path
from typing import List, Optional, Set

import pytest

from video_pipeline.aggregator import CompletionAggregator
from video_pipeline.executors import ThumbnailExecutor, TranscodeExecutor
from video_pipeline.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from video_pipeline.models import JobType, Video, VideoStatus
from video_pipeline.queue import (
    JobPublisher,
    SQLiteJobStore,
    SQLiteVideoStore,
    SQLiteWorkQueue,
    open_database,
)
from video_pipeline.scheduler import FanOutScheduler, UploadService
from video_pipeline.storage import LocalObjectStorage, original_key
from video_pipeline.worker import WorkerLoop


class FakeRunner:
    """Stands in for FfmpegRunner: writes a small output file per call."""

    def __init__(self, fail_heights: Optional[Set[int]] = None, fail_thumbnail: bool = False):
        self.fail_heights = fail_heights or set()
        self.fail_thumbnail = fail_thumbnail
        self.calls: List[tuple] = []

    def transcode(self, input_path, output_path, profile):
        self.calls.append(("transcode", input_path, output_path, profile))
        if profile.scale_height in self.fail_heights:
            return self._failure("Invalid data found when processing input")
        Path(output_path).write_bytes(b"rendition-%d" % profile.scale_height)
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.01)

    def extract_thumbnail(self, input_path, output_path):
        self.calls.append(("thumbnail", input_path, output_path))
        if self.fail_thumbnail:
            return self._failure("Output file is empty, nothing was encoded")
        Path(output_path).write_bytes(b"\xff\xd8jpeg")
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.01)

    @staticmethod
    def _failure(stderr):
        return FfmpegResult(
            success=False,
            returncode=1,
            stderr=stderr,
            duration_s=0.01,
            error_type=FfmpegErrorType.PERMANENT,
        )


class Pipeline:
    """All backends over one temporary database, as a worker process sees them."""

    def __init__(self, db_path: Path, storage_root: Path, runner, **loop_kwargs):
        self.db = open_database(str(db_path))
        self.queue = SQLiteWorkQueue(self.db, poll_interval_s=0.02)
        self.job_store = SQLiteJobStore(self.db)
        self.video_store = SQLiteVideoStore(self.db)
        self.storage = LocalObjectStorage(storage_root)
        self.runner = runner
        self.publisher = JobPublisher(self.queue)
        self.scheduler = FanOutScheduler(self.video_store, self.job_store, self.publisher)
        self.aggregator = CompletionAggregator(self.job_store, self.video_store)
        self.uploads = UploadService(self.storage, self.video_store, self.scheduler)
        self.executors = {
            JobType.TRANSCODE: TranscodeExecutor(self.storage, self.video_store, runner),
            JobType.THUMBNAIL: ThumbnailExecutor(self.storage, self.video_store, runner),
        }
        loop_kwargs.setdefault("dequeue_timeout_s", 0.1)
        loop_kwargs.setdefault("backoff_s", 0.01)
        self.loop_kwargs = loop_kwargs

    def worker(self, worker_id: str = "worker-test", **overrides) -> WorkerLoop:
        kwargs = dict(self.loop_kwargs, **overrides)
        return WorkerLoop(
            worker_id,
            self.queue,
            self.job_store,
            self.video_store,
            self.executors,
            self.aggregator,
            **kwargs,
        )

    def close(self):
        self.db.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "pipeline.db"


@pytest.fixture
def db(db_path):
    database = open_database(str(db_path))
    yield database
    database.close()


@pytest.fixture
def queue(db):
    return SQLiteWorkQueue(db, poll_interval_s=0.02)


@pytest.fixture
def job_store(db):
    return SQLiteJobStore(db)


@pytest.fixture
def video_store(db):
    return SQLiteVideoStore(db)


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "storage")


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def pipeline(db_path, tmp_path, fake_runner):
    p = Pipeline(db_path, tmp_path / "storage", fake_runner)
    yield p
    p.close()


@pytest.fixture
def sample_video_file(tmp_path):
    path = tmp_path / "inputs" / "holiday.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"fake video payload" * 64)
    return path


@pytest.fixture
def make_video(video_store):
    """Create a video record, optionally already in processing."""

    def _make(status: VideoStatus = VideoStatus.PROCESSING, **fields) -> Video:
        fields.setdefault("title", "clip")
        fields.setdefault("original_filename", "clip.mp4")
        fields.setdefault("size", 1024)
        video = Video(**fields)
        video_store.create(video)
        if status != VideoStatus.UPLOADED:
            video_store.update_status(video.id, VideoStatus.PROCESSING)
        if status in (VideoStatus.READY, VideoStatus.FAILED):
            video_store.update_status(video.id, status, "boom" if status == VideoStatus.FAILED else None)
        return video_store.get_by_id(video.id)

    return _make


def store_original(storage, video: Video, content: bytes = b"source") -> None:
    """Put a source object where the executors look for it."""
    src = storage.root / "_staging" / video.original_filename
    src.parent.mkdir(parents=True, exist_ok=True)
    src.write_bytes(content)
    storage.upload("videos", original_key(video.id, video.extension), src, "video/mp4")
