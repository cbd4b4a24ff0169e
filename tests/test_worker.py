"""Tests for the worker loop: dispatch, outcomes and loop-level errors."""

import signal
import threading
import time
from unittest.mock import MagicMock

import pytest

from video_pipeline.errors import QueueUnavailable, StoreUnavailable
from video_pipeline.models import Job, JobMessage, JobStatus, JobType, VideoStatus
from video_pipeline.queue.backends import JobStore, VideoStore, WorkQueue
from video_pipeline.storage import ObjectStorage
from video_pipeline import worker as worker_module
from video_pipeline.config import PipelineConfig
from video_pipeline.worker import (
    TERMINATE_TIMEOUT_S,
    IterationOutcome,
    WorkerLoop,
    WorkerPool,
    default_worker_id,
)

from conftest import store_original


def _enqueue(pipeline, job_id, video_id, job_type, payload=None):
    message = JobMessage(id=job_id, video_id=video_id, type=job_type, payload=payload or {})
    pipeline.queue.enqueue("video_jobs", message.to_wire())


@pytest.fixture
def processing_video(pipeline, make_video):
    video = make_video()
    store_original(pipeline.storage, video)
    return video


@pytest.fixture
def pending_job(pipeline, processing_video):
    def _make(job_type=JobType.TRANSCODE, payload=None):
        job = Job.new(processing_video.id, job_type, payload)
        pipeline.job_store.create(job)
        return job
    return _make


class TestRunOnce:

    def test_idle_on_empty_queue(self, pipeline):
        assert pipeline.worker().run_once() == IterationOutcome.IDLE

    def test_transcode_success(self, pipeline, pending_job, processing_video):
        job = pending_job(JobType.TRANSCODE, {"quality": "720p"})
        pipeline.publisher.publish(job)

        assert pipeline.worker("worker-a").run_once() == IterationOutcome.COMPLETED

        stored = pipeline.job_store.get_by_id(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.worker_id == "worker-a"
        assert stored.started_at is not None

        video = pipeline.video_store.get_by_id(processing_video.id)
        assert [f.quality for f in video.formats] == ["720p"]
        assert video.formats[0].filename == f"videos/processed/{video.id}_720p.mp4"
        # only job of the video, so the video is ready
        assert video.status == VideoStatus.READY

    def test_thumbnail_success(self, pipeline, pending_job, processing_video):
        job = pending_job(JobType.THUMBNAIL)
        pipeline.publisher.publish(job)

        assert pipeline.worker().run_once() == IterationOutcome.COMPLETED
        video = pipeline.video_store.get_by_id(processing_video.id)
        assert video.thumbnails == [f"{video.id}_thumb.jpg"]
        assert pipeline.storage.stat("thumbnails", f"{video.id}_thumb.jpg") > 0

    def test_progress_milestones(self, pipeline, pending_job):
        job = pending_job(JobType.THUMBNAIL)
        pipeline.publisher.publish(job)

        seen = []
        real_update = pipeline.job_store.update

        def spy(j):
            seen.append((j.status, j.progress))
            real_update(j)

        pipeline.job_store.update = spy
        pipeline.worker().run_once()

        assert [p for s, p in seen if s == JobStatus.PROCESSING] == [0, 20, 50, 80]
        assert seen[-1] == (JobStatus.COMPLETED, 100)

    def test_tool_failure_fails_job_and_video(self, pipeline, pending_job, processing_video):
        pipeline.runner.fail_heights = {480}
        job = pending_job(JobType.TRANSCODE, {"quality": "480p"})
        pipeline.publisher.publish(job)

        assert pipeline.worker().run_once() == IterationOutcome.FAILED

        stored = pipeline.job_store.get_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message.startswith("ffmpeg transcoding failed: ")
        video = pipeline.video_store.get_by_id(processing_video.id)
        assert video.status == VideoStatus.FAILED
        assert video.error_message == stored.error_message
        assert video.formats == []

    def test_missing_source_fails_with_download_error(self, pipeline, make_video):
        video = make_video()
        job = Job.new(video.id, JobType.THUMBNAIL)
        pipeline.job_store.create(job)
        pipeline.publisher.publish(job)

        assert pipeline.worker().run_once() == IterationOutcome.FAILED
        error = pipeline.job_store.get_by_id(job.id).error_message
        assert error.startswith("failed to download original video: ")
        assert pipeline.runner.calls == []

    def test_unknown_type_fails_without_io(self, pipeline, pending_job, processing_video):
        job = pending_job(JobType.TRANSCODE, {"quality": "720p"})
        storage = MagicMock(spec=ObjectStorage)
        for executor in pipeline.executors.values():
            executor.storage = storage
        _enqueue(pipeline, job.id, processing_video.id, "audio")

        assert pipeline.worker().run_once() == IterationOutcome.FAILED

        stored = pipeline.job_store.get_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "unknown job type: audio"
        assert storage.method_calls == []
        assert pipeline.runner.calls == []
        video = pipeline.video_store.get_by_id(processing_video.id)
        assert video.status == VideoStatus.FAILED
        assert video.error_message == "unknown job type: audio"

    def test_invalid_payload_fails_job(self, pipeline, pending_job, processing_video):
        job = pending_job(JobType.TRANSCODE, {"quality": "720p"})
        _enqueue(pipeline, job.id, processing_video.id, "transcode", {})

        assert pipeline.worker().run_once() == IterationOutcome.FAILED
        assert pipeline.job_store.get_by_id(job.id).error_message.startswith("invalid transcode payload")

    def test_unrecognized_quality_uses_default_profile(self, pipeline, pending_job):
        job = pending_job(JobType.TRANSCODE, {"quality": "4k"})
        pipeline.publisher.publish(job)

        assert pipeline.worker().run_once() == IterationOutcome.COMPLETED
        profile = pipeline.runner.calls[0][3]
        assert profile.scale_height == 720

    def test_malformed_message_dropped(self, pipeline):
        pipeline.queue.enqueue("video_jobs", "{not json")
        assert pipeline.worker().run_once() == IterationOutcome.DROPPED
        assert pipeline.queue.size("video_jobs") == 0

    def test_malformed_message_dead_lettered(self, pipeline):
        pipeline.queue.enqueue("video_jobs", "{not json")
        worker = pipeline.worker(dead_letter_queue="video_jobs_dead")

        assert worker.run_once() == IterationOutcome.DROPPED
        assert pipeline.queue.dequeue("video_jobs_dead", 0) == "{not json"

    def test_unknown_job_id_dropped(self, pipeline, processing_video):
        _enqueue(pipeline, "no-such-job", processing_video.id, "thumbnail")
        assert pipeline.worker().run_once() == IterationOutcome.DROPPED

    def test_terminal_job_not_reprocessed(self, pipeline, pending_job):
        job = pending_job(JobType.THUMBNAIL)
        pipeline.publisher.publish(job)
        pipeline.publisher.publish(job)

        worker = pipeline.worker()
        assert worker.run_once() == IterationOutcome.COMPLETED
        assert worker.run_once() == IterationOutcome.DROPPED
        assert len(pipeline.runner.calls) == 1

    def test_queue_unavailable_backs_off(self):
        queue = MagicMock(spec=WorkQueue)
        queue.dequeue.side_effect = QueueUnavailable("video_jobs", "connection refused")
        job_store = MagicMock(spec=JobStore)
        stop = MagicMock()

        worker = WorkerLoop(
            "w", queue, job_store, MagicMock(spec=VideoStore), {}, MagicMock(),
            backoff_s=5.0, stop_event=stop,
        )

        assert worker.run_once() == IterationOutcome.BACKOFF
        stop.wait.assert_called_once_with(5.0)
        assert job_store.method_calls == []

    def test_store_failure_while_recording_is_not_fatal(self, pipeline, pending_job):
        job = pending_job(JobType.THUMBNAIL)
        pipeline.publisher.publish(job)

        aggregator = MagicMock()
        aggregator.job_completed.side_effect = StoreUnavailable("video", "disk I/O error")
        worker = pipeline.worker()
        worker.aggregator = aggregator

        assert worker.run_once() == IterationOutcome.COMPLETED
        assert pipeline.job_store.get_by_id(job.id).status == JobStatus.COMPLETED
        aggregator.job_completed.assert_called_once()

    def test_unexpected_exception_fails_job(self, pipeline, pending_job):
        job = pending_job(JobType.THUMBNAIL)
        pipeline.publisher.publish(job)
        pipeline.executors[JobType.THUMBNAIL].execute = MagicMock(side_effect=KeyError("boom"))

        assert pipeline.worker().run_once() == IterationOutcome.FAILED
        assert "KeyError" in pipeline.job_store.get_by_id(job.id).error_message


class TestRun:

    def test_stop_event_ends_loop(self, pipeline):
        stop = threading.Event()
        worker = pipeline.worker(stop_event=stop)
        outcomes = []

        original = worker.run_once

        def run_once():
            outcome = original()
            outcomes.append(outcome)
            if len(outcomes) == 2:
                stop.set()
            return outcome

        worker.run_once = run_once
        worker.run()
        assert outcomes == [IterationOutcome.IDLE, IterationOutcome.IDLE]

    def test_already_stopped_does_nothing(self, pipeline):
        stop = threading.Event()
        stop.set()
        worker = pipeline.worker(stop_event=stop)
        worker.run_once = MagicMock()
        worker.run()
        worker.run_once.assert_not_called()


class TestWorkerId:

    def test_configured_wins(self, monkeypatch):
        monkeypatch.setenv("WORKER_ID", "from-env")
        assert default_worker_id("configured") == "configured"

    def test_env(self, monkeypatch):
        monkeypatch.setenv("WORKER_ID", "from-env")
        assert default_worker_id() == "from-env"

    def test_hostname_pid_fallback(self, monkeypatch):
        monkeypatch.delenv("WORKER_ID", raising=False)
        assert default_worker_id().startswith("worker-")


class TestRunResilience:

    def test_unexpected_error_does_not_end_loop(self, pipeline, caplog):
        stop = threading.Event()
        worker = pipeline.worker(stop_event=stop, backoff_s=0)
        calls = []

        def run_once():
            calls.append(1)
            if len(calls) == 1:
                raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
            stop.set()
            return IterationOutcome.IDLE

        worker.run_once = run_once
        worker.run()

        assert len(calls) == 2
        assert "unexpected error" in caplog.text


def _cooperative_worker(config_data, worker_id, stop_event):
    stop_event.wait(30)


def _stubborn_worker(config_data, worker_id, stop_event):
    # Stands in for a worker stuck in a long ffmpeg run that also ignores SIGTERM
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    time.sleep(30)


class TestWorkerPool:

    @pytest.fixture
    def pool_config(self):
        return PipelineConfig.from_dict({"worker": {"worker_id": "pool", "processes": 2,
                                                    "shutdown_grace_s": 0.5}})

    def test_worker_ids(self, pool_config):
        assert WorkerPool(pool_config).worker_ids() == ["pool-0", "pool-1"]
        assert WorkerPool(pool_config, processes=1).worker_ids() == ["pool"]

    def test_cooperative_workers_exit_on_stop(self, pool_config, monkeypatch):
        monkeypatch.setattr(worker_module, "_worker_main", _cooperative_worker)
        pool = WorkerPool(pool_config)
        pool.start()
        procs = list(pool._procs)
        assert pool.alive() == 2

        started = time.monotonic()
        pool.shutdown()

        assert time.monotonic() - started < 5
        assert [p.exitcode for p in procs] == [0, 0]

    def test_shutdown_bounded_for_stuck_workers(self, pool_config, monkeypatch):
        monkeypatch.setattr(worker_module, "_worker_main", _stubborn_worker)
        pool = WorkerPool(pool_config)
        pool.start()
        procs = list(pool._procs)
        time.sleep(0.5)

        started = time.monotonic()
        pool.shutdown()
        elapsed = time.monotonic() - started

        grace = pool_config.worker.shutdown_grace_s
        assert elapsed < grace + 2 * TERMINATE_TIMEOUT_S + 3
        assert not any(p.is_alive() for p in procs)
        assert pool.alive() == 0


def test_pool_process_restores_default_sigterm(monkeypatch):
    """A pool process inherits the parent's handlers; SIGTERM must kill it again."""
    monkeypatch.setattr("video_pipeline.worker.configure_logging", lambda *a, **k: None)
    monkeypatch.setattr("video_pipeline.runtime.build_services", lambda config: MagicMock())
    monkeypatch.setattr("video_pipeline.worker.build_worker_loop", lambda *a, **k: MagicMock())

    previous_int = signal.getsignal(signal.SIGINT)
    previous_term = signal.signal(signal.SIGTERM, lambda signum, frame: None)
    try:
        worker_module._worker_main(PipelineConfig().model_dump(), "w", threading.Event())
        assert signal.getsignal(signal.SIGTERM) == signal.SIG_DFL
        assert signal.getsignal(signal.SIGINT) == signal.SIG_IGN
    finally:
        signal.signal(signal.SIGTERM, previous_term)
        signal.signal(signal.SIGINT, previous_int)
