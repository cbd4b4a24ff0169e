"""End-to-end: upload, fan-out, workers, aggregation over one SQLite database."""

import logging
import threading

from video_pipeline.models import JobStatus, JobType, VideoStatus
from video_pipeline.worker import IterationOutcome

from conftest import FakeRunner, Pipeline


def _drain(worker):
    outcomes = []
    while True:
        outcome = worker.run_once()
        if outcome == IterationOutcome.IDLE:
            return outcomes
        outcomes.append(outcome)


def test_one_failed_transcode_fails_video(pipeline, sample_video_file):
    pipeline.runner.fail_heights = {480}
    video = pipeline.uploads.upload_file(sample_video_file, title="Holiday")

    jobs = pipeline.job_store.get_by_video_id(video.id)
    assert sorted(j.type.value for j in jobs) == ["thumbnail", "transcode", "transcode", "transcode"]

    outcomes = _drain(pipeline.worker())
    assert sorted(outcomes) == sorted([IterationOutcome.COMPLETED] * 3 + [IterationOutcome.FAILED])

    failed = [j for j in pipeline.job_store.get_by_video_id(video.id) if j.status == JobStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].payload == {"quality": "480p"}

    stored = pipeline.video_store.get_by_id(video.id)
    assert stored.status == VideoStatus.FAILED
    assert stored.error_message == failed[0].error_message
    # completed siblings still recorded their artifacts
    assert sorted(f.quality for f in stored.formats) == ["1080p", "720p"]
    assert len(stored.thumbnails) == 1


def test_all_jobs_complete_video_ready(pipeline, sample_video_file):
    video = pipeline.uploads.upload_file(sample_video_file)
    assert video.status == VideoStatus.PROCESSING

    outcomes = _drain(pipeline.worker())
    assert outcomes == [IterationOutcome.COMPLETED] * 4

    stored = pipeline.video_store.get_by_id(video.id)
    assert stored.status == VideoStatus.READY
    assert sorted(f.quality for f in stored.formats) == ["1080p", "480p", "720p"]
    assert stored.thumbnails == [f"{video.id}_thumb.jpg"]
    assert stored.error_message is None

    for fmt in stored.formats:
        assert pipeline.storage.stat("videos", fmt.filename) == fmt.size

    # 1080p and 720p renditions share the 720-line profile
    heights = {call[2].rsplit("_", 1)[-1]: call[3].scale_height
               for call in pipeline.runner.calls if call[0] == "transcode"}
    assert heights == {"480p.mp4": 480, "720p.mp4": 720, "1080p.mp4": 720}


def test_concurrent_last_jobs_converge_on_ready(pipeline, sample_video_file, db_path, tmp_path, caplog):
    """Two workers finish the last two jobs at once; both aggregate without error."""
    video = pipeline.uploads.upload_file(sample_video_file)

    first = pipeline.worker("worker-main")
    assert first.run_once() == IterationOutcome.COMPLETED
    assert first.run_once() == IterationOutcome.COMPLETED

    barrier = threading.Barrier(2)
    outcomes = {}

    def work(worker_id):
        own = Pipeline(db_path, tmp_path / "storage", FakeRunner())
        try:
            worker = own.worker(worker_id)
            barrier.wait()
            outcomes[worker_id] = worker.run_once()
        finally:
            own.close()

    caplog.set_level(logging.INFO, logger="video_pipeline")
    threads = [threading.Thread(target=work, args=(f"worker-{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes == {"worker-0": IterationOutcome.COMPLETED, "worker-1": IterationOutcome.COMPLETED}
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    jobs = pipeline.job_store.get_by_video_id(video.id)
    assert all(j.status == JobStatus.COMPLETED for j in jobs)
    assert {j.worker_id for j in jobs if j.type == JobType.TRANSCODE} >= {"worker-0", "worker-1"}

    stored = pipeline.video_store.get_by_id(video.id)
    assert stored.status == VideoStatus.READY
    assert len(stored.formats) == 3
