"""Completion aggregation: derive a video's status from its jobs.

The aggregator re-scans every sibling job instead of counting down, so it
is safe to run from several workers at once in any order. Concurrent
evaluations that all see "every job completed" write the same value
(ready), which converges instead of racing.
"""

import logging
from typing import Iterable, Optional

from .errors import InvalidStatusTransition
from .models import Job, VideoStatus
from .queue.backends import JobStore, VideoStore

logger = logging.getLogger(__name__)


def derive_video_status(jobs: Iterable[Job]) -> Optional[VideoStatus]:
    """Aggregate status implied by a set of jobs.

    Returns:
        FAILED if any job failed, READY if there is at least one job and all
        are completed, PROCESSING otherwise, None when there are no jobs
    """
    jobs = list(jobs)
    if not jobs:
        return None
    if any(job.is_failed() for job in jobs):
        return VideoStatus.FAILED
    if all(job.is_completed() for job in jobs):
        return VideoStatus.READY
    return VideoStatus.PROCESSING


class CompletionAggregator:
    """Re-evaluates video status whenever one of its jobs turns terminal."""

    def __init__(self, job_store: JobStore, video_store: VideoStore):
        self.job_store = job_store
        self.video_store = video_store

    def evaluate(self, video_id: str) -> Optional[VideoStatus]:
        """Status the video should have according to its jobs (read-only)."""
        return derive_video_status(self.job_store.get_by_video_id(video_id))

    def job_completed(self, video_id: str) -> Optional[VideoStatus]:
        """Mark the video ready if every owned job is completed.

        Idempotent: a video that is already ready is left untouched.

        Returns:
            READY when the video is (now) ready, None if siblings are still
            outstanding or one of them failed
        """
        jobs = self.job_store.get_by_video_id(video_id)
        if not jobs or not all(job.is_completed() for job in jobs):
            return None

        video = self.video_store.get_by_id(video_id)
        if video.status == VideoStatus.READY:
            logger.debug("Video %s already ready", video_id)
            return VideoStatus.READY

        try:
            self.video_store.update_status(video_id, VideoStatus.READY)
        except InvalidStatusTransition as e:
            logger.warning("Video %s not marked ready: %s", video_id, e)
            return None

        logger.info("Video processing completed successfully: video_id=%s jobs=%d",
                    video_id, len(jobs))
        return VideoStatus.READY

    def job_failed(self, video_id: str, error_message: str) -> VideoStatus:
        """Fail the video immediately; a later failure overwrites the message."""
        self.video_store.update_status(video_id, VideoStatus.FAILED, error_message)
        logger.info("Video marked failed: video_id=%s error=%s", video_id, error_message)
        return VideoStatus.FAILED
