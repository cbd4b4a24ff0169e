"""Turns persisted jobs into wire messages on the shared work queue."""

import logging

from ..models import Job, JobMessage
from .backends import WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_NAME = "video_jobs"


class JobPublisher:
    """Enqueue ``{id, video_id, type, payload}`` messages for workers."""

    def __init__(self, queue: WorkQueue, queue_name: str = DEFAULT_QUEUE_NAME):
        self.queue = queue
        self.queue_name = queue_name

    def publish(self, job: Job) -> None:
        """Publish a job that is already persisted.

        Raises:
            QueueUnavailable: the queue backend cannot be reached
        """
        self._send(JobMessage.from_job(job))

    def _send(self, message: JobMessage) -> None:
        self.queue.enqueue(self.queue_name, message.to_wire())
        logger.debug("Published %s job %s for video %s to %s",
                     message.type, message.id, message.video_id, self.queue_name)
