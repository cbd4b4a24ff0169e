from __future__ import annotations

"""Abstract base classes for the work queue and the record stores.

This module defines the interfaces the orchestration core relies on. The
local-first implementations live in sqlite_backend (queue + both stores in
one SQLite file); redis_backend provides a distributed WorkQueue.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional, Union

if TYPE_CHECKING:
    from ..models import Job, JobStatus, Video, VideoFormat, VideoStatus


class WorkQueue(ABC):
    """Named, ordered, blocking hand-off channel.

    Implementations must provide:
    - FIFO order per queue name across all producers/consumers
    - Delivery of each message to exactly one successful dequeuer
    - No redelivery: a dequeued message is gone whatever the consumer does
    """

    @abstractmethod
    def enqueue(self, queue_name: str, message: Union[str, bytes]) -> None:
        """Append ``message`` to the tail of ``queue_name``.

        Raises:
            QueueUnavailable: the queue backend cannot be reached
        """
        pass

    @abstractmethod
    def dequeue(self, queue_name: str, timeout: float) -> Optional[Union[str, bytes]]:
        """Remove and return the head message, waiting up to ``timeout`` seconds.

        Returns:
            The message as stored (text, or raw bytes for byte-oriented
            backends), or None if nothing arrived before the timeout
            (an empty queue is not an error)

        Raises:
            QueueUnavailable: the queue backend cannot be reached
        """
        pass

    @abstractmethod
    def size(self, queue_name: str) -> int:
        """Number of messages waiting in ``queue_name``."""
        pass

    def close(self) -> None:
        """Release connections (optional)."""
        pass


class JobStore(ABC):
    """Persistent job records keyed by job id.

    Implementations must provide atomic single-document writes. There is no
    optimistic-concurrency check: the last writer wins.
    """

    @abstractmethod
    def create(self, job: "Job") -> None:
        """Insert a new job.

        Raises:
            DuplicateJobError: a job with the same id exists
        """
        pass

    @abstractmethod
    def get_by_id(self, job_id: str) -> "Job":
        """Fetch one job.

        Raises:
            JobNotFoundError: no such job
        """
        pass

    @abstractmethod
    def update(self, job: "Job") -> None:
        """Replace the stored document with ``job``.

        Raises:
            JobNotFoundError: no such job
        """
        pass

    @abstractmethod
    def delete(self, job_id: str) -> None:
        pass

    @abstractmethod
    def get_by_video_id(self, video_id: str) -> List["Job"]:
        """All jobs owned by ``video_id``, in no particular order."""
        pass

    @abstractmethod
    def get_by_status(self, status: "JobStatus") -> List["Job"]:
        pass

    @abstractmethod
    def get_pending_jobs(self, limit: int) -> List["Job"]:
        """Oldest-first pending jobs, at most ``limit``."""
        pass

    @abstractmethod
    def get_active_jobs(self) -> List["Job"]:
        """All jobs currently in ``processing``."""
        pass


class VideoStore(ABC):
    """Persistent video records and their aggregate status.

    The append_* and update_status operations are atomic read-modify-write
    on a single document, so concurrent workers never lose each other's
    artifacts.
    """

    @abstractmethod
    def create(self, video: "Video") -> None:
        pass

    @abstractmethod
    def get_by_id(self, video_id: str) -> "Video":
        """Raises VideoNotFoundError if absent."""
        pass

    @abstractmethod
    def update(self, video: "Video") -> None:
        """Full-document replace; raises VideoNotFoundError if absent."""
        pass

    @abstractmethod
    def append_format(self, video_id: str, video_format: "VideoFormat") -> None:
        pass

    @abstractmethod
    def append_thumbnail(self, video_id: str, filename: str) -> None:
        pass

    @abstractmethod
    def update_status(
        self,
        video_id: str,
        status: "VideoStatus",
        error_message: Optional[str] = None
    ) -> "Video":
        """Apply a state-machine transition and return the stored video.

        Raises:
            VideoNotFoundError: no such video
            InvalidStatusTransition: the transition is not allowed
        """
        pass

    @abstractmethod
    def get_by_status(self, status: "VideoStatus") -> List["Video"]:
        pass

    @abstractmethod
    def list_videos(self, limit: int = 50, offset: int = 0) -> List["Video"]:
        """Newest-first page of videos."""
        pass
