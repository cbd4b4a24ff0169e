"""
Error taxonomy for the job-orchestration pipeline.

All errors inherit from PipelineError for easy catching.
The worker loop separates loop-level errors (QueueUnavailable) from
per-job errors (everything raised while executing a task).
"""


class PipelineError(Exception):
    """Base exception for all pipeline failures."""
    pass


class QueueUnavailable(PipelineError):
    """Raised when the work queue cannot be reached (transient)."""

    def __init__(self, queue_name: str, reason: str):
        self.queue_name = queue_name
        self.reason = reason
        super().__init__(f"Queue {queue_name} unavailable: {reason}")


class MessageDecodeError(PipelineError):
    """Raised when a dequeued message cannot be decoded."""

    def __init__(self, reason: str, raw: str = ""):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Failed to decode job message: {reason}")


class UnknownJobType(PipelineError):
    """Raised when a message carries a job type no executor handles."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"unknown job type: {job_type}")


class InvalidPayload(PipelineError):
    """Raised when a known job type carries a malformed payload."""

    def __init__(self, job_type: str, reason: str):
        self.job_type = job_type
        self.reason = reason
        super().__init__(f"invalid {job_type} payload: {reason}")


class TaskExecutionError(PipelineError):
    """Raised by task executors on download, tool or upload failure.

    The message is recorded verbatim on both the job and its video.
    """
    pass


class StoreUnavailable(PipelineError):
    """Raised when the job or video store engine fails."""

    def __init__(self, store: str, reason: str):
        self.store = store
        self.reason = reason
        super().__init__(f"{store} store unavailable: {reason}")


class NotFoundError(PipelineError):
    """Base class for missing records."""
    pass


class JobNotFoundError(NotFoundError):
    """Raised when a job cannot be found in the job store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job not found: {job_id}")


class VideoNotFoundError(NotFoundError):
    """Raised when a video cannot be found in the video store."""

    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__(f"video not found: {video_id}")


class DuplicateError(PipelineError):
    """Base class for identity collisions on create."""
    pass


class DuplicateJobError(DuplicateError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job already exists: {job_id}")


class DuplicateVideoError(DuplicateError):
    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__(f"video already exists: {video_id}")


class InvalidStatusTransition(PipelineError):
    """Raised when attempting an illegal video state transition."""

    def __init__(self, entity_type: str, current_state: str, target_state: str):
        self.entity_type = entity_type
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid {entity_type} state transition: "
            f"{current_state} -> {target_state}"
        )


class InvalidUpload(PipelineError):
    """Raised when upload metadata fails validation."""
    pass


class StorageError(PipelineError):
    """Raised when an object-storage operation fails."""

    def __init__(self, bucket: str, key: str, reason: str):
        self.bucket = bucket
        self.key = key
        self.reason = reason
        super().__init__(f"{bucket}/{key}: {reason}")


class ObjectNotFound(StorageError):
    """Raised when an object does not exist in its bucket."""

    def __init__(self, bucket: str, key: str):
        super().__init__(bucket, key, "no such key")
