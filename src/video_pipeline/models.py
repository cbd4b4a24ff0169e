"""Pydantic models for videos, jobs and queue messages.

This module defines the type-safe records shared by the scheduler, the
workers and the completion aggregator. Records are plain pydantic models;
persistence lives in the store backends.
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import InvalidPayload, InvalidStatusTransition, MessageDecodeError, UnknownJobType


def new_id() -> str:
    """Generate a record identifier (32 hex chars)."""
    return uuid.uuid4().hex


class VideoStatus(str, Enum):
    """Aggregate video states.

    State transitions:
        uploaded   → processing  (fan-out)
        processing → ready       (every owned job completed)
        processing → failed      (any owned job failed)
        ready      → ready       (idempotent re-evaluation)
        failed     → failed      (later failure overwrites the message)
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


VIDEO_TRANSITIONS = {
    VideoStatus.UPLOADED: {VideoStatus.PROCESSING},
    VideoStatus.PROCESSING: {VideoStatus.READY, VideoStatus.FAILED},
    VideoStatus.READY: {VideoStatus.READY},
    VideoStatus.FAILED: {VideoStatus.FAILED},
}


class JobStatus(str, Enum):
    """Job processing states.

    pending → processing (worker dequeued the message)
    processing → completed | failed (terminal, never retried)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    TRANSCODE = "transcode"
    THUMBNAIL = "thumbnail"


class VideoFormat(BaseModel):
    """One transcoded rendition of a video."""

    quality: str = Field(..., description="Quality tier tag, e.g. 720p")
    filename: str = Field(..., description="Object name of the rendition")
    size: int = Field(default=0, ge=0, description="Artifact size in bytes")


class Video(BaseModel):
    """Video metadata and aggregate processing status."""

    id: str = Field(default_factory=new_id, description="Video identifier")
    title: str = Field(default="", description="Display title")
    description: str = Field(default="", description="Free-form description")
    uploaded_by: str = Field(default="", description="Uploader name")
    original_filename: str = Field(default="", description="Filename as uploaded")
    duration: float = Field(default=0.0, ge=0.0, description="Duration in seconds")
    size: int = Field(default=0, ge=0, description="Source size in bytes")
    status: VideoStatus = Field(default=VideoStatus.UPLOADED, description="Aggregate status")
    formats: List[VideoFormat] = Field(default_factory=list, description="Renditions (append-only)")
    thumbnails: List[str] = Field(default_factory=list, description="Thumbnail names (append-only)")
    error_message: Optional[str] = Field(default=None, description="First/last failure text")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def transition_to(self, status: VideoStatus, error_message: Optional[str] = None) -> None:
        """Move to ``status``, enforcing the video state machine."""
        status = VideoStatus(status)
        if status not in VIDEO_TRANSITIONS[self.status]:
            raise InvalidStatusTransition("video", self.status.value, status.value)
        self.status = status
        if status == VideoStatus.FAILED:
            self.error_message = error_message
        self.updated_at = datetime.now()

    def add_format(self, quality: str, filename: str, size: int) -> None:
        self.formats.append(VideoFormat(quality=quality, filename=filename, size=size))
        self.updated_at = datetime.now()

    def add_thumbnail(self, filename: str) -> None:
        self.thumbnails.append(filename)
        self.updated_at = datetime.now()

    @property
    def extension(self) -> str:
        """Extension of the original upload, including the dot."""
        name = self.original_filename
        dot = name.rfind(".")
        return name[dot:] if dot > 0 else ""


class Job(BaseModel):
    """One unit of processing work owned by exactly one video."""

    id: str = Field(default_factory=new_id, description="Job identifier")
    video_id: str = Field(..., description="Owning video")
    type: JobType = Field(..., description="Executor kind")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    progress: int = Field(default=0, ge=0, le=100, description="Coarse progress percentage")
    error_message: Optional[str] = Field(default=None, description="Set only on failure")
    worker_id: Optional[str] = Field(default=None, description="Worker that claimed the job")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Type-specific parameters")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    @classmethod
    def new(cls, video_id: str, job_type: JobType, payload: Optional[Dict[str, Any]] = None) -> "Job":
        """New pending job; raises InvalidPayload if ``payload`` does not fit ``job_type``."""
        task = parse_task(JobType(job_type).value, payload or {})
        return cls(video_id=video_id, type=job_type, payload=task.model_dump(exclude={"kind"}))

    def start(self, worker_id: str) -> None:
        now = datetime.now()
        self.status = JobStatus.PROCESSING
        self.worker_id = worker_id
        self.started_at = now
        self.updated_at = now

    def update_progress(self, progress: int) -> None:
        if progress < 0 or progress > 100:
            raise ValueError(f"invalid progress value: {progress}")
        self.progress = progress
        self.updated_at = datetime.now()

    def complete(self) -> None:
        now = datetime.now()
        self.status = JobStatus.COMPLETED
        self.progress = 100
        self.completed_at = now
        self.updated_at = now

    def fail(self, error_message: str) -> None:
        now = datetime.now()
        self.status = JobStatus.FAILED
        self.error_message = error_message
        self.completed_at = now
        self.updated_at = now

    def is_completed(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status == JobStatus.FAILED

    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# Typed task payloads, discriminated by the job type tag.

class TranscodePayload(BaseModel):
    kind: Literal["transcode"] = "transcode"
    quality: str = Field(..., min_length=1, description="Quality tier tag")


class ThumbnailPayload(BaseModel):
    kind: Literal["thumbnail"] = "thumbnail"


TaskPayload = Annotated[Union[TranscodePayload, ThumbnailPayload], Field(discriminator="kind")]

_task_adapter = TypeAdapter(TaskPayload)


def parse_task(job_type: str, payload: Dict[str, Any]) -> Union[TranscodePayload, ThumbnailPayload]:
    """Decode a raw payload map into its typed variant.

    Raises:
        UnknownJobType: ``job_type`` is not a known tag
        InvalidPayload: the tag is known but the payload does not validate
    """
    known = {t.value for t in JobType}
    if job_type not in known:
        raise UnknownJobType(job_type)

    data = dict(payload or {})
    data["kind"] = job_type
    try:
        return _task_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidPayload(job_type, "; ".join(err["msg"] for err in e.errors()))


class JobMessage(BaseModel):
    """Queue wire message: ``{id, video_id, type, payload}``.

    ``type`` stays a raw string so an unrecognized tag still decodes and is
    failed at dispatch rather than dropped.
    """

    id: str = Field(..., min_length=1)
    video_id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Job) -> "JobMessage":
        return cls(id=job.id, video_id=job.video_id, type=job.type.value, payload=dict(job.payload))

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, raw: Union[str, bytes]) -> "JobMessage":
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MessageDecodeError(f"not utf-8: {e}")

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MessageDecodeError(f"invalid JSON: {e}", raw)

        if not isinstance(data, dict):
            raise MessageDecodeError("message is not a JSON object", raw)

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MessageDecodeError(str(e), raw)
