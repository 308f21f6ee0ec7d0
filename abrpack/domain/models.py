from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from abrpack.domain.errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.READY, JobStatus.ERROR},
    JobStatus.READY: set(),
    JobStatus.ERROR: set(),
}


class VideoMetadata(BaseModel):
    duration: float = 0.0
    width: int = 0
    height: int = 0


class Rendition(BaseModel):
    """One step of the bitrate ladder. Bitrates are in kbps."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    bitrate: int = Field(gt=0)
    maxrate: int = Field(gt=0)
    bufsize: int = Field(gt=0)
    profile: str = "main"

    @property
    def name(self) -> str:
        """Directory and label of the rendition, e.g. ``720p``."""
        return f"{self.height}p"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Bits per second, as advertised in the master playlist."""
        return self.bitrate * 1000


class VideoJob(BaseModel):
    """Registry record for one uploaded video.

    Records are frozen: every change goes through :meth:`transition`, which
    returns a new record, so a registry reader never sees a half-written job.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus = JobStatus.PENDING
    title: str = "Untitled"
    description: str = ""
    source_key: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    result_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @model_validator(mode="after")
    def check_status_fields(self):
        if self.status == JobStatus.READY:
            if not self.result_url or not self.thumbnail_url:
                raise ValueError("ready job requires both result_url and thumbnail_url")
        elif self.result_url is not None or self.thumbnail_url is not None:
            raise ValueError(f"{self.status.value} job must not carry result URLs")
        if self.status == JobStatus.ERROR and not self.error_message:
            raise ValueError("error job requires an error_message")
        if self.status != JobStatus.ERROR and self.error_message is not None:
            raise ValueError(f"{self.status.value} job must not carry an error_message")
        return self

    def transition(self, status: JobStatus, **fields) -> "VideoJob":
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id}: illegal transition {self.status.value} -> {status.value}"
            )
        data = self.model_dump()
        data.update(fields)
        data["status"] = status
        data["updated_at"] = utcnow()
        return VideoJob(**data)

    def mark_processing(self) -> "VideoJob":
        return self.transition(JobStatus.PROCESSING)

    def mark_ready(self, result_url: str, thumbnail_url: str, metadata: VideoMetadata) -> "VideoJob":
        return self.transition(
            JobStatus.READY,
            result_url=result_url,
            thumbnail_url=thumbnail_url,
            duration=metadata.duration,
            width=metadata.width,
            height=metadata.height,
        )

    def mark_error(self, message: str) -> "VideoJob":
        return self.transition(JobStatus.ERROR, error_message=message or "Unknown error")
