"""Domain events for the packaging pipeline.

Events flow through the EventBus so the CLI (and anything else interested) can
follow job progress without the scheduler knowing about it.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pydantic import BaseModel

from .models import Rendition, VideoJob


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a specific job."""

    job: VideoJob


class JobQueued(JobEvent):
    """Emitted when an upload creates a pending job."""

    pass


class JobStarted(JobEvent):
    """Emitted when the scheduler claims a job (status is processing)."""

    pass


class JobCompleted(JobEvent):
    """Emitted after the ready record is written."""

    pass


class JobFailed(JobEvent):
    """Emitted after the error record is written."""

    error_message: str


class RenditionEvent(Event):
    job_id: str
    rendition: Rendition


class RenditionCompleted(RenditionEvent):
    elapsed_s: float = 0.0


class RenditionFailed(RenditionEvent):
    error_message: str
    cancelled: bool = False


class ManifestBuilt(Event):
    job_id: str
    renditions: int


class FiringSkipped(Event):
    """Emitted when a scheduler tick finds the previous drain still running."""

    pass
