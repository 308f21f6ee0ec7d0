"""Error taxonomy for the packaging pipeline.

Everything raised on purpose derives from :class:`AbrPackError`. Pipeline-stage
errors (encoder, storage, source file) are caught at the job boundary and folded
into the job's ``error`` status; they never stop the scheduler.
"""


class AbrPackError(Exception):
    """Base class for all errors raised by abrpack."""


class ValidationError(AbrPackError):
    """Upload rejected before a job is created (bad type, size, duplicate id)."""


class NotFoundError(AbrPackError):
    """Unknown job identifier."""


class InvalidTransitionError(AbrPackError):
    """A job status change that would break the pending -> processing -> terminal order."""


class SourceFileError(AbrPackError):
    """Staged source file is missing or unreadable."""


class EncoderError(AbrPackError):
    """Base class for failures of the external encoding tools."""


class ProbeError(EncoderError):
    pass


class ThumbnailError(EncoderError):
    pass


class TranscodeError(EncoderError):
    def __init__(self, message: str, rendition: str = ""):
        super().__init__(message)
        self.rendition = rendition


class TranscodeCancelled(TranscodeError):
    """Encode stopped because a sibling rendition already failed."""


class StorageError(AbrPackError):
    pass


class ResourceCleanupError(AbrPackError):
    """Workspace removal failed. Logged only; never changes a job outcome."""
