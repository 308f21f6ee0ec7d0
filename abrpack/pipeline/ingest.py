"""Ingestion side of the registry: uploads create jobs, clients read status."""

import logging
import mimetypes
import secrets
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from pydantic import BaseModel

from abrpack.config.models import AppConfig
from abrpack.domain.errors import NotFoundError, ValidationError
from abrpack.domain.events import JobQueued
from abrpack.domain.models import JobStatus, VideoJob
from abrpack.infrastructure.event_bus import EventBus
from abrpack.infrastructure.storage import StorageBackend
from abrpack.pipeline.manifest import sub_manifest_path
from abrpack.pipeline.packager import master_key, thumbnail_key, video_prefix
from abrpack.pipeline.registry import JobRegistry
from abrpack.pipeline.scheduler import default_source_key

# mimetypes does not know every container browsers send
_EXTENSION_OVERRIDES = {
    "video/quicktime": "mov",
    "video/x-matroska": "mkv",
    "video/x-msvideo": "avi",
    "video/x-ms-wmv": "wmv",
    "video/x-flv": "flv",
    "video/x-m4v": "m4v",
    "video/mpeg": "mpg",
    "video/3gpp": "3gp",
}


def generate_job_id() -> str:
    """24 hex chars from 12 random bytes."""
    return secrets.token_hex(12)


class ExpectedUrls(BaseModel):
    video: str
    thumbnail: str
    variants: Dict[str, str]


class IngestService:
    def __init__(
        self,
        config: AppConfig,
        registry: JobRegistry,
        storage: StorageBackend,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.registry = registry
        self.storage = storage
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

    def validate_upload(self, content_type: Optional[str], size: int):
        upload = self.config.upload
        content_type = (content_type or "").split(";")[0].strip().lower()
        if not content_type:
            raise ValidationError("Missing content type")
        allowed = content_type in upload.allowed_types or (
            upload.allow_all_video and content_type.startswith("video/")
        )
        if not allowed:
            raise ValidationError("Invalid file type. Only supported video formats are allowed.")
        if size <= 0:
            raise ValidationError("No file uploaded")
        if size > upload.max_file_size:
            raise ValidationError(f"File too large: {size} bytes (limit {upload.max_file_size})")

    @staticmethod
    def _extension(content_type: str, filename: Optional[str]) -> str:
        if filename:
            suffix = PurePosixPath(filename).suffix.lstrip(".").lower()
            if suffix.isalnum():
                return suffix
        content_type = content_type.split(";")[0].strip().lower()
        if content_type in _EXTENSION_OVERRIDES:
            return _EXTENSION_OVERRIDES[content_type]
        guessed = mimetypes.guess_extension(content_type)
        return guessed.lstrip(".") if guessed else "mp4"

    def upload(
        self,
        data: bytes,
        content_type: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> VideoJob:
        """Validates and stores the original, then creates the pending job."""
        self.validate_upload(content_type, len(data))
        job_id = generate_job_id()
        source_key = default_source_key(job_id, self._extension(content_type, filename))
        self.storage.upload(data, content_type.split(";")[0].strip(), source_key)
        self.logger.info(f"UPLOAD: {job_id} bytes={len(data)} key={source_key}")
        return self.enqueue(job_id, title, description, source_key=source_key)

    def enqueue(
        self,
        job_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        source_key: Optional[str] = None,
    ) -> VideoJob:
        job = VideoJob(
            id=job_id,
            title=title or "Untitled",
            description=description or "",
            source_key=source_key or default_source_key(job_id),
        )
        if not self.registry.put_if_absent(job):
            raise ValidationError(f"Job id already exists: {job_id}")
        self.event_bus.publish(JobQueued(job=job))
        return job

    def get_status(self, job_id: str) -> Optional[VideoJob]:
        return self.registry.get(job_id)

    def require(self, job_id: str) -> VideoJob:
        job = self.registry.get(job_id)
        if job is None:
            raise NotFoundError(f"Video not found: {job_id}")
        return job

    def list_all(self) -> Dict[JobStatus, List[VideoJob]]:
        """All jobs grouped by status, newest first within each group."""
        groups: Dict[JobStatus, List[VideoJob]] = {status: [] for status in JobStatus}
        for _, job in self.registry.items():
            groups[job.status].append(job)
        for jobs in groups.values():
            jobs.sort(key=lambda j: j.created_at, reverse=True)
        return groups

    def expected_urls(self, job_id: str) -> ExpectedUrls:
        prefix = video_prefix(job_id)
        return ExpectedUrls(
            video=self.storage.public_url(master_key(job_id)),
            thumbnail=self.storage.public_url(thumbnail_key(job_id)),
            variants={
                r.name: self.storage.public_url(f"{prefix}/{sub_manifest_path(r)}")
                for r in self.config.renditions
            },
        )
