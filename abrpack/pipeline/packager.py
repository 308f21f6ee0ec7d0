"""Per-job packaging pipeline: probe, thumbnail, rendition fan-out, manifest, upload.

The packager owns the job's scratch workspace and removes it (and the staged
source) whatever the outcome. It returns a PackageResult on success and raises
an AbrPackError subclass on failure; writing the registry record is the
scheduler's job.
"""

import concurrent.futures
import logging
import os
import threading
import time
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from abrpack.config.models import AppConfig
from abrpack.domain.errors import SourceFileError, StorageError, TranscodeCancelled, TranscodeError
from abrpack.domain.events import ManifestBuilt, RenditionCompleted, RenditionFailed
from abrpack.domain.models import Rendition, VideoMetadata
from abrpack.infrastructure.event_bus import EventBus
from abrpack.infrastructure.ffmpeg import FFmpegAdapter
from abrpack.infrastructure.ffprobe import FFprobeAdapter
from abrpack.infrastructure.storage import StorageBackend, UploadItem, content_type_for
from abrpack.infrastructure.workspace import Workspace
from abrpack.pipeline.manifest import MASTER_NAME, build_master_manifest


def thumbnail_key(job_id: str) -> str:
    return f"thumbnails/{job_id}.jpg"


def video_prefix(job_id: str) -> str:
    return f"videos/{job_id}"


def master_key(job_id: str) -> str:
    return f"{video_prefix(job_id)}/{MASTER_NAME}"


class PackageResult(BaseModel):
    result_url: str
    thumbnail_url: str
    metadata: VideoMetadata


class Packager:
    def __init__(
        self,
        config: AppConfig,
        storage: StorageBackend,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.storage = storage
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

    @property
    def renditions(self) -> List[Rendition]:
        return self.config.renditions

    def workspace_for(self, job_id: str) -> Workspace:
        return Workspace(self.config.general.scratch_dir, job_id)

    def package(self, job_id: str, source_path: Path) -> PackageResult:
        workspace = self.workspace_for(job_id)
        try:
            self._check_source(source_path)
            workspace.create()

            metadata = self.ffprobe_adapter.probe(source_path)
            self.logger.info(
                f"PROBE: {job_id} duration={metadata.duration:.2f}s size={metadata.width}x{metadata.height}"
            )

            thumbnail_url = self._publish_thumbnail(job_id, source_path, workspace)
            self._encode_renditions(job_id, source_path, workspace)
            self._write_master_manifest(job_id, workspace)

            uploaded = dict(self.storage.upload_batch(self._collect_outputs(job_id, workspace)))
            result_url = uploaded.get(master_key(job_id))
            if not result_url:
                raise StorageError("Failed to get master playlist URL")
            self.logger.info(f"UPLOADED: {job_id} files={len(uploaded)}")

            return PackageResult(result_url=result_url, thumbnail_url=thumbnail_url, metadata=metadata)
        finally:
            workspace.cleanup(extra_paths=[source_path])

    def _check_source(self, source_path: Path):
        if not source_path.is_file():
            raise SourceFileError(f"Source file not found: {source_path}")
        if not os.access(source_path, os.R_OK):
            raise SourceFileError(f"Source file is not readable: {source_path}")

    def _publish_thumbnail(self, job_id: str, source_path: Path, workspace: Workspace) -> str:
        encoder = self.config.encoder
        image = self.ffmpeg_adapter.thumbnail(
            source_path, encoder.thumbnail_offset_s, encoder.thumbnail_size, workspace.thumbnail_path
        )
        return self.storage.upload(image, "image/jpeg", thumbnail_key(job_id))

    def _encode_one(
        self,
        job_id: str,
        source_path: Path,
        rendition: Rendition,
        output_dir: Path,
        cancel_event: threading.Event,
    ) -> Path:
        start = time.monotonic()
        try:
            result = self.ffmpeg_adapter.transcode(source_path, rendition, output_dir, cancel_event=cancel_event)
        except TranscodeError as exc:
            self.event_bus.publish(RenditionFailed(
                job_id=job_id,
                rendition=rendition,
                error_message=str(exc),
                cancelled=isinstance(exc, TranscodeCancelled),
            ))
            raise
        self.event_bus.publish(RenditionCompleted(
            job_id=job_id, rendition=rendition, elapsed_s=time.monotonic() - start
        ))
        return result

    def _encode_renditions(self, job_id: str, source_path: Path, workspace: Workspace):
        """Runs every rendition encode in parallel; all or nothing.

        On the first failure the shared cancel event stops the remaining
        encodes. The executor is always joined before returning so no encode
        is still writing when the workspace is removed.
        """
        for rendition in self.renditions:
            workspace.rendition_dir(rendition).mkdir(parents=True, exist_ok=True)

        cancel_event = threading.Event()
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=len(self.renditions), thread_name_prefix=f"encode-{job_id[:8]}"
        ) as executor:
            futures = [
                executor.submit(
                    self._encode_one, job_id, source_path, rendition,
                    workspace.rendition_dir(rendition), cancel_event,
                )
                for rendition in self.renditions
            ]
            done, not_done = concurrent.futures.wait(
                futures, return_when=concurrent.futures.FIRST_EXCEPTION
            )
            if not_done:
                self.logger.info(f"ENCODE_ABORT: {job_id} cancelling {len(not_done)} remaining renditions")
                cancel_event.set()
                for future in not_done:
                    future.cancel()
                concurrent.futures.wait(not_done)

        failures = [
            future.exception() for future in futures
            if not future.cancelled() and future.exception() is not None
        ]
        if failures:
            real = [exc for exc in failures if not isinstance(exc, TranscodeCancelled)]
            raise (real or failures)[0]

    def _write_master_manifest(self, job_id: str, workspace: Workspace):
        workspace.manifest_path.write_text(build_master_manifest(self.renditions), encoding="utf-8")
        self.event_bus.publish(ManifestBuilt(job_id=job_id, renditions=len(self.renditions)))

    def _collect_outputs(self, job_id: str, workspace: Workspace) -> List[UploadItem]:
        prefix = video_prefix(job_id)
        items = [UploadItem(workspace.manifest_path, content_type_for(MASTER_NAME), master_key(job_id))]
        for rendition in self.renditions:
            for path in sorted(workspace.rendition_dir(rendition).iterdir()):
                if not path.is_file() or path.suffix == ".tmp":
                    continue
                items.append(UploadItem(path, content_type_for(path.name), f"{prefix}/{rendition.name}/{path.name}"))
        return items
