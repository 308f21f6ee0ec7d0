"""Polling worker loop.

Fires every ``poll_interval_s`` seconds and drains pending jobs one at a time.
A firing that finds the previous one still draining is skipped, never queued.
Concurrency exists only inside a job (rendition fan-out), never across jobs.
"""

import logging
import threading
import time
from pathlib import PurePosixPath
from typing import Optional

from abrpack.config.models import AppConfig
from abrpack.domain.errors import AbrPackError
from abrpack.domain.events import FiringSkipped, JobCompleted, JobFailed, JobStarted
from abrpack.domain.models import JobStatus, VideoJob
from abrpack.infrastructure.event_bus import EventBus
from abrpack.infrastructure.storage import StorageBackend
from abrpack.pipeline.packager import Packager
from abrpack.pipeline.registry import JobRegistry


def default_source_key(job_id: str, extension: str = "mp4") -> str:
    return f"uploads/{job_id}/original.{extension}"


class Scheduler:
    def __init__(
        self,
        config: AppConfig,
        registry: JobRegistry,
        storage: StorageBackend,
        packager: Packager,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.registry = registry
        self.storage = storage
        self.packager = packager
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

        self._busy = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        return self.config.general.poll_interval_s

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Starts the ticker thread. A second call while running does nothing."""
        with self._state_lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="abrpack-scheduler")
            self._thread.start()
        self.logger.info(f"Scheduler started (interval={self.interval:g}s)")

    def stop(self, timeout: Optional[float] = None):
        """Cancels future firings. A job already in the pipeline runs to completion."""
        with self._state_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self.logger.info("Scheduler stopped")

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                self.logger.exception("Scheduler firing failed; retrying on the next tick")

    def run_once(self) -> Optional[int]:
        """One firing: drains pending jobs sequentially.

        Returns the number of jobs processed, or None when another firing
        still holds the worker.
        """
        if not self._busy.acquire(blocking=False):
            self.logger.debug("FIRING_SKIPPED: previous firing still running")
            self.event_bus.publish(FiringSkipped())
            return None
        processed = 0
        try:
            while True:
                try:
                    job = self.registry.claim_next_pending()
                except Exception as e:
                    self.logger.error(f"Pending job scan failed, aborting this firing: {e}")
                    break
                if job is None:
                    break
                self.process_job(job)
                processed += 1
        finally:
            self._busy.release()
        return processed

    def process_job(self, job: VideoJob) -> VideoJob:
        """Runs one claimed job through the pipeline and writes its final record.

        Errors end this job only: they become the record's error_message.
        """
        start_time = time.monotonic()
        self.logger.info(f"JOB_START: {job.id} ({job.title})")

        source_key = job.source_key or default_source_key(job.id)
        suffix = PurePosixPath(source_key).suffix or ".mp4"
        staged = self.packager.workspace_for(job.id).staged_source(suffix)

        try:
            self.event_bus.publish(JobStarted(job=job))
            self.storage.download_to(source_key, staged)
            result = self.packager.package(job.id, staged)
            final = job.mark_ready(result.result_url, result.thumbnail_url, result.metadata)
        except AbrPackError as e:
            final = self._fail(job, str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error processing {job.id}")
            final = self._fail(job, f"Unexpected error: {e}")
        finally:
            # download_to may fail after creating the file; the packager never saw it then
            staged.unlink(missing_ok=True)

        elapsed = time.monotonic() - start_time
        if final.status == JobStatus.READY:
            self.registry.put(final)
            self.logger.info(f"JOB_END: {job.id} status=ready elapsed={elapsed:.2f}s url={final.result_url}")
            self.event_bus.publish(JobCompleted(job=final))
            self._delete_source(source_key)
        else:
            self.logger.info(f"JOB_END: {job.id} status=error elapsed={elapsed:.2f}s")
        return final

    def _fail(self, job: VideoJob, message: str) -> VideoJob:
        failed = job.mark_error(message)
        self.registry.put(failed)
        self.logger.error(f"JOB_FAILED: {job.id}: {message}")
        self.event_bus.publish(JobFailed(job=failed, error_message=message))
        return failed

    def _delete_source(self, source_key: str):
        if not self.config.general.delete_source_after_publish:
            return
        try:
            self.storage.delete(source_key)
        except AbrPackError as e:
            self.logger.warning(f"Could not delete uploaded original {source_key}: {e}")
