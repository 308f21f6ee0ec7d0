"""In-memory job registry shared by the ingestion and processing paths."""

import threading
from typing import Dict, Iterator, Optional, Tuple

from abrpack.domain.models import JobStatus, VideoJob


class JobRegistry:
    """Job id -> VideoJob map guarded by a lock.

    Records are immutable, so ``put`` is a whole-record replace and readers
    always see one consistent version. Nothing here blocks on I/O and a
    missing key is a normal ``None`` result.
    """

    def __init__(self):
        self._jobs: Dict[str, VideoJob] = {}
        self._lock = threading.Lock()

    def put(self, job: VideoJob) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def put_if_absent(self, job: VideoJob) -> bool:
        with self._lock:
            if job.id in self._jobs:
                return False
            self._jobs[job.id] = job
            return True

    def get(self, job_id: str) -> Optional[VideoJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def items(self) -> Iterator[Tuple[str, VideoJob]]:
        """Iterates a snapshot taken when iteration starts (insertion order)."""
        with self._lock:
            snapshot = list(self._jobs.items())
        yield from snapshot

    def claim_next_pending(self) -> Optional[VideoJob]:
        """Moves the first pending job to processing and returns the new record."""
        with self._lock:
            for job_id, job in self._jobs.items():
                if job.status == JobStatus.PENDING:
                    claimed = job.mark_processing()
                    self._jobs[job_id] = claimed
                    return claimed
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs
