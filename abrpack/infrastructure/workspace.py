import logging
import shutil
from pathlib import Path
from typing import Iterable, List

from abrpack.domain.errors import ResourceCleanupError
from abrpack.domain.models import Rendition

logger = logging.getLogger(__name__)


class Workspace:
    """Scratch directory tree owned by one job's processing pass.

    Layout::

        <scratch>/<job_id>-source<ext>      staged copy of the upload
        <scratch>/<job_id>/thumbnail.jpg
        <scratch>/<job_id>/master.m3u8
        <scratch>/<job_id>/<rendition>/playlist.m3u8, segment<N>.ts
    """

    def __init__(self, scratch_dir: Path, job_id: str):
        self.scratch_dir = Path(scratch_dir)
        self.job_id = job_id
        self.root = self.scratch_dir / job_id

    @property
    def thumbnail_path(self) -> Path:
        return self.root / "thumbnail.jpg"

    @property
    def manifest_path(self) -> Path:
        return self.root / "master.m3u8"

    def staged_source(self, suffix: str = ".mp4") -> Path:
        return self.scratch_dir / f"{self.job_id}-source{suffix}"

    def rendition_dir(self, rendition: Rendition) -> Path:
        return self.root / rendition.name

    def create(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def cleanup(self, extra_paths: Iterable[Path] = ()) -> List[ResourceCleanupError]:
        """Removes the tree and ``extra_paths``. Failures are logged and returned, never raised."""
        errors: List[ResourceCleanupError] = []
        if self.root.exists():
            try:
                shutil.rmtree(self.root)
            except OSError as exc:
                errors.append(ResourceCleanupError(f"Could not remove workspace {self.root}: {exc}"))
        for path in extra_paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as exc:
                errors.append(ResourceCleanupError(f"Could not remove {path}: {exc}"))
        for error in errors:
            logger.warning(f"CLEANUP_FAILED: {self.job_id}: {error}")
        return errors
