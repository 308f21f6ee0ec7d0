import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class HousekeepingService:
    """Removes scratch leftovers from a previous run.

    Job state is not persisted, so nothing left in the scratch area after a
    restart can be resumed.
    """

    def cleanup_scratch(self, directory: Path) -> int:
        """Removes every entry under the scratch directory. Returns the number removed."""
        if not directory.exists():
            return 0
        removed = 0
        for entry in directory.iterdir():
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as exc:
                logger.warning(f"HOUSEKEEPING: could not remove {entry}: {exc}")
        if removed:
            logger.info(f"HOUSEKEEPING: removed {removed} stale scratch entries from {directory}")
        return removed
