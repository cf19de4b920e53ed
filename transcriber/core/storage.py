"""
Scratch storage for chunk audio.
Each job gets its own directory under the scratch root.
"""

import logging
import uuid
from pathlib import Path

from transcriber.core.cleanup import cleanup_job_artifacts

logger = logging.getLogger(__name__)

_STAGING_DIR = "_staging"


class ChunkStorage:
    """Temporary-file write/read/delete for chunk audio."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def job_dir(self, job_id: str) -> Path:
        path = self.root / job_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def path_for(self, job_id: str, filename: str) -> Path:
        return self.job_dir(job_id) / filename

    def staging_path(self, suffix: str = "") -> Path:
        """A unique path for files that exist before a job does."""
        staging = self.root / _STAGING_DIR
        staging.mkdir(parents=True, exist_ok=True)
        return staging / f"{uuid.uuid4().hex}{suffix}"

    def write_bytes(self, job_id: str, filename: str, data: bytes) -> Path:
        path = self.path_for(job_id, filename)
        path.write_bytes(data)
        return path

    @staticmethod
    def read_bytes(path: Path) -> bytes:
        return Path(path).read_bytes()

    @staticmethod
    def delete(path: Path) -> bool:
        """Delete a file. Missing files are not an error; returns True if removed."""
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            return False

    def remove_job_dir(self, job_id: str, keep_debug: bool = False) -> None:
        cleanup_job_artifacts(self.root / job_id, keep_debug)
