"""
Cleanup: delete chunk audio after assembly, failure or cancellation.
Safe to call repeatedly and after partial failure.
"""

import logging
import shutil
from pathlib import Path

from transcriber.core.models import ChunkDescriptor

logger = logging.getLogger(__name__)


def cleanup_chunks(chunks: list[ChunkDescriptor]) -> int:
    """
    Delete the audio file behind each chunk.
    Already-missing files are skipped silently. Returns the number deleted.
    """
    deleted = 0
    for chunk in chunks:
        path = Path(chunk.file_path)
        try:
            path.unlink()
            deleted += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Failed to delete chunk %d (%s): %s", chunk.index, path, e)
    if deleted:
        logger.debug("Deleted %d chunk files", deleted)
    return deleted


def cleanup_job_artifacts(job_workspace: Path, keep_debug: bool = False):
    """
    Delete a job's scratch workspace after completion (success or failure).
    If keep_debug is True, only audio files are removed.
    """
    if not job_workspace.exists():
        return

    if keep_debug:
        for path in job_workspace.glob("*.mp3"):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to delete %s: %s", path, e)
        return

    try:
        shutil.rmtree(job_workspace)
        logger.debug("Deleted: %s", job_workspace)
    except Exception as e:
        logger.warning("Failed to delete %s: %s", job_workspace, e)
