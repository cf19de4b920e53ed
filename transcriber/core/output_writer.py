"""
Output writer: writes final transcript TXT files.
"""

import logging
from pathlib import Path

from transcriber.core.security_utils import sanitize_filename

logger = logging.getLogger(__name__)


def transcript_path(output_root: Path, filename: str) -> Path:
    """<OutputRoot>/<sanitized stem of the upload>.txt"""
    stem = sanitize_filename(Path(filename).stem) or "transcript"
    return Path(output_root) / f"{stem}.txt"


def format_utterances(utterances: list[dict]) -> str:
    """One "Speaker X: text" paragraph per utterance."""
    return '\n\n'.join(f"Speaker {u['speaker']}: {u['text']}" for u in utterances if u.get('text'))


def write_transcript(text: str, output_root: Path, filename: str) -> Path:
    """
    Write a transcript next to other transcripts in output_root.
    Returns the path to the written file.
    """
    output_file = transcript_path(output_root, filename)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_text(text.rstrip('\n') + '\n', encoding='utf-8')

    logger.info("Wrote transcript: %s", output_file)
    return output_file
