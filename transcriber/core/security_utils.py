"""
Security utilities for ChunkedTranscriber.
- Filename sanitization
- Safe subprocess execution (argument arrays only)
- Upload signature (magic byte) checks
"""

import re
import subprocess
import logging

from transcriber.core.constants import UNSAFE_FILENAME_CHARS, MAX_FILENAME_LEN

logger = logging.getLogger(__name__)


# ── Filename safety ───────────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """Sanitize an uploaded filename for use on disk or in logs."""
    if not name:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    # Collapse multiple underscores/spaces
    safe = re.sub(r'[_\s]+', '_', safe).strip('_ ')
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN].rstrip('_ ')
    # No hidden files
    safe = safe.lstrip('.')
    return safe


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False: remove any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


# ── Upload signatures ─────────────────────────────────────────────────

# mime type -> list of (offset, signature bytes)
_AUDIO_SIGNATURES = {
    'audio/mpeg': [(0, b'\xff\xfb'), (0, b'\xff\xf3'), (0, b'\xff\xf2'), (0, b'ID3')],
    'audio/wav': [(0, b'RIFF')],
    'audio/webm': [(0, b'\x1a\x45\xdf\xa3')],
    'audio/ogg': [(0, b'OggS')],
    'audio/flac': [(0, b'fLaC')],
    'audio/mp4': [(4, b'ftyp')],
}

_MIME_ALIASES = {
    'audio/mp3': 'audio/mpeg',
    'audio/x-wav': 'audio/wav',
    'audio/wave': 'audio/wav',
    'audio/x-m4a': 'audio/mp4',
    'audio/m4a': 'audio/mp4',
    'video/mp4': 'audio/mp4',
    'video/webm': 'audio/webm',
    'audio/x-flac': 'audio/flac',
}


def _matches(data: bytes, offset: int, signature: bytes) -> bool:
    return data[offset:offset + len(signature)] == signature


def detect_audio_type(data: bytes) -> str | None:
    """Return the mime type whose magic bytes match, or None."""
    for mime, signatures in _AUDIO_SIGNATURES.items():
        if any(_matches(data, off, sig) for off, sig in signatures):
            return mime
    return None


def validate_audio_signature(data: bytes, declared_type: str | None = None) -> bool:
    """
    Check that the data's magic bytes agree with the declared mime type.
    Types without a known signature are accepted as-is.
    """
    if not declared_type:
        return True
    mime = declared_type.split(';', 1)[0].strip().lower()
    mime = _MIME_ALIASES.get(mime, mime)
    signatures = _AUDIO_SIGNATURES.get(mime)
    if signatures is None:
        logger.debug("No signature known for %s; accepting", mime)
        return True
    return any(_matches(data, off, sig) for off, sig in signatures)
