"""
Diagnostics: tool version detection and job counts.
"""

import logging

from transcriber.core.security_utils import run_subprocess_capture
from transcriber.core.constants import APP_VERSION

logger = logging.getLogger(__name__)


def get_tool_version(binary: str) -> str:
    """Return the first line of `<binary> -version`, or an error message."""
    try:
        result = run_subprocess_capture([binary, "-version"], timeout=10)
        if result.returncode == 0:
            lines = result.stdout.strip().splitlines()
            return lines[0] if lines else "Unknown"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def get_ffmpeg_version() -> str:
    return get_tool_version("ffmpeg")


def get_ffprobe_version() -> str:
    return get_tool_version("ffprobe")


def get_diagnostics(service=None) -> dict:
    """Gather all diagnostic information. Job counts need a TranscriptionService."""
    info = {
        "app_version": APP_VERSION,
        "ffmpeg_version": get_ffmpeg_version(),
        "ffprobe_version": get_ffprobe_version(),
    }
    if service is not None:
        info["jobs"] = service.store.count_by_status()
    return info
