#!/usr/bin/env python3
"""
chunked-transcriber v1.0.0: command-line entry point.
Transcribes one audio file through the in-process transcription service.
"""

import argparse
import asyncio
import json
import logging
import mimetypes
import shutil
import sys
import traceback
from datetime import datetime
from pathlib import Path

from transcriber.core.config import AppConfig
from transcriber.core.constants import (
    APP_NAME, APP_VERSION, LOG_DIR, DEFAULT_OUTPUT_ROOT, TERMINAL_STATUSES,
    JobStatus, ProcessingMode, ProviderName,
)
from transcriber.core.diagnostics import get_diagnostics
from transcriber.core.error_codes import JobError
from transcriber.core.models import JobConfig
from transcriber.core.output_writer import write_transcript, format_utterances
from transcriber.core.pipeline import TranscriptionService
from transcriber.core.providers import platform_api_key, resolve_provider_name, verify_api_key

LOG_FILE = LOG_DIR / "app.log"
POLL_INTERVAL_SEC = 1.0

logger = logging.getLogger("chunked-transcriber")


def setup_logging(verbose: bool = False):
    """Log to ~/.chunked_transcriber/logs/app.log and to stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
            console,
        ],
    )


def check_prerequisites() -> list[str]:
    """Return the external tools that are missing from PATH."""
    missing = []
    for tool in ("ffmpeg", "ffprobe"):
        if not shutil.which(tool):
            missing.append(tool)
        else:
            logger.info("%s found at: %s", tool, shutil.which(tool))
    return missing


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chunked-transcriber",
        description="Transcribe an audio file by chunking it and calling a speech-to-text provider.",
    )
    parser.add_argument("file", nargs="?", help="audio file to transcribe")
    parser.add_argument("--mode", choices=[ProcessingMode.BALANCED, ProcessingMode.BEST_QUALITY],
                        help="processing mode (default from config)")
    parser.add_argument("--provider", choices=[ProviderName.OPENAI, ProviderName.DEEPGRAM],
                        help="speech-to-text provider (default from config)")
    parser.add_argument("--language", help="language hint, e.g. 'en'")
    parser.add_argument("--diarize", action="store_true",
                        help="label speakers (whole-file request, Deepgram)")
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_ROOT,
                        help=f"where to write the transcript (default {DEFAULT_OUTPUT_ROOT})")
    parser.add_argument("--diagnostics", action="store_true",
                        help="print tool versions and exit")
    parser.add_argument("--check-key", action="store_true",
                        help="verify the provider's API key from the environment and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    args = parser.parse_args(argv)
    if not (args.diagnostics or args.check_key) and not args.file:
        parser.error("the following arguments are required: file")
    return args


def check_api_key(provider: str | None, app_config: AppConfig | None = None) -> int:
    """Verify the configured platform key for a provider. Returns an exit code."""
    app_config = app_config or AppConfig()
    name = resolve_provider_name(JobConfig(provider=provider), app_config)
    api_key = platform_api_key(name)
    if not api_key:
        print(f"No API key set for {name}", file=sys.stderr)
        return 1
    ok, message = verify_api_key(name, api_key)
    logger.info("API key check for %s: %s", name, message)
    print(f"{name}: {message}")
    return 0 if ok else 1


async def run(args: argparse.Namespace, app_config: AppConfig | None = None) -> int:
    path = Path(args.file)
    audio = path.read_bytes()
    job_config = JobConfig(
        mode=args.mode,
        provider=args.provider,
        language=args.language,
        enable_speaker_diarization=args.diarize,
    )

    async with TranscriptionService(app_config or AppConfig()) as service:
        job_id = await service.submit(audio, path.name, job_config,
                                      content_type=mimetypes.guess_type(path.name)[0])
        logger.info("Submitted %s as job %s", path.name, job_id)

        last_progress = None
        while True:
            status = service.get_status(job_id)
            if status['status'] in TERMINAL_STATUSES:
                break
            if (status['status'], status['progress']) != last_progress:
                last_progress = (status['status'], status['progress'])
                print(f"\r{status['status']:<12} {status['progress']:3d}% "
                      f"({status['completed_chunks']}/{status['total_chunks']} chunks)",
                      end="", file=sys.stderr, flush=True)
            await asyncio.sleep(POLL_INTERVAL_SEC)
        print(file=sys.stderr)

    if status['status'] != JobStatus.COMPLETED:
        print(f"Job {status['status']}: {status['error'] or 'no details'}", file=sys.stderr)
        return 1

    text = format_utterances(status['utterances']) if status['utterances'] else status['transcript']
    output_file = write_transcript(text, args.output_dir, path.name)
    print(output_file)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("=" * 60)

    if args.diagnostics:
        print(json.dumps(get_diagnostics(), indent=2))
        return 0

    if args.check_key:
        try:
            return check_api_key(args.provider)
        except JobError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 2

    missing = check_prerequisites()
    if missing:
        print(f"Missing required tools: {', '.join(missing)}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run(args))
    except JobError as e:
        logger.error("Rejected: %s", e)
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        print(f"Fatal error: {e} (see {LOG_FILE})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
