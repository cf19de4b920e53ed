"""
Transcription service and per-job pipeline.

submit() validates an upload, creates the job and returns its id while a
background task drives it: chunk -> transcribe (worker pool gated by the
governor) -> assemble -> clean up -> completed. Cancellation is
cooperative; the pipeline polls the job status before each chunk.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from transcriber.core.config import AppConfig
from transcriber.core.constants import JobStatus, TERMINAL_STATUSES, TrackingMode
from transcriber.core.error_codes import (
    InvalidInput, InvalidState, InvalidTransition, AccessDenied, JobNotFound,
    JobAborted, JobCancelled, JobError, ChunkingError,
)
from transcriber.core.chunking import AudioChunker
from transcriber.core.governor import RateLimitGovernor
from transcriber.core.job_store import JobStore
from transcriber.core.merge import assemble_transcript, normalize_whitespace
from transcriber.core.modes import ModeConfig, get_mode_config
from transcriber.core.models import ChunkDescriptor, JobConfig, JobMetadata
from transcriber.core.processor import ChunkProcessor
from transcriber.core.providers import TranscriptionProvider, create_provider, invoke
from transcriber.core.security_utils import sanitize_filename, validate_audio_signature
from transcriber.core.storage import ChunkStorage
from transcriber.core.usage import LoggingUsageTracker, UsageTracker

logger = logging.getLogger(__name__)


class TranscriptionService:
    """
    Accepts uploads and runs each as a background transcription job.
    Must be used from within a running event loop.
    """

    def __init__(self, app_config: AppConfig | None = None,
                 store: JobStore | None = None,
                 storage: ChunkStorage | None = None,
                 chunker: AudioChunker | None = None,
                 provider_factory: Callable[[JobConfig, AppConfig], TranscriptionProvider] = create_provider,
                 usage_tracker: UsageTracker | None = None,
                 governor_factory: Callable[[ModeConfig], RateLimitGovernor] = RateLimitGovernor.from_mode):
        self.config = app_config or AppConfig()
        self.store = store or JobStore()
        self.storage = storage or ChunkStorage(self.config.scratch_dir)
        self.chunker = chunker or AudioChunker(self.storage)
        self.processor = ChunkProcessor(
            self.store, self.chunker,
            max_total_retries=self.config.get('max_total_retries'),
            max_splits=self.config.get('max_splits'),
        )
        self.provider_factory = provider_factory
        self.usage_tracker = usage_tracker or LoggingUsageTracker()
        self.governor_factory = governor_factory

        self._tasks: dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # ── Public API ────────────────────────────────────────────────────

    async def submit(self, audio_bytes: bytes, filename: str,
                     config: JobConfig | None = None,
                     user_id: str | None = None,
                     content_type: str | None = None) -> str:
        """Validate an upload, create its job and start processing. Returns the job id."""
        config = config or JobConfig()
        if not audio_bytes:
            raise InvalidInput("Uploaded audio is empty")
        if len(audio_bytes) > self.config.max_upload_bytes:
            raise InvalidInput(f"File too large ({len(audio_bytes) / (1024 * 1024):.1f}MB, "
                               f"limit {self.config.get('max_upload_mb')}MB)")
        if not validate_audio_signature(audio_bytes, content_type):
            raise InvalidInput(f"File content does not match declared type {content_type}")

        mode = config.mode or self.config.get('default_mode')
        get_mode_config(mode)
        provider = self.provider_factory(config, self.config)
        config = dataclasses.replace(config, mode=mode, provider=provider.name)
        if config.enable_speaker_diarization and not provider.supports_speakers:
            logger.warning("Provider %s cannot label speakers; using the chunked path", provider.name)

        safe_name = sanitize_filename(filename) or "upload"
        try:
            duration = await self.chunker.probe_bytes_duration(audio_bytes, Path(safe_name).suffix)
        except ChunkingError as e:
            raise InvalidInput(f"Could not read audio: {e.message}")
        if duration > self.config.max_duration_sec:
            raise InvalidInput(f"Audio is {duration / 60:.1f} min long "
                               f"(limit {self.config.max_duration_sec / 60:.0f} min)")

        metadata = JobMetadata(filename=safe_name, file_size=len(audio_bytes), duration=duration)
        job = self.store.create_job(config, metadata, user_id=user_id)

        task = asyncio.create_task(self._run(job.id, audio_bytes, provider),
                                   name=f"transcribe-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return job.id

    def get_status(self, job_id: str) -> Optional[dict]:
        return self.store.status_view(job_id)

    def cancel(self, job_id: str, user_id: str | None = None):
        """
        Mark a job cancelled. The running pipeline stops before its next
        chunk and cleans up after itself.
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if self.config.get('allow_anonymous_cancel', True):
            allowed = self.store.validate_ownership(job_id, user_id)
        else:
            allowed = job.user_id == user_id
        if not allowed:
            raise AccessDenied(f"User may not cancel job {job_id}")
        if job.status in TERMINAL_STATUSES:
            raise InvalidState(f"Job {job_id} is already {job.status}")

        try:
            self.store.update_status(job_id, JobStatus.CANCELLED)
        except InvalidTransition:
            raise InvalidState(f"Job {job_id} finished before it could be cancelled")
        logger.info("Cancellation requested for job %s", job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> Optional[dict]:
        """Wait for a job's background task to finish; returns its status view."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.get_status(job_id)

    # ── Sweeper ───────────────────────────────────────────────────────

    def start(self):
        """Start the periodic sweep of expired jobs."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="job-sweeper")

    async def stop(self):
        """Stop the sweeper and cancel any jobs still running."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        tasks = list(self._tasks.items())
        for job_id, task in tasks:
            status = self.store.get_status(job_id)
            if status is not None and status not in TERMINAL_STATUSES:
                self.store.update_status(job_id, JobStatus.CANCELLED)
            task.cancel()
        await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def _sweep_loop(self):
        interval = self.config.sweep_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_once()
            except Exception as e:
                logger.error("Sweep error: %s", e, exc_info=True)

    def sweep_once(self, now: datetime | None = None) -> int:
        """Evict expired jobs, stop their tasks and free their storage."""
        evicted = self.store.sweep_expired(self.config.max_job_age_sec, now)
        for job in evicted:
            task = self._tasks.pop(job.id, None)
            if task is not None and not task.done():
                task.cancel()
            self.chunker.cleanup(job.chunks)
            self.storage.remove_job_dir(job.id)
        return len(evicted)

    # ── Job pipeline ──────────────────────────────────────────────────

    def _check_cancelled(self, job_id: str):
        if self.store.get_status(job_id) == JobStatus.CANCELLED:
            raise JobCancelled(job_id)

    def _advance(self, job_id: str, status: str):
        """Move to the next status unless the job was cancelled meanwhile."""
        self._check_cancelled(job_id)
        try:
            self.store.update_status(job_id, status)
        except InvalidTransition:
            self._check_cancelled(job_id)
            raise

    async def _run(self, job_id: str, audio_bytes: bytes, provider: TranscriptionProvider):
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning("Job %s was evicted before it started", job_id)
            return
        config = job.config
        chunks: list[ChunkDescriptor] = []
        governor = None

        try:
            if config.enable_speaker_diarization and provider.supports_speakers:
                await self._run_whole_file(job_id, audio_bytes, provider, config)
            else:
                mode = get_mode_config(config.mode)
                governor = self.governor_factory(mode)
                await self._run_chunked(job_id, job.metadata, audio_bytes, provider,
                                        config, mode, governor, chunks)
            self._track_usage(job_id)

        except JobCancelled:
            logger.info("Job %s cancelled; stopping", job_id)
        except JobError as e:
            self._fail(job_id, e.message)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            self._fail(job_id, str(e) or type(e).__name__)
        finally:
            self._cleanup(job_id, chunks)
            if governor is not None:
                logger.info("Job %s governor stats: %s", job_id, governor.stats.as_dict())

    async def _run_chunked(self, job_id: str, metadata: JobMetadata, audio_bytes: bytes,
                           provider: TranscriptionProvider, config: JobConfig,
                           mode: ModeConfig, governor: RateLimitGovernor,
                           chunks: list[ChunkDescriptor]):
        self._advance(job_id, JobStatus.CHUNKING)
        result = await self.chunker.chunk(audio_bytes, config.mode, job_id,
                                          metadata.filename, total_duration=metadata.duration)
        chunks.extend(result.chunks)
        self._check_cancelled(job_id)
        self.store.initialize_chunks(job_id, result.chunks)
        self.store.update_metadata(job_id, duration=result.total_duration)

        self._advance(job_id, JobStatus.TRANSCRIBING)
        transcripts = await self._transcribe_all(job_id, result.chunks, governor,
                                                 provider, config, mode)

        self._advance(job_id, JobStatus.ASSEMBLING)
        text = assemble_transcript(result.chunks, transcripts, config.mode)
        self.store.set_transcript(job_id, text)
        self.chunker.cleanup(chunks)
        self._advance(job_id, JobStatus.COMPLETED)

    async def _transcribe_all(self, job_id: str, chunks: list[ChunkDescriptor],
                              governor: RateLimitGovernor, provider: TranscriptionProvider,
                              config: JobConfig, mode: ModeConfig) -> list[str]:
        """
        Workers pull chunks in ascending index order. The first failure
        stops further dispatch and sets `abort`, so chunks already in flight
        stop before their next attempt, backoff or split.
        """
        ordered = sorted(chunks, key=lambda c: c.index)
        transcripts: list[str] = [''] * len(ordered)
        queue = iter(enumerate(ordered))
        failures: list[Exception] = []
        abort = asyncio.Event()
        hints = config.hints()

        async def worker():
            for position, chunk in queue:
                if failures:
                    return
                try:
                    self._check_cancelled(job_id)
                    transcripts[position] = await self.processor.process(
                        chunk, job_id, governor, provider, hints, mode, abort=abort)
                except Exception as e:
                    failures.append(e)
                    if not isinstance(e, JobAborted):
                        abort.set()
                    return

        workers = max(1, min(mode.max_concurrency, len(ordered)))
        await asyncio.gather(*(worker() for _ in range(workers)))

        if failures:
            cancelled = [e for e in failures if isinstance(e, JobCancelled)]
            causes = [e for e in failures if not isinstance(e, JobAborted)]
            raise (cancelled or causes or failures)[0]
        return transcripts

    async def _run_whole_file(self, job_id: str, audio_bytes: bytes,
                              provider: TranscriptionProvider, config: JobConfig):
        """Single diarized request for the whole file; no chunk statuses."""
        self._advance(job_id, JobStatus.TRANSCRIBING)
        result = await invoke(provider.transcribe_with_speakers, audio_bytes, config.hints())
        self._check_cancelled(job_id)
        self.store.set_transcript(job_id, normalize_whitespace(result.text))
        self.store.set_utterances(job_id, result.utterances)
        self._advance(job_id, JobStatus.COMPLETED)

    # ── Finalisation helpers ──────────────────────────────────────────

    def _fail(self, job_id: str, message: str):
        status = self.store.get_status(job_id)
        if status is None:
            logger.warning("Job %s failed after eviction: %s", job_id, message)
            return
        if status in TERMINAL_STATUSES:
            logger.info("Job %s already %s; not marking failed (%s)", job_id, status, message)
            return
        self.store.update_status(job_id, JobStatus.FAILED, error=message[:2000])

    def _track_usage(self, job_id: str):
        job = self.store.get_job(job_id)
        if job is None or job.status != JobStatus.COMPLETED or not job.user_id:
            return
        tracking_mode = TrackingMode.BYOK if job.config.is_byok else TrackingMode.PLATFORM
        try:
            self.usage_tracker.track(job.user_id, job.metadata.duration, tracking_mode)
        except Exception as e:
            logger.error("Usage tracking failed for job %s: %s", job_id, e, exc_info=True)

    def _cleanup(self, job_id: str, chunks: list[ChunkDescriptor]):
        try:
            self.chunker.cleanup(chunks)
            self.storage.remove_job_dir(job_id, keep_debug=self.config.keep_debug_artifacts)
        except OSError as e:
            logger.warning("Cleanup failed for job %s: %s", job_id, e)
