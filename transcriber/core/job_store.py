"""
In-memory job registry.
Thread-safe via an explicit re-entrant lock; every Job mutation goes through here.
"""

import copy
import logging
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from transcriber.core.constants import (
    JobStatus, TERMINAL_STATUSES, JOB_TRANSITIONS, ChunkState, CHUNK_STATES,
)
from transcriber.core.error_codes import (
    InvalidInput, InvalidTransition, InvalidState, JobNotFound,
)
from transcriber.core.models import (
    Job, JobConfig, JobMetadata, ChunkDescriptor, ChunkStatus, Utterance, utc_now,
)

logger = logging.getLogger(__name__)

_ALL_STATUSES = {
    JobStatus.PENDING, JobStatus.CHUNKING, JobStatus.TRANSCRIBING,
    JobStatus.ASSEMBLING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
}
_CHUNK_FIELDS = {'state', 'transcript', 'retry_count', 'was_split', 'error'}
_METADATA_FIELDS = {'filename', 'file_size', 'duration', 'total_chunks'}


class JobStore:
    """Keyed store of Job records owned by one TranscriptionService."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()

    # ── Helpers ───────────────────────────────────────────────────────

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def _touch(job: Job):
        job.last_updated = utc_now()

    @staticmethod
    def _recompute_progress(job: Job):
        total = len(job.chunk_statuses)
        completed = sum(1 for s in job.chunk_statuses if s.state == ChunkState.COMPLETED)
        job.completed_chunks = completed
        if total == 0:
            return
        progress = round(100 * completed / total)
        if completed < total:
            # 100 is reserved for "every chunk completed"
            progress = min(progress, 99)
        job.progress = progress

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, config: JobConfig, metadata: JobMetadata,
                   user_id: Optional[str] = None) -> Job:
        if not metadata.file_size or metadata.file_size <= 0:
            raise InvalidInput("Job metadata must include a positive file size")
        job = Job(
            id=str(uuid.uuid4()),
            config=config,
            metadata=metadata,
            user_id=user_id,
        )
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Created job %s (%s, %d bytes, mode=%s)",
                    job.id, metadata.filename, metadata.file_size, config.mode)
        return copy.deepcopy(job)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Snapshot of the job, or None. Mutating it does not affect the store."""
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def get_status(self, job_id: str) -> Optional[str]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.status if job else None

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._jobs.values()]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    # ── Status transitions ────────────────────────────────────────────

    def update_status(self, job_id: str, status: str, error: Optional[str] = None):
        if status not in _ALL_STATUSES:
            raise InvalidInput(f"Unknown job status {status!r}")
        if status == JobStatus.FAILED and not error:
            raise InvalidInput("A failed status requires an error message")

        with self._lock:
            job = self._get(job_id)
            current = job.status
            if current in TERMINAL_STATUSES:
                raise InvalidTransition(f"Job {job_id} is already {current}; cannot move to {status}")
            if status not in (JobStatus.FAILED, JobStatus.CANCELLED) \
                    and status not in JOB_TRANSITIONS.get(current, set()):
                raise InvalidTransition(f"Job {job_id}: {current} -> {status} is not allowed")

            job.status = status
            if error:
                job.error = error
            if status == JobStatus.COMPLETED:
                job.progress = 100
            if status in TERMINAL_STATUSES:
                now = utc_now()
                job.metadata.completed_at = now
                job.metadata.processing_time = (now - job.metadata.created_at).total_seconds()
            self._touch(job)

        if status == JobStatus.FAILED:
            logger.warning("Job %s failed: %s", job_id, error)
        else:
            logger.info("Job %s: %s -> %s", job_id, current, status)

    # ── Chunks ────────────────────────────────────────────────────────

    def initialize_chunks(self, job_id: str, chunks: list[ChunkDescriptor]):
        with self._lock:
            job = self._get(job_id)
            if job.status != JobStatus.CHUNKING:
                raise InvalidState(f"Chunks can only be initialized while chunking (job is {job.status})")
            job.chunks = list(chunks)
            job.chunk_statuses = [ChunkStatus() for _ in chunks]
            job.metadata.total_chunks = len(chunks)
            job.completed_chunks = 0
            job.progress = 0
            self._touch(job)

    def update_chunk_status(self, job_id: str, index: int, **fields):
        """Merge fields into the status of chunk `index` and recompute progress."""
        unknown = set(fields) - _CHUNK_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown chunk status fields: {', '.join(sorted(unknown))}")
        state = fields.get('state')
        if state is not None and state not in CHUNK_STATES:
            raise InvalidInput(f"Unknown chunk state {state!r}")

        with self._lock:
            job = self._get(job_id)
            if not 0 <= index < len(job.chunk_statuses):
                raise InvalidInput(f"Chunk index {index} out of range "
                                   f"(job has {len(job.chunk_statuses)} chunks)")
            chunk_status = job.chunk_statuses[index]
            if chunk_status.state == ChunkState.COMPLETED and state not in (None, ChunkState.COMPLETED):
                raise InvalidTransition(f"Chunk {index} of job {job_id} is already completed")

            for key, value in fields.items():
                setattr(chunk_status, key, value)
            chunk_status.last_updated = utc_now()
            self._recompute_progress(job)
            self._touch(job)

    def record_retry(self, job_id: str) -> int:
        """Increment the job-wide retry counter; returns the new total."""
        with self._lock:
            job = self._get(job_id)
            job.total_retries += 1
            self._touch(job)
            return job.total_retries

    def record_split(self, job_id: str) -> int:
        with self._lock:
            job = self._get(job_id)
            job.splits += 1
            self._touch(job)
            return job.splits

    def get_counters(self, job_id: str) -> tuple[int, int]:
        """(total_retries, splits) without copying the whole job."""
        with self._lock:
            job = self._get(job_id)
            return job.total_retries, job.splits

    # ── Results ───────────────────────────────────────────────────────

    def set_transcript(self, job_id: str, text: str):
        with self._lock:
            job = self._get(job_id)
            if job.transcript is not None:
                if job.transcript == text:
                    return
                raise InvalidState(f"Transcript for job {job_id} is already set")
            job.transcript = text
            self._touch(job)

    def set_utterances(self, job_id: str, utterances: list[Utterance]):
        with self._lock:
            job = self._get(job_id)
            if job.utterances is not None:
                if job.utterances == utterances:
                    return
                raise InvalidState(f"Utterances for job {job_id} are already set")
            job.utterances = list(utterances)
            self._touch(job)

    def update_metadata(self, job_id: str, **fields):
        unknown = set(fields) - _METADATA_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown metadata fields: {', '.join(sorted(unknown))}")
        with self._lock:
            job = self._get(job_id)
            for key, value in fields.items():
                setattr(job.metadata, key, value)
            self._touch(job)

    # ── Ownership ─────────────────────────────────────────────────────

    def validate_ownership(self, job_id: str, user_id: Optional[str]) -> bool:
        """True if user_id owns the job, or the job has no recorded owner."""
        with self._lock:
            job = self._get(job_id)
            return job.user_id is None or job.user_id == user_id

    # ── Eviction ──────────────────────────────────────────────────────

    def sweep_expired(self, max_age_sec: float, now: Optional[datetime] = None) -> list[Job]:
        """Remove jobs older than max_age_sec and return them."""
        now = now or utc_now()
        evicted = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                age = (now - job.metadata.created_at).total_seconds()
                if age > max_age_sec:
                    evicted.append(self._jobs.pop(job_id))
        if evicted:
            logger.info("Swept %d expired job(s)", len(evicted))
        return evicted

    # ── External view ─────────────────────────────────────────────────

    def status_view(self, job_id: str) -> Optional[dict]:
        """Build the status dictionary returned to callers."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            meta = job.metadata
            return {
                'job_id': job.id,
                'status': job.status,
                'progress': job.progress,
                'completed_chunks': job.completed_chunks,
                'total_chunks': meta.total_chunks,
                'transcript': job.transcript,
                'utterances': [asdict(u) for u in job.utterances] if job.utterances is not None else None,
                'error': job.error,
                'total_retries': job.total_retries,
                'splits': job.splits,
                'estimated_time_remaining': self._estimate_remaining(job),
                'metadata': {
                    'filename': meta.filename,
                    'file_size': meta.file_size,
                    'duration': meta.duration,
                    'mode': job.config.mode,
                    'provider': job.config.provider,
                    'created_at': meta.created_at.isoformat(),
                    'completed_at': meta.completed_at.isoformat() if meta.completed_at else None,
                    'processing_time': meta.processing_time,
                },
            }

    @staticmethod
    def _estimate_remaining(job: Job) -> Optional[int]:
        """Seconds left, extrapolated from the average time per completed chunk."""
        if job.status != JobStatus.TRANSCRIBING or job.completed_chunks == 0:
            return None
        total = len(job.chunk_statuses)
        elapsed = (utc_now() - job.metadata.created_at).total_seconds()
        per_chunk = elapsed / job.completed_chunks
        return round(per_chunk * (total - job.completed_chunks))
