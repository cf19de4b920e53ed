"""
Chunk processor: transcribe one chunk with retry and auto-split.

Each attempt goes through a governor permit. Retryable provider failures
are retried with the mode's backoff; once a chunk's retries are used up
it is split into shorter sub-chunks (recursively, to a bounded depth) as
long as the job-wide retry and split budgets allow. Otherwise the chunk
fails and so does the job.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from transcriber.core.constants import (
    JobStatus, ChunkState, MAX_TOTAL_RETRIES, MAX_SPLITS, MAX_SPLIT_DEPTH,
)
from transcriber.core.error_codes import (
    BudgetExceeded, JobAborted, JobCancelled, JobError, ProviderError, ProviderRateLimited,
)
from transcriber.core.governor import Outcome, RateLimitGovernor
from transcriber.core.job_store import JobStore
from transcriber.core.chunking import AudioChunker
from transcriber.core.merge import join_subchunk_transcripts
from transcriber.core.modes import ModeConfig
from transcriber.core.models import ChunkDescriptor, TranscriptionHints
from transcriber.core.providers import TranscriptionProvider, invoke

logger = logging.getLogger(__name__)


@dataclass
class _Context:
    job_id: str
    index: int                     # top-level chunk whose status is tracked
    governor: RateLimitGovernor
    provider: TranscriptionProvider
    hints: TranscriptionHints
    mode: ModeConfig
    abort: Optional[asyncio.Event] = None   # set once any chunk of the job has failed


class ChunkProcessor:
    def __init__(self, store: JobStore, chunker: AudioChunker,
                 max_total_retries: int = MAX_TOTAL_RETRIES,
                 max_splits: int = MAX_SPLITS,
                 max_split_depth: int = MAX_SPLIT_DEPTH):
        self.store = store
        self.chunker = chunker
        self.max_total_retries = max_total_retries
        self.max_splits = max_splits
        self.max_split_depth = max_split_depth

    async def process(self, chunk: ChunkDescriptor, job_id: str, governor: RateLimitGovernor,
                      provider: TranscriptionProvider, hints: TranscriptionHints,
                      mode: ModeConfig, abort: Optional[asyncio.Event] = None) -> str:
        """
        Transcribe a chunk and record the result on the job. Returns the transcript.
        When `abort` is set (a sibling chunk failed) no further attempt,
        backoff or split is started and JobAborted is raised.
        """
        ctx = _Context(job_id, chunk.index, governor, provider, hints, mode, abort)
        logger.info("Processing chunk %d (%.2fs)", chunk.index, chunk.duration)
        try:
            text = await self._transcribe(chunk, ctx, depth=0)
        except (JobCancelled, JobAborted):
            raise
        except JobError as e:
            self.store.update_chunk_status(job_id, chunk.index, state=ChunkState.FAILED, error=e.message)
            raise
        except Exception as e:
            self.store.update_chunk_status(job_id, chunk.index, state=ChunkState.FAILED, error=str(e))
            raise

        self.store.update_chunk_status(job_id, chunk.index, state=ChunkState.COMPLETED,
                                       transcript=text, error=None)
        logger.info("Chunk %d transcribed (%d chars)", chunk.index, len(text))
        return text

    # ── Internals ─────────────────────────────────────────────────────

    def _check_cancelled(self, ctx: _Context):
        if self.store.get_status(ctx.job_id) == JobStatus.CANCELLED:
            raise JobCancelled(ctx.job_id)
        if ctx.abort is not None and ctx.abort.is_set():
            raise JobAborted(ctx.job_id)

    def _set_state(self, ctx: _Context, depth: int, **fields):
        # sub-chunks have no status entry of their own
        if depth == 0:
            self.store.update_chunk_status(ctx.job_id, ctx.index, **fields)

    async def _call_provider(self, audio: bytes, ctx: _Context) -> str:
        async with ctx.governor.permit():
            try:
                text = await invoke(ctx.provider.transcribe_segment, audio, ctx.hints)
            except ProviderRateLimited:
                ctx.governor.record_outcome(Outcome.RATE_LIMITED)
                raise
            except Exception:
                ctx.governor.record_outcome(Outcome.FAILURE)
                raise
            ctx.governor.record_outcome(Outcome.SUCCESS)
        return text or ''

    async def _transcribe(self, chunk: ChunkDescriptor, ctx: _Context, depth: int) -> str:
        audio = await asyncio.to_thread(self.chunker.storage.read_bytes, chunk.file_path)
        attempts = 1 + ctx.mode.max_retries
        retries = 0
        last_error: ProviderError | None = None

        for attempt in range(1, attempts + 1):
            self._check_cancelled(ctx)
            self._set_state(ctx, depth, state=ChunkState.IN_PROGRESS)
            try:
                return await self._call_provider(audio, ctx)
            except ProviderError as e:
                last_error = e
                logger.warning("Attempt %d/%d failed for chunk %d%s: %s",
                               attempt, attempts, ctx.index,
                               f" (sub-chunk {chunk.index}, depth {depth})" if depth else "",
                               e.message)
                if not e.retryable:
                    raise
                if attempt == attempts:
                    break
                self._check_cancelled(ctx)
                total_retries, _ = self.store.get_counters(ctx.job_id)
                if total_retries >= self.max_total_retries:
                    logger.warning("Job %s reached its retry budget (%d)", ctx.job_id, total_retries)
                    break

                self.store.record_retry(ctx.job_id)
                retries += 1
                self._set_state(ctx, depth, state=ChunkState.RETRYING,
                                retry_count=retries, error=e.message)
                retry_after = e.retry_after if isinstance(e, ProviderRateLimited) else None
                await ctx.governor.backoff(retries, retry_after)

        return await self._split(chunk, ctx, depth, last_error)

    async def _split(self, chunk: ChunkDescriptor, ctx: _Context, depth: int,
                     last_error: ProviderError) -> str:
        self._check_cancelled(ctx)
        total_retries, splits = self.store.get_counters(ctx.job_id)
        if depth >= self.max_split_depth:
            reason = f"maximum split depth {self.max_split_depth} reached"
        elif splits >= self.max_splits:
            reason = f"split budget of {self.max_splits} used"
        elif total_retries >= self.max_total_retries:
            reason = f"retry budget of {self.max_total_retries} used"
        else:
            reason = None
        if reason:
            raise BudgetExceeded(f"Chunk {ctx.index} failed ({reason}): {last_error.message}")

        self.store.record_split(ctx.job_id)
        self._set_state(ctx, depth, state=ChunkState.SPLITTING, was_split=True)
        logger.info("Auto-splitting chunk %d (%.2fs, depth %d)", ctx.index, chunk.duration, depth + 1)

        subchunks = await self.chunker.split_chunk(chunk, ctx.mode.subchunk_duration)
        texts = []
        try:
            for sub in subchunks:
                self._check_cancelled(ctx)
                texts.append(await self._transcribe(sub, ctx, depth + 1))
        finally:
            self.chunker.cleanup(subchunks)

        logger.info("Chunk %d recovered via %d sub-chunks", ctx.index, len(subchunks))
        return join_subchunk_transcripts(texts)
