"""
Mode-aware time-based audio chunking using ffmpeg.

Segments of the mode's nominal duration are cut back to back. When the
mode has an overlap, every chunk but the last also carries the first
`overlap_duration` seconds of the following segment so no word is lost
at a cut; merge.py removes the duplicated text afterwards.
"""

import asyncio
import hashlib
import logging
import math
from pathlib import Path

from transcriber.core.security_utils import run_subprocess_capture
from transcriber.core.error_codes import ChunkingError
from transcriber.core.cleanup import cleanup_chunks
from transcriber.core.constants import (
    CHUNK_CHANNELS, CHUNK_SAMPLE_RATE, CHUNK_BITRATE, CHUNK_CODEC, CHUNK_FORMAT,
    PROVIDER_MAX_UPLOAD_BYTES, MIN_TAIL_SEC, MIN_SUBCHUNK_SEC,
)
from transcriber.core.modes import ModeConfig, get_mode_config
from transcriber.core.models import ChunkDescriptor, ChunkingResult
from transcriber.core.storage import ChunkStorage

logger = logging.getLogger(__name__)


def _segment_bounds(total_sec: float, step_sec: float) -> list[tuple[float, float]]:
    """Back-to-back (start, end) pairs; a remainder under MIN_TAIL_SEC joins the previous one."""
    bounds = []
    start = 0.0
    while start < total_sec:
        end = min(start + step_sec, total_sec)
        if total_sec - end < MIN_TAIL_SEC:
            end = total_sec
        bounds.append((start, end))
        start = end
    return bounds


def plan_chunks(total_sec: float, mode_config: ModeConfig) -> list[dict]:
    """
    Create chunk manifest entries for a file of the given duration.
    Returns dicts with idx, start_sec, end_sec (physical audio end),
    nominal_end_sec, has_overlap and overlap_offset (relative to start_sec).
    """
    if total_sec <= 0:
        return []

    overlap = mode_config.overlap_duration
    bounds = _segment_bounds(total_sec, mode_config.chunk_duration)
    entries = []
    for idx, (start, end) in enumerate(bounds):
        has_overlap = overlap > 0 and idx < len(bounds) - 1
        audio_end = min(end + overlap, total_sec) if has_overlap else end
        entries.append({
            'idx': idx,
            'start_sec': start,
            'end_sec': audio_end,
            'nominal_end_sec': end,
            'has_overlap': has_overlap,
            'overlap_offset': (end - start) if has_overlap else None,
        })
    return entries


def probe_duration(audio_path: Path, ffprobe_bin: str = "ffprobe") -> float:
    """Get audio duration in seconds using ffprobe."""
    args = [
        ffprobe_bin,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(audio_path),
    ]
    try:
        result = run_subprocess_capture(args, timeout=60)
    except Exception as e:
        raise ChunkingError(f"ffprobe failed: {e}")

    if result.returncode != 0:
        raise ChunkingError(f"ffprobe failed (rc={result.returncode}): "
                            f"{(result.stderr or 'unknown error')[:200]}")
    try:
        duration = float(result.stdout.strip())
    except ValueError:
        raise ChunkingError("Could not determine audio duration")
    if duration <= 0 or math.isnan(duration):
        raise ChunkingError("Audio has no measurable duration")
    return duration


def extract_segment(source: Path, dest: Path, offset_sec: float, length_sec: float,
                    ffmpeg_bin: str = "ffmpeg") -> Path:
    """Cut [offset, offset+length) from source and encode it to the chunk target format."""
    args = [
        ffmpeg_bin,
        "-y",
        "-v", "error",
        "-ss", f"{offset_sec:.3f}",
        "-t", f"{length_sec:.3f}",
        "-i", str(source),
        "-vn",
        "-ac", str(CHUNK_CHANNELS),
        "-ar", str(CHUNK_SAMPLE_RATE),
        "-b:a", CHUNK_BITRATE,
        "-codec:a", CHUNK_CODEC,
        str(dest),
    ]
    try:
        result = run_subprocess_capture(args, timeout=300)
    except Exception as e:
        raise ChunkingError(f"Segment extraction failed for {dest.name}: {e}")

    if result.returncode != 0:
        raise ChunkingError(f"ffmpeg failed for {dest.name}: "
                            f"{result.stderr[:200] if result.stderr else 'unknown error'}")
    if not dest.exists():
        raise ChunkingError(f"Chunk file {dest.name} not created")
    return dest


def compute_chunk_hash(path: Path) -> str:
    """SHA-256 of the encoded chunk, usable as an idempotency key."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(block)
    return digest.hexdigest()


class AudioChunker:
    """Splits uploaded audio into encoded chunk files under ChunkStorage."""

    def __init__(self, storage: ChunkStorage, ffmpeg_bin: str = "ffmpeg",
                 ffprobe_bin: str = "ffprobe"):
        self.storage = storage
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    async def probe_bytes_duration(self, audio_bytes: bytes, suffix: str = "") -> float:
        """Probe an in-memory upload through the staging area."""
        path = self.storage.staging_path(suffix)
        try:
            await asyncio.to_thread(path.write_bytes, audio_bytes)
            return await asyncio.to_thread(probe_duration, path, self.ffprobe_bin)
        finally:
            self.storage.delete(path)

    async def chunk(self, audio_bytes: bytes, mode: str, job_id: str,
                    filename: str = "", total_duration: float | None = None) -> ChunkingResult:
        """Split audio bytes into chunk files for the given mode."""
        mode_config = get_mode_config(mode)
        suffix = Path(filename).suffix if filename else ""
        input_path = self.storage.write_bytes(job_id, f"input{suffix}", audio_bytes)

        try:
            if not total_duration:
                total_duration = await asyncio.to_thread(probe_duration, input_path, self.ffprobe_bin)
            logger.info("Chunking %.2fs of audio for job %s (mode: %s)", total_duration, job_id, mode)

            entries = plan_chunks(total_duration, mode_config)
            if not entries:
                raise ChunkingError("Audio is empty; nothing to chunk")

            chunks = []
            try:
                for entry in entries:
                    chunks.append(await self._build_chunk(job_id, input_path, entry))
            except BaseException:
                cleanup_chunks(chunks)
                raise
        finally:
            self.storage.delete(input_path)

        logger.info("Created %d chunks for job %s", len(chunks), job_id)
        return ChunkingResult(chunks=chunks, total_duration=total_duration, mode=mode)

    async def _build_chunk(self, job_id: str, input_path: Path, entry: dict) -> ChunkDescriptor:
        idx = entry['idx']
        start = entry['start_sec']
        length = entry['end_sec'] - start
        dest = self.storage.path_for(job_id, f"chunk_{idx:03d}.{CHUNK_FORMAT}")

        await asyncio.to_thread(extract_segment, input_path, dest, start, length, self.ffmpeg_bin)
        chunk_hash = await asyncio.to_thread(compute_chunk_hash, dest)
        self._check_size(dest)

        if entry['has_overlap']:
            logger.debug("Chunk %d: %.2fs - %.2fs [overlap from +%.2fs]",
                         idx, start, entry['end_sec'], entry['overlap_offset'])
        else:
            logger.debug("Chunk %d: %.2fs - %.2fs", idx, start, entry['end_sec'])

        return ChunkDescriptor(
            index=idx,
            start_time=start,
            end_time=entry['end_sec'],
            duration=length,
            hash=chunk_hash,
            file_path=dest,
            has_overlap=entry['has_overlap'],
            overlap_start_time=entry['overlap_offset'],
        )

    async def split_chunk(self, chunk: ChunkDescriptor, subchunk_sec: float) -> list[ChunkDescriptor]:
        """
        Subdivide a chunk's audio into shorter sub-chunks (no overlap).
        Chunks already shorter than subchunk_sec are split in half.
        """
        step = subchunk_sec if chunk.duration > subchunk_sec else chunk.duration / 2.0
        if step < MIN_SUBCHUNK_SEC:
            raise ChunkingError(f"Chunk {chunk.index} ({chunk.duration:.1f}s) is too short to split")

        source = Path(chunk.file_path)
        subchunks = []
        try:
            for i, (offset, end) in enumerate(_segment_bounds(chunk.duration, step)):
                dest = source.with_name(f"{source.stem}_{i:02d}{source.suffix}")
                await asyncio.to_thread(extract_segment, source, dest, offset, end - offset,
                                        self.ffmpeg_bin)
                subchunks.append(ChunkDescriptor(
                    index=i,
                    start_time=chunk.start_time + offset,
                    end_time=chunk.start_time + end,
                    duration=end - offset,
                    hash=await asyncio.to_thread(compute_chunk_hash, dest),
                    file_path=dest,
                ))
        except BaseException:
            cleanup_chunks(subchunks)
            raise

        logger.info("Split chunk %d (%.1fs) into %d sub-chunks",
                    chunk.index, chunk.duration, len(subchunks))
        return subchunks

    @staticmethod
    def cleanup(chunks: list[ChunkDescriptor]) -> int:
        return cleanup_chunks(chunks)

    @staticmethod
    def _check_size(path: Path):
        size = path.stat().st_size
        if size > PROVIDER_MAX_UPLOAD_BYTES:
            logger.warning("Chunk %s is %.1fMB, above the provider upload limit",
                           path.name, size / (1024 * 1024))
