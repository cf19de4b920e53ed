"""
In-memory stand-ins shared by the test modules: no ffmpeg, no HTTP.
"""

import asyncio
from pathlib import Path

from transcriber.core.chunking import plan_chunks
from transcriber.core.cleanup import cleanup_chunks
from transcriber.core.constants import BackoffShape
from transcriber.core.modes import BackoffConfig, ModeConfig, get_mode_config
from transcriber.core.models import ChunkDescriptor, ChunkingResult, SpeakerTranscript, Utterance
from transcriber.core.storage import ChunkStorage

NO_BACKOFF = BackoffConfig(shape=BackoffShape.EXPONENTIAL, base_delay=0.0, max_delay=0.0)


def make_mode(max_retries=3, max_concurrency=1, subchunk_duration=90.0, overlap=0.0) -> ModeConfig:
    return ModeConfig(
        name="test",
        chunk_duration=180.0,
        overlap_duration=overlap,
        max_concurrency=max_concurrency,
        max_retries=max_retries,
        subchunk_duration=subchunk_duration,
        backoff=NO_BACKOFF,
    )


class FakeChunker:
    """Writes small placeholder files instead of running ffmpeg."""

    def __init__(self, storage: ChunkStorage, duration: float = 400.0):
        self.storage = storage
        self.duration = duration
        self.chunk_calls = 0
        self.split_calls = 0

    async def probe_bytes_duration(self, audio_bytes: bytes, suffix: str = "") -> float:
        return self.duration

    async def chunk(self, audio_bytes, mode, job_id, filename="", total_duration=None):
        self.chunk_calls += 1
        total = total_duration or self.duration
        chunks = []
        for entry in plan_chunks(total, get_mode_config(mode)):
            idx = entry['idx']
            path = self.storage.write_bytes(job_id, f"chunk_{idx:03d}.mp3", f"audio {idx}".encode())
            chunks.append(ChunkDescriptor(
                index=idx,
                start_time=entry['start_sec'],
                end_time=entry['end_sec'],
                duration=entry['end_sec'] - entry['start_sec'],
                hash=f"hash-{idx}",
                file_path=path,
                has_overlap=entry['has_overlap'],
                overlap_start_time=entry['overlap_offset'],
            ))
        return ChunkingResult(chunks=chunks, total_duration=total, mode=mode)

    async def split_chunk(self, chunk: ChunkDescriptor, subchunk_sec: float):
        self.split_calls += 1
        source = Path(chunk.file_path)
        half = chunk.duration / 2
        subchunks = []
        for i in range(2):
            dest = source.with_name(f"{source.stem}_{i:02d}{source.suffix}")
            dest.write_bytes(source.read_bytes() + f" part {i}".encode())
            subchunks.append(ChunkDescriptor(
                index=i,
                start_time=chunk.start_time + i * half,
                end_time=chunk.start_time + (i + 1) * half,
                duration=half,
                hash=f"{chunk.hash}-{i}",
                file_path=dest,
            ))
        return subchunks

    @staticmethod
    def cleanup(chunks):
        return cleanup_chunks(chunks)


class ScriptedProvider:
    """
    Replays a list of outcomes: strings are returned, exceptions raised.
    `failing` maps audio to an exception raised on every call and
    `responses` maps audio to fixed text. Otherwise, once the script runs
    out, echoes the audio it was given.
    """

    name = "fake"
    supports_speakers = False

    def __init__(self, script=None, gate: asyncio.Event | None = None, delays=None,
                 failing=None, responses=None):
        self.script = list(script or [])
        self.gate = gate
        self.delays = delays or {}
        self.failing = failing or {}
        self.responses = responses or {}
        self.calls: list[bytes] = []

    async def transcribe_segment(self, audio_bytes, hints):
        self.calls.append(audio_bytes)
        if self.gate is not None:
            await self.gate.wait()
        delay = self.delays.get(audio_bytes)
        if delay:
            await asyncio.sleep(delay)
        if audio_bytes in self.failing:
            raise self.failing[audio_bytes]
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        if audio_bytes in self.responses:
            return self.responses[audio_bytes]
        return f"text for {audio_bytes.decode()}"

    async def transcribe_with_speakers(self, audio_bytes, hints):
        raise NotImplementedError


class SpeakerProvider(ScriptedProvider):
    name = "fake-speakers"
    supports_speakers = True

    async def transcribe_with_speakers(self, audio_bytes, hints):
        self.calls.append(audio_bytes)
        return SpeakerTranscript(
            text="Hi there.  How are you?",
            utterances=[
                Utterance(speaker="A", text="Hi there.", start=0, end=900, confidence=0.9),
                Utterance(speaker="B", text="How are you?", start=1000, end=2100, confidence=0.8),
            ],
        )
