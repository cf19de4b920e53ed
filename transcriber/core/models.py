"""
In-memory data models (plain dataclasses) for ChunkedTranscriber.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from transcriber.core.constants import JobStatus, ChunkState


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TranscriptionHints:
    """Model/language hints forwarded to the provider."""
    model: Optional[str] = None
    language: Optional[str] = None
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    speakers_expected: Optional[int] = None


@dataclass
class JobConfig:
    mode: Optional[str] = None              # None -> AppConfig default_mode
    provider: Optional[str] = None
    api_key: Optional[str] = None           # BYOK; None -> platform key
    model: Optional[str] = None
    language: Optional[str] = None
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    enable_speaker_diarization: bool = False
    speakers_expected: Optional[int] = None

    @property
    def is_byok(self) -> bool:
        return bool(self.api_key)

    def hints(self) -> TranscriptionHints:
        return TranscriptionHints(
            model=self.model,
            language=self.language,
            prompt=self.prompt,
            temperature=self.temperature,
            speakers_expected=self.speakers_expected,
        )

    def __repr__(self) -> str:
        # never leak credentials into logs
        key = "***" if self.api_key else None
        return (f"JobConfig(mode={self.mode!r}, provider={self.provider!r}, api_key={key}, "
                f"model={self.model!r}, language={self.language!r}, "
                f"enable_speaker_diarization={self.enable_speaker_diarization})")


@dataclass
class JobMetadata:
    filename: str
    file_size: int
    duration: float = 0.0
    total_chunks: int = 0
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    processing_time: Optional[float] = None   # seconds


@dataclass
class ChunkDescriptor:
    index: int
    start_time: float                  # seconds, relative to the original audio
    end_time: float                    # end of the chunk's physical audio
    duration: float
    hash: str
    file_path: Path
    has_overlap: bool = False
    overlap_start_time: Optional[float] = None   # offset from chunk start


@dataclass
class ChunkingResult:
    chunks: list[ChunkDescriptor]
    total_duration: float
    mode: str

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


@dataclass
class ChunkStatus:
    state: str = ChunkState.PENDING
    transcript: Optional[str] = None
    retry_count: int = 0
    was_split: bool = False
    error: Optional[str] = None
    last_updated: datetime = field(default_factory=utc_now)


@dataclass
class Utterance:
    speaker: str
    text: str
    start: float                       # milliseconds
    end: float
    confidence: float = 0.0


@dataclass
class SpeakerTranscript:
    text: str
    utterances: list[Utterance] = field(default_factory=list)


@dataclass
class Job:
    id: str
    config: JobConfig
    metadata: JobMetadata
    status: str = JobStatus.PENDING
    chunks: list[ChunkDescriptor] = field(default_factory=list)
    chunk_statuses: list[ChunkStatus] = field(default_factory=list)
    progress: int = 0
    completed_chunks: int = 0
    transcript: Optional[str] = None
    utterances: Optional[list[Utterance]] = None
    error: Optional[str] = None
    total_retries: int = 0
    splits: int = 0
    user_id: Optional[str] = None
    last_updated: datetime = field(default_factory=utc_now)


@dataclass
class GovernorStatistics:
    total_attempts: int = 0
    successes: int = 0
    rate_limited: int = 0
    failures: int = 0
    degraded_entries: int = 0
    peak_concurrency: int = 0

    def as_dict(self) -> dict:
        return asdict(self)
