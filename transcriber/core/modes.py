"""
Processing-mode configuration.

balanced:      3 min chunks, no overlap, 4 parallel calls, exponential backoff.
best_quality:  10 min chunks, 15 s overlap, strictly sequential, linear backoff.
"""

from dataclasses import dataclass

from transcriber.core.constants import ProcessingMode, BackoffShape
from transcriber.core.error_codes import InvalidInput


@dataclass(frozen=True)
class BackoffConfig:
    shape: str
    base_delay: float          # seconds
    max_delay: float
    multiplier: float = 2.0    # exponential only
    increment: float = 0.0     # linear only
    jitter: float = 0.0        # +/- proportion of the delay


@dataclass(frozen=True)
class ModeConfig:
    name: str
    chunk_duration: float
    overlap_duration: float
    max_concurrency: int
    max_retries: int
    subchunk_duration: float
    backoff: BackoffConfig

    @property
    def has_overlap(self) -> bool:
        return self.overlap_duration > 0


MODE_CONFIGS = {
    ProcessingMode.BALANCED: ModeConfig(
        name=ProcessingMode.BALANCED,
        chunk_duration=180,
        overlap_duration=0,
        max_concurrency=4,
        max_retries=3,
        subchunk_duration=90,
        backoff=BackoffConfig(
            shape=BackoffShape.EXPONENTIAL,
            base_delay=2.0,
            max_delay=10.0,
            multiplier=2.5,    # 2s -> 5s -> 10s
            jitter=0.3,
        ),
    ),
    ProcessingMode.BEST_QUALITY: ModeConfig(
        name=ProcessingMode.BEST_QUALITY,
        chunk_duration=600,
        overlap_duration=15,
        max_concurrency=1,
        max_retries=2,
        subchunk_duration=300,
        backoff=BackoffConfig(
            shape=BackoffShape.LINEAR,
            base_delay=5.0,
            max_delay=10.0,
            increment=5.0,     # 5s -> 10s
            jitter=0.2,
        ),
    ),
}


def get_mode_config(mode: str) -> ModeConfig:
    """Look up a mode by name. Raises InvalidInput for unknown modes."""
    try:
        return MODE_CONFIGS[mode]
    except KeyError:
        allowed = ", ".join(sorted(MODE_CONFIGS))
        raise InvalidInput(f"Unknown processing mode {mode!r} (expected one of: {allowed})")
