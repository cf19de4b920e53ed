"""
Shared constants for ChunkedTranscriber.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "ChunkedTranscriber"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".chunked_transcriber"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DEFAULT_SCRATCH_DIR = APP_SUPPORT_DIR / "scratch"
DEFAULT_OUTPUT_ROOT = HOME / "Transcripts"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "pending"
    CHUNKING = "chunking"
    TRANSCRIBING = "transcribing"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# Forward edges between non-terminal states. FAILED and CANCELLED are
# reachable from every non-terminal state and are not listed here.
JOB_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.CHUNKING, JobStatus.TRANSCRIBING},
    JobStatus.CHUNKING: {JobStatus.TRANSCRIBING},
    JobStatus.TRANSCRIBING: {JobStatus.ASSEMBLING, JobStatus.COMPLETED},
    JobStatus.ASSEMBLING: {JobStatus.COMPLETED},
}

# ── Chunk status ──────────────────────────────────────────────────────
class ChunkState:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    SPLITTING = "splitting"
    COMPLETED = "completed"
    FAILED = "failed"

CHUNK_STATES = {
    ChunkState.PENDING, ChunkState.IN_PROGRESS, ChunkState.RETRYING,
    ChunkState.SPLITTING, ChunkState.COMPLETED, ChunkState.FAILED,
}

# ── Processing modes ──────────────────────────────────────────────────
class ProcessingMode:
    BALANCED = "balanced"
    BEST_QUALITY = "best_quality"

class BackoffShape:
    EXPONENTIAL = "exponential"
    LINEAR = "linear"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    INVALID_INPUT = "ERR_INVALID_INPUT"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    INVALID_STATE = "ERR_INVALID_STATE"
    JOB_NOT_FOUND = "ERR_JOB_NOT_FOUND"
    ACCESS_DENIED = "ERR_ACCESS_DENIED"
    CHUNKING = "ERR_CHUNKING"
    BUDGET_EXCEEDED = "ERR_BUDGET_EXCEEDED"
    PROVIDER_REJECTED = "ERR_PROVIDER_REJECTED"

    # Retryable
    PROVIDER_FAILED = "ERR_PROVIDER_FAILED"
    PROVIDER_RATE_LIMITED = "ERR_PROVIDER_RATE_LIMITED"
    PROVIDER_TIMEOUT = "ERR_PROVIDER_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

    # Special (not failure)
    CANCELLED = "CANCELLED"
    ABORTED = "ABORTED"

RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER_FAILED,
    ErrorCode.PROVIDER_RATE_LIMITED,
    ErrorCode.PROVIDER_TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
}

# ── Audio pipeline defaults ───────────────────────────────────────────
# Chunk encoding target
CHUNK_CHANNELS = 1
CHUNK_SAMPLE_RATE = 16000
CHUNK_BITRATE = "64k"
CHUNK_CODEC = "libmp3lame"
CHUNK_FORMAT = "mp3"

# Provider per-request upload limit is 25MB; stay under it
PROVIDER_MAX_UPLOAD_BYTES = 24 * 1024 * 1024

MIN_TAIL_SEC = 1.0             # trailing remainder shorter than this is folded
MIN_SUBCHUNK_SEC = 5.0

# ── Job safeguards ────────────────────────────────────────────────────
MAX_TOTAL_RETRIES = 20
MAX_SPLITS = 2
MAX_SPLIT_DEPTH = 2
MAX_JOB_AGE_SEC = 2 * 60 * 60
SWEEP_INTERVAL_SEC = 5 * 60

# ── Degraded mode ─────────────────────────────────────────────────────
DEGRADE_AFTER_RATE_LIMITS = 3
RECOVER_AFTER_SUCCESSES = 5
DEGRADED_EXTRA_DELAY_SEC = 5.0

# ── Upload limits ─────────────────────────────────────────────────────
MAX_UPLOAD_MB = 500
MAX_DURATION_SEC = 7200

# ── Assembly ──────────────────────────────────────────────────────────
PARAGRAPH_DELIMITER = "\n\n"
WORDS_PER_SECOND = 2.5         # ~150 wpm conversational speech
ALIGN_WINDOW_SLACK = 2.0
MIN_ALIGN_TOKENS = 4

# ── Usage tracking ────────────────────────────────────────────────────
class TrackingMode:
    PLATFORM = "platform"
    BYOK = "byok"

# ── Providers ─────────────────────────────────────────────────────────
class ProviderName:
    OPENAI = "openai"
    DEEPGRAM = "deepgram"

OPENAI_API_BASE = "https://api.openai.com/v1"
OPENAI_MODEL = "whisper-1"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"

DEEPGRAM_API_BASE = "https://api.deepgram.com/v1"
DEEPGRAM_MODEL = "nova-3"
DEEPGRAM_API_KEY_ENV = "DEEPGRAM_API_KEY"

PROVIDER_MIN_TIMEOUT_SEC = 120

# Characters forbidden in file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 200
