"""
Standardised error handling for ChunkedTranscriber.
"""

from transcriber.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    default_code = ErrorCode.INVALID_STATE

    def __init__(self, code: str | None, message: str, retryable: bool | None = None):
        self.code = code or self.default_code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


class InvalidInput(JobError):
    """Malformed request or configuration, rejected before a job exists."""

    default_code = ErrorCode.INVALID_INPUT

    def __init__(self, message: str):
        super().__init__(None, message)


class InvalidTransition(JobError):
    default_code = ErrorCode.INVALID_TRANSITION

    def __init__(self, message: str):
        super().__init__(None, message)


class InvalidState(JobError):
    default_code = ErrorCode.INVALID_STATE

    def __init__(self, message: str):
        super().__init__(None, message)


class JobNotFound(JobError):
    default_code = ErrorCode.JOB_NOT_FOUND

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(None, f"Job {job_id} not found")


class AccessDenied(JobError):
    default_code = ErrorCode.ACCESS_DENIED

    def __init__(self, message: str):
        super().__init__(None, message)


class ChunkingError(JobError):
    default_code = ErrorCode.CHUNKING

    def __init__(self, message: str):
        super().__init__(None, message)


class ProviderError(JobError):
    """External transcription failure."""

    default_code = ErrorCode.PROVIDER_FAILED

    def __init__(self, message: str, code: str | None = None,
                 retryable: bool | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(code, message, retryable)


class ProviderRateLimited(ProviderError):
    """Provider rejected the request with a rate limit (HTTP 429)."""

    default_code = ErrorCode.PROVIDER_RATE_LIMITED

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, retryable=True, status_code=429)


class BudgetExceeded(JobError):
    """Job-wide retry or split safeguard tripped."""

    default_code = ErrorCode.BUDGET_EXCEEDED

    def __init__(self, message: str):
        super().__init__(None, message)


class JobCancelled(JobError):
    """Cooperative cancellation observed. Terminal, not a failure."""

    default_code = ErrorCode.CANCELLED

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(None, f"Job {job_id} was cancelled")


class JobAborted(JobError):
    """Another chunk of the same job already failed; stop retrying and splitting."""

    default_code = ErrorCode.ABORTED

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(None, f"Job {job_id} aborted after another chunk failed")


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
