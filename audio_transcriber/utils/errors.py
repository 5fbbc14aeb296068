"""Custom exception hierarchy for the transcription pipeline.

All exceptions inherit from PipelineError, which carries a stable
machine-readable ``code`` and an HTTP-equivalent ``status_code`` so that
job failures and API error bodies can be built from any of them.
"""

from __future__ import annotations

from typing import Any

# Intake
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
NO_FILE_PROVIDED = "NO_FILE_PROVIDED"
INVALID_MIME_TYPE = "INVALID_MIME_TYPE"
JOB_CREATION_FAILED = "JOB_CREATION_FAILED"
JOB_UPDATE_FAILED = "JOB_UPDATE_FAILED"
JOB_NOT_FOUND = "JOB_NOT_FOUND"

# File validation (intake and pre-flight)
FILE_NOT_FOUND = "FILE_NOT_FOUND"
FILE_TOO_LARGE = "FILE_TOO_LARGE"
UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"

# Conversion
CONVERSION_FAILED = "CONVERSION_FAILED"

# Transcription service
INVALID_REQUEST = "INVALID_REQUEST"
INVALID_FORMAT = "INVALID_FORMAT"
INVALID_API_KEY = "INVALID_API_KEY"
FORBIDDEN = "FORBIDDEN"
RATE_LIMIT = "RATE_LIMIT"
SERVER_ERROR = "SERVER_ERROR"
TIMEOUT = "TIMEOUT"
CONNECTION_ERROR = "CONNECTION_ERROR"
EMPTY_RESPONSE = "EMPTY_RESPONSE"
INVALID_RESPONSE = "INVALID_RESPONSE"
TRANSCRIPTION_API_ERROR = "TRANSCRIPTION_API_ERROR"
MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"

INTERNAL_ERROR = "INTERNAL_ERROR"


class PipelineError(Exception):
    """Base exception for all transcription pipeline errors."""

    default_code = INTERNAL_ERROR
    default_status = 500

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.job_id = job_id
        self.code = code or self.default_code
        self.status_code = status_code if status_code is not None else self.default_status
        self.details = details or {}
        super().__init__(message)

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        if self.job_id:
            return f"[job={self.job_id}] {super().__str__()}"
        return super().__str__()


class UploadValidationError(PipelineError):
    """Raised when an upload is rejected before processing starts."""

    default_code = UNSUPPORTED_FORMAT
    default_status = 400


class CapacityError(PipelineError):
    """Raised when intake is at its concurrency ceiling or shutting down."""

    default_code = SERVICE_UNAVAILABLE
    default_status = 503


class TranscodeError(PipelineError):
    """Raised when ffmpeg/ffprobe fails on an input file."""

    default_code = CONVERSION_FAILED
    default_status = 422

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        input_path: str | None = None,
    ) -> None:
        self.input_path = input_path
        super().__init__(message, job_id)


class ConversionFailedError(PipelineError):
    """Raised by the pipeline when the original file cannot be converted.

    Never retried: the source file itself is unusable.
    """

    default_code = CONVERSION_FAILED
    default_status = 422


class ASRError(PipelineError):
    """Raised when a call to the transcription service fails.

    ``retryable`` marks transient conditions; ``retry_after`` holds a
    server-specified delay in seconds, honored instead of the backoff.
    """

    default_code = TRANSCRIPTION_API_ERROR

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        retry_after: float | None = None,
        provider: str | None = None,
    ) -> None:
        self.retryable = retryable
        self.retry_after = retry_after
        self.provider = provider
        super().__init__(message, job_id, code, status_code, details)


class MaxRetriesExceededError(ASRError):
    """Raised once the retry policy is exhausted; wraps the last error."""

    default_code = MAX_RETRIES_EXCEEDED

    def __init__(self, last_error: ASRError, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Transcription failed after {attempts} attempts: {last_error.message}",
            job_id=last_error.job_id,
            status_code=last_error.status_code,
            details={
                **last_error.details,
                "last_error_code": last_error.code,
                "attempts": attempts,
            },
            provider=last_error.provider,
        )


class JobStoreError(PipelineError):
    """Raised when a job record cannot be created or updated."""

    default_code = JOB_UPDATE_FAILED


class JobNotFoundError(JobStoreError):
    """Raised when updating a job that does not exist (or was swept)."""


class InvalidTransitionError(JobStoreError):
    """Raised when a state change is not allowed by the job state machine."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid job transition {current} -> {target}",
            job_id=job_id,
            details={"from": current, "to": target},
        )
