"""In-memory job registry and state machine.

Jobs move forward only:

    pending -> processing -> processing (progress) -> completed | failed
    pending -> failed

Terminal jobs are kept for a retention window so clients can poll them,
then swept. The store is mutated only from the event-loop thread.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from audio_transcriber.storage.temp_store import TempArtifact
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    PipelineError,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 30 * 60


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass
class JobFailure:
    """Why a job failed, in the shape reported to pollers."""

    code: str
    message: str
    status_code: int = 500
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, exc: BaseException) -> JobFailure:
        if isinstance(exc, PipelineError):
            return cls(
                code=exc.code,
                message=exc.message,
                status_code=exc.status_code,
                details=dict(exc.details),
            )
        return cls(
            code=errors.INTERNAL_ERROR,
            message=str(exc) or type(exc).__name__,
            status_code=500,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Job:
    """One upload's processing record."""

    id: str
    upload_id: str | None
    created_at: datetime
    updated_at: datetime
    status: JobStatus = JobStatus.PENDING
    artifact: TempArtifact | None = None
    file_name: str | None = None
    file_size: int | None = None
    stage: str | None = None
    message: str | None = None
    retry_count: int = 0
    transcript_text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    failure: JobFailure | None = None
    processed_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def file_path(self) -> str | None:
        return str(self.artifact.path) if self.artifact is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_public_dict(self) -> dict[str, Any]:
        """Status body returned to pollers."""
        body: dict[str, Any] = {
            "job_id": self.id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            body.update(
                file_name=self.file_name,
                file_size=self.file_size,
                stage=self.stage,
                message=self.message,
                retry_count=self.retry_count,
            )
        elif self.status is JobStatus.COMPLETED:
            body.update(
                transcript_text=self.transcript_text,
                processed_at=self.processed_at.isoformat() if self.processed_at else None,
                metadata=self.metadata,
                cost=self.metadata.get("cost"),
            )
        elif self.failure is not None:
            body.update(
                error=self.failure.message,
                error_code=self.failure.code,
                status_code=self.failure.status_code,
                error_details=self.failure.details,
                failed_at=self.failed_at.isoformat() if self.failed_at else None,
            )
        return body


class JobStore:
    """Owns every Job and enforces the allowed transitions.

    Args:
        retention_seconds: Terminal jobs idle longer than this are swept.
        evict_on_read: Remove a terminal job as soon as a poller reads it.
        clock: Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        evict_on_read: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.retention_seconds = retention_seconds
        self.evict_on_read = evict_on_read
        self._clock = clock or _utcnow
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def create(self, upload_id: str | None = None) -> Job:
        """Register a new pending job under a fresh id."""
        now = self._clock()
        job_id = uuid.uuid4().hex
        while job_id in self._jobs:
            job_id = uuid.uuid4().hex
        job = Job(id=job_id, upload_id=upload_id, created_at=now, updated_at=now)
        self._jobs[job_id] = job
        logger.info("Job created", extra={"job_id": job_id, "upload_id": upload_id})
        return job

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def poll(self, job_id: str) -> dict[str, Any] | None:
        """Return the public status body, or None if the job is unknown.

        With evict-on-read enabled a terminal job is removed once read.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None
        body = job.to_public_dict()
        if self.evict_on_read and job.is_terminal:
            self.remove(job_id)
        return body

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
        return job

    def _transition(self, job: Job, target: JobStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(job.id, job.status.value, target.value)
        job.status = target
        self._touch(job)

    def _touch(self, job: Job) -> datetime:
        now = max(self._clock(), job.updated_at)
        job.updated_at = now
        return now

    def attach_file(
        self,
        job_id: str,
        artifact: TempArtifact,
        file_name: str | None,
        file_size: int,
    ) -> Job:
        """Move a pending job to processing with its stored upload."""
        job = self._require(job_id)
        if job.status is not JobStatus.PENDING:
            raise InvalidTransitionError(job.id, job.status.value, JobStatus.PROCESSING.value)
        self._transition(job, JobStatus.PROCESSING)
        job.artifact = artifact
        job.file_name = file_name
        job.file_size = file_size
        job.stage = "uploaded"
        job.message = "File uploaded, waiting to be processed"
        return job

    def annotate(
        self,
        job_id: str,
        stage: str,
        message: str,
        retry_count: int | None = None,
    ) -> Job:
        """Record progress on a processing job."""
        job = self._require(job_id)
        if job.status is not JobStatus.PROCESSING:
            raise InvalidTransitionError(job.id, job.status.value, JobStatus.PROCESSING.value)
        self._transition(job, JobStatus.PROCESSING)
        job.stage = stage
        job.message = message
        if retry_count is not None:
            job.retry_count = retry_count
        return job

    def complete(self, job_id: str, transcript: str, metadata: dict[str, Any]) -> Job:
        job = self._require(job_id)
        self._transition(job, JobStatus.COMPLETED)
        job.transcript_text = transcript
        job.metadata = metadata
        job.retry_count = metadata.get("retry_count", job.retry_count)
        job.stage = "completed"
        job.message = "Transcription completed"
        job.processed_at = job.updated_at
        logger.info("Job completed", extra={"job_id": job_id, "stage": "completed"})
        return job

    def fail(self, job_id: str, failure: JobFailure) -> Job:
        job = self._require(job_id)
        self._transition(job, JobStatus.FAILED)
        job.failure = failure
        job.stage = "failed"
        job.message = failure.message
        job.failed_at = job.updated_at
        logger.warning(
            "Job failed: %s",
            failure.message,
            extra={"job_id": job_id, "error_code": failure.code},
        )
        return job

    def release_file(self, job_id: str) -> bool:
        """Clear the job's artifact handle once its file is gone.

        Returns:
            True if the job holds no file afterwards.
        """
        job = self._jobs.get(job_id)
        if job is None or job.artifact is None:
            return True
        if job.artifact.exists:
            return False
        job.artifact = None
        return True

    def remove(self, job_id: str) -> Job | None:
        return self._jobs.pop(job_id, None)

    def sweep(self, now: datetime | None = None) -> list[Job]:
        """Remove terminal jobs not updated within the retention window.

        Returns:
            The removed jobs, so the caller can release their files.
        """
        now = now or self._clock()
        expired = [
            job
            for job in self._jobs.values()
            if job.is_terminal
            and (now - job.updated_at).total_seconds() > self.retention_seconds
        ]
        for job in expired:
            del self._jobs[job.id]
        if expired:
            logger.info("Swept %d expired jobs", len(expired))
        return expired

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            totals[job.status.value] += 1
        totals["total"] = len(self._jobs)
        return totals
