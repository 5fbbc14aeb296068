"""Upload admission, validation and storage.

An upload is admitted through the throttle and gets a pending job before
its body is read. It is then validated and streamed to the temp store,
and finally moves its job to processing. Rejections after the job exists
leave it failed with the matching error code so a poller can see why.
"""

import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from audio_transcriber.intake.throttle import UploadThrottle
from audio_transcriber.jobs.store import Job, JobFailure, JobStore
from audio_transcriber.storage.temp_store import (
    AsyncReadable,
    TempArtifactStore,
    file_too_large,
)
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import (
    JobStoreError,
    PipelineError,
    UploadValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
# Multipart boundaries and part headers on top of the file itself
FORM_OVERHEAD_BYTES = 64 * 1024

ALLOWED_EXTENSIONS = frozenset({
    ".wav", ".mp3", ".m4a", ".webm", ".ogg", ".mp4",
    ".flac", ".aac", ".wma", ".amr", ".opus",
})
ALLOWED_MIME_TYPES = frozenset({"video/webm", "video/mp4", "application/octet-stream"})


class UploadedFile(AsyncReadable, Protocol):
    filename: str | None
    content_type: str | None


UploadOpener = Callable[[], Awaitable[UploadedFile | None]]


def validate_extension(filename: str) -> str:
    """Return the lower-cased extension of ``filename`` if it is allowed.

    Raises:
        UploadValidationError: UNSUPPORTED_FORMAT.
    """
    extension = Path(filename).suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise UploadValidationError(
            f"Unsupported file format: {extension or '(none)'}. "
            f"Allowed formats: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
            code=errors.UNSUPPORTED_FORMAT,
            status_code=400,
            details={"format": extension},
        )
    return extension


def validate_mime(content_type: str | None) -> None:
    """Reject declared content types that cannot be audio.

    A missing content type is treated as ``application/octet-stream``.

    Raises:
        UploadValidationError: INVALID_MIME_TYPE.
    """
    mime = (content_type or "application/octet-stream").split(";")[0].strip().lower()
    if mime.startswith("audio/") or mime in ALLOWED_MIME_TYPES:
        return
    raise UploadValidationError(
        f"Invalid file type: {mime}",
        code=errors.INVALID_MIME_TYPE,
        status_code=400,
        details={"content_type": mime},
    )


def _reject(jobs: JobStore, job: Job, exc: PipelineError) -> None:
    exc.job_id = job.id
    logger.warning(
        "Upload rejected: %s",
        exc.message,
        extra={"job_id": job.id, "upload_id": job.upload_id, "error_code": exc.code},
    )
    try:
        jobs.fail(job.id, JobFailure.from_error(exc))
    except JobStoreError:
        jobs.remove(job.id)


async def receive_upload(
    open_upload: UploadOpener,
    jobs: JobStore,
    temp_store: TempArtifactStore,
    throttle: UploadThrottle,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    declared_size: int | None = None,
) -> Job:
    """Admit, validate and store one upload.

    The throttle slot is taken and the job created before ``open_upload``
    runs, so a request body is never read unless the upload was admitted.

    Args:
        open_upload: Coroutine function that reads the request body and
            returns the multipart file, or None when the field is missing.
        jobs: Store receiving the new job.
        temp_store: Store receiving the file.
        throttle: In-flight upload ceiling.
        max_bytes: Largest accepted upload.
        declared_size: Request Content-Length, when the client sent one.

    Returns:
        The job, now processing with its artifact attached.

    Raises:
        CapacityError: No capacity or shutting down; no job is created.
        JobStoreError: JOB_CREATION_FAILED or JOB_UPDATE_FAILED.
        UploadValidationError: The upload was rejected; its job is failed.
    """
    with throttle.slot() as upload_id:
        try:
            job = jobs.create(upload_id)
        except Exception as exc:
            logger.error("Failed to create job", exc_info=True, extra={"upload_id": upload_id})
            raise JobStoreError(
                "Failed to create job",
                code=errors.JOB_CREATION_FAILED,
                status_code=500,
            ) from exc

        try:
            if declared_size is not None and declared_size > max_bytes + FORM_OVERHEAD_BYTES:
                raise file_too_large(max_bytes)
            upload = await open_upload()
            if upload is None or not upload.filename:
                raise UploadValidationError(
                    "No audio file provided", code=errors.NO_FILE_PROVIDED, status_code=400
                )
            extension = validate_extension(upload.filename)
            validate_mime(upload.content_type)
            artifact = await temp_store.write_upload(
                upload, extension, max_bytes, owner=job.id
            )
        except PipelineError as exc:
            _reject(jobs, job, exc)
            raise
        except Exception as exc:
            error = PipelineError(f"Failed to store upload: {exc}", job_id=job.id)
            _reject(jobs, job, error)
            raise error from exc

        try:
            jobs.attach_file(job.id, artifact, upload.filename, artifact.size_bytes)
        except JobStoreError as exc:
            logger.error(
                "Failed to update job after upload", exc_info=True, extra={"job_id": job.id}
            )
            temp_store.remove(artifact)
            jobs.remove(job.id)
            raise JobStoreError(
                "Failed to update job",
                job_id=job.id,
                code=errors.JOB_UPDATE_FAILED,
                status_code=500,
            ) from exc

        logger.info(
            "Upload stored: %s (%d bytes)",
            upload.filename,
            artifact.size_bytes,
            extra={"job_id": job.id, "upload_id": upload_id},
        )
        return job


async def accept_upload(
    upload: UploadedFile | None,
    jobs: JobStore,
    temp_store: TempArtifactStore,
    throttle: UploadThrottle,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> Job:
    """Admit and store an upload whose body has already been received."""

    async def _received() -> UploadedFile | None:
        return upload

    return await receive_upload(_received, jobs, temp_store, throttle, max_bytes)
