"""Per-job processing orchestrator.

Runs one stored upload through: convert (when the format needs it) ->
transcribe -> record result. Any failure becomes a job failure with a
stable error code. Temp files are removed only after the job has reached
its terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from audio_transcriber.asr.client import TranscriptionClient
from audio_transcriber.asr.interface import ProgressUpdate
from audio_transcriber.audio.transcode import (
    TranscodeResult,
    needs_conversion,
    transcode_for_asr,
)
from audio_transcriber.jobs.store import Job, JobFailure, JobStore
from audio_transcriber.observability.metrics import JobMetrics, StageTimer, log_job_metrics
from audio_transcriber.storage.temp_store import TempArtifact, TempArtifactStore
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import (
    ConversionFailedError,
    JobStoreError,
    PipelineError,
    TranscodeError,
)

logger = logging.getLogger(__name__)

Converter = Callable[[str, str], TranscodeResult]


def _fail_job(jobs: JobStore, job_id: str, failure: JobFailure) -> None:
    """Mark the job failed; drop it entirely if even that is impossible."""
    try:
        jobs.fail(job_id, failure)
    except JobStoreError:
        logger.error(
            "Could not record failure for job, removing it",
            exc_info=True,
            extra={"job_id": job_id, "error_code": failure.code},
        )
        jobs.remove(job_id)


async def _discard_conversion(
    conversion: asyncio.Future, temp_store: TempArtifactStore, job_id: str
) -> None:
    """Let an abandoned conversion finish, then delete whatever it wrote.

    The worker thread cannot be interrupted, so its output would otherwise
    appear after the temp directory has been drained.
    """
    logger.info("Waiting for in-progress conversion to stop", extra={"job_id": job_id})
    try:
        result = await conversion
    except Exception:
        logger.warning(
            "Abandoned conversion failed", exc_info=True, extra={"job_id": job_id}
        )
        return
    temp_store.remove(temp_store.track(result.output_path, owner=job_id))


async def process_job(
    job_id: str,
    jobs: JobStore,
    temp_store: TempArtifactStore,
    client: TranscriptionClient,
    converter: Converter = transcode_for_asr,
) -> Job | None:
    """Process one job whose upload has been stored.

    Args:
        job_id: A job in the processing state with an attached artifact.
        jobs: Store owning the job.
        temp_store: Store owning the job's files.
        client: Transcription client (retries, cost tracking).
        converter: Blocking conversion function, run in a worker thread.

    Returns:
        The job in its terminal state, or None if it no longer exists.
    """
    job = jobs.get(job_id)
    if job is None or job.artifact is None:
        logger.warning("Job has no stored upload, skipping", extra={"job_id": job_id})
        return None

    wall_start = time.monotonic()
    stage_timings: dict[str, float] = {}
    original: TempArtifact = job.artifact
    converted: TempArtifact | None = None
    metadata: dict = {}
    failure: JobFailure | None = None
    retry_count = 0

    def _on_progress(update: ProgressUpdate) -> None:
        try:
            jobs.annotate(job_id, update.stage, update.message, update.retry_count)
        except JobStoreError:
            logger.warning(
                "Dropped progress update for %s", update.stage, extra={"job_id": job_id}
            )

    try:
        audio_path = str(original.path)
        conversion_duration: float | None = None

        if needs_conversion(audio_path):
            jobs.annotate(
                job_id,
                "converting",
                f"Converting {original.extension} audio to mp3",
            )
            with StageTimer("conversion", stage_timings):
                conversion = asyncio.ensure_future(
                    asyncio.to_thread(converter, audio_path, str(temp_store.directory))
                )
                try:
                    result = await asyncio.shield(conversion)
                except asyncio.CancelledError:
                    await _discard_conversion(conversion, temp_store, job_id)
                    raise
                except TranscodeError as exc:
                    raise ConversionFailedError(
                        f"Audio conversion failed: {exc.message}",
                        job_id=job_id,
                        details={"original_format": original.extension.lstrip(".")},
                    ) from exc
            converted = temp_store.track(result.output_path, owner=job_id)
            conversion_duration = result.duration_seconds
            audio_path = result.output_path

        with StageTimer("transcription", stage_timings):
            transcription = await client.transcribe(
                audio_path, job_id=job_id, progress=_on_progress
            )

        metadata = dict(transcription.metadata)
        metadata["was_converted"] = converted is not None
        if converted is not None:
            metadata["original_format"] = original.extension.lstrip(".")
            metadata["conversion_duration"] = conversion_duration
        retry_count = metadata.get("retry_count", 0)
        jobs.complete(job_id, transcription.transcript, metadata)

    except asyncio.CancelledError:
        failure = JobFailure(
            code=errors.INTERNAL_ERROR,
            message="Processing cancelled during shutdown",
        )
        _fail_job(jobs, job_id, failure)
        raise

    except Exception as exc:
        failure = JobFailure.from_error(exc)
        retry_count = getattr(exc, "_retry_count", 0)
        logger.error(
            "Job processing failed: %s",
            failure.message,
            exc_info=not isinstance(exc, PipelineError),
            extra={"job_id": job_id, "error_code": failure.code, "retry_count": retry_count},
        )
        _fail_job(jobs, job_id, failure)

    finally:
        if converted is not None:
            temp_store.remove(converted)
        temp_store.remove(original)
        jobs.release_file(job_id)

        cost = metadata.get("cost") or {}
        log_job_metrics(
            JobMetrics(
                job_id=job_id,
                status="failed" if failure is not None else "completed",
                file_size_bytes=original.size_bytes,
                audio_duration_seconds=metadata.get("audio_duration"),
                processing_wall_time_seconds=time.monotonic() - wall_start,
                was_converted=converted is not None,
                cost_estimate=cost.get("cost", 0.0),
                retry_count=retry_count,
                stage_timings=stage_timings,
                error_code=failure.code if failure else None,
                error_message=failure.message if failure else None,
            )
        )

    return jobs.get(job_id)
