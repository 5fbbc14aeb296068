"""Retrying transcription client.

Wraps a single-attempt ASREngine with pre-flight file validation, the
exponential backoff policy, progress reporting and cost tracking.
"""

import asyncio
import logging
import os
import secrets
import time
from collections.abc import Callable
from pathlib import Path

from audio_transcriber.asr.interface import (
    ASREngine,
    ProgressCallback,
    ProgressUpdate,
    TranscriptionOptions,
    TranscriptionResult,
)
from audio_transcriber.audio.transcode import probe_duration
from audio_transcriber.observability.costs import CostTracker
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import ASRError, MaxRetriesExceededError
from audio_transcriber.utils.retry import BackoffPolicy, retry_async

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = frozenset({".mp3", ".mp4", ".mpeg", ".mpga", ".m4a", ".wav", ".webm"})
MAX_FILE_SIZE_BYTES = 25 * 1024 * 1024


def _is_retryable(exc: Exception) -> bool:
    return isinstance(exc, ASRError) and exc.retryable


class TranscriptionClient:
    """Submits audio files to an ASR engine with retries.

    Args:
        engine: Engine performing one request per call.
        cost_tracker: Ledger charged after every successful transcription.
        policy: Attempt budget and backoff shape.
        options: Model and response parameters for every request.
        duration_probe: Returns a file's audio duration in seconds or None;
            runs in a worker thread.
    """

    def __init__(
        self,
        engine: ASREngine,
        cost_tracker: CostTracker,
        policy: BackoffPolicy | None = None,
        options: TranscriptionOptions | None = None,
        duration_probe: Callable[[str], float | None] = probe_duration,
    ) -> None:
        self.engine = engine
        self.cost_tracker = cost_tracker
        self.policy = policy or BackoffPolicy()
        self.options = options or TranscriptionOptions()
        self._duration_probe = duration_probe

    def validate_audio_file(self, audio_path: str) -> int:
        """Check that the file can be submitted without a network call.

        Returns:
            The file size in bytes.

        Raises:
            ASRError: FILE_NOT_FOUND, FILE_TOO_LARGE or UNSUPPORTED_FORMAT.
        """
        if not os.path.isfile(audio_path):
            raise ASRError(
                f"Audio file not found: {os.path.basename(audio_path)}",
                code=errors.FILE_NOT_FOUND,
                status_code=404,
            )

        file_size = os.path.getsize(audio_path)
        if file_size > MAX_FILE_SIZE_BYTES:
            raise ASRError(
                f"File size {file_size / (1024 * 1024):.2f}MB exceeds the "
                f"{MAX_FILE_SIZE_BYTES // (1024 * 1024)}MB transcription limit",
                code=errors.FILE_TOO_LARGE,
                status_code=413,
                details={"file_size": file_size, "max_size": MAX_FILE_SIZE_BYTES},
            )

        extension = Path(audio_path).suffix.lower()
        if extension not in SUPPORTED_FORMATS:
            raise ASRError(
                f"Unsupported audio format: {extension or '(none)'}. "
                f"Supported formats: {', '.join(sorted(SUPPORTED_FORMATS))}",
                code=errors.UNSUPPORTED_FORMAT,
                status_code=415,
                details={"format": extension},
            )
        return file_size

    async def transcribe(
        self,
        audio_path: str,
        job_id: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> TranscriptionResult:
        """Transcribe ``audio_path``, retrying transient failures.

        Args:
            audio_path: File in a format the service accepts directly.
            job_id: Owning job, attached to logs and errors.
            progress: Called at every attempt start and on the terminal
                outcome.

        Returns:
            TranscriptionResult whose metadata carries request_id,
            duration_ms, retry_count, file_size, format, audio_duration
            and cost.

        Raises:
            ASRError: Pre-flight or non-retryable failure.
            MaxRetriesExceededError: Every attempt failed transiently.
        """
        request_id = f"req-{secrets.token_hex(8)}"
        log_extra = {"job_id": job_id, "request_id": request_id}

        try:
            file_size = self.validate_audio_file(audio_path)
        except ASRError as exc:
            exc.job_id = job_id
            raise

        audio_format = Path(audio_path).suffix.lower().lstrip(".")
        audio_duration = await asyncio.to_thread(self._duration_probe, audio_path)
        max_attempts = self.policy.max_attempts
        last_attempt = 0
        start = time.monotonic()

        async def _attempt(attempt: int) -> str:
            nonlocal last_attempt
            last_attempt = attempt
            _notify(
                progress,
                ProgressUpdate(
                    stage="transcribing",
                    message=f"Transcribing audio (attempt {attempt + 1}/{max_attempts})",
                    retry_count=attempt,
                ),
            )
            logger.info(
                "Sending transcription request for %s (model=%s, %d bytes)",
                os.path.basename(audio_path),
                self.options.model,
                file_size,
                extra={**log_extra, "retry_count": attempt},
            )
            try:
                return await self.engine.transcribe(audio_path, self.options)
            except ASRError as exc:
                exc.job_id = job_id
                logger.warning(
                    "Transcription attempt %d failed (%s, retryable=%s): %s",
                    attempt + 1,
                    exc.code,
                    exc.retryable,
                    exc.message,
                    extra={**log_extra, "retry_count": attempt, "error_code": exc.code},
                )
                raise

        try:
            transcript = await retry_async(
                _attempt,
                self.policy,
                is_retryable=_is_retryable,
                name=f"transcription {request_id}",
            )
        except ASRError as exc:
            retry_count = getattr(exc, "_retry_count", last_attempt)
            final: ASRError = exc
            if exc.retryable:
                final = MaxRetriesExceededError(exc, attempts=retry_count + 1)
                final._retry_count = retry_count  # type: ignore[attr-defined]
            _notify(
                progress,
                ProgressUpdate(
                    stage="transcription_failed",
                    message=final.message,
                    retry_count=retry_count,
                ),
            )
            logger.error(
                "Transcription failed: %s",
                final.message,
                extra={**log_extra, "retry_count": retry_count, "error_code": final.code},
            )
            if final is exc:
                raise
            raise final from exc

        duration_ms = int((time.monotonic() - start) * 1000)
        cost_record = self.cost_tracker.track(
            request_id, audio_duration, file_size=file_size, audio_format=audio_format
        )
        _notify(
            progress,
            ProgressUpdate(
                stage="transcribed",
                message="Transcription complete",
                retry_count=last_attempt,
            ),
        )
        logger.info(
            "Transcription succeeded in %dms (%d chars)",
            duration_ms,
            len(transcript),
            extra={**log_extra, "retry_count": last_attempt},
        )
        return TranscriptionResult(
            transcript=transcript,
            metadata={
                "request_id": request_id,
                "duration_ms": duration_ms,
                "retry_count": last_attempt,
                "file_size": file_size,
                "format": audio_format,
                "audio_duration": audio_duration,
                "cost": cost_record.cost_info(),
            },
        )


def _notify(progress: ProgressCallback | None, update: ProgressUpdate) -> None:
    if progress is not None:
        progress(update)
