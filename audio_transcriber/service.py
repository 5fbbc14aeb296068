"""Process-wide service object.

Owns the job store, temp store, upload throttle, transcription client and
cost tracker, runs the periodic sweeper, dispatches pipeline tasks and
performs the graceful shutdown drain.
"""

import asyncio
import contextlib
import logging
from typing import Any

from audio_transcriber.asr.client import TranscriptionClient
from audio_transcriber.asr.interface import TranscriptionOptions
from audio_transcriber.asr.registry import engine_from_settings
from audio_transcriber.audio.transcode import transcode_for_asr
from audio_transcriber.config import Settings
from audio_transcriber.intake.throttle import UploadThrottle
from audio_transcriber.intake.uploads import (
    UploadedFile,
    UploadOpener,
    accept_upload,
    receive_upload,
)
from audio_transcriber.jobs.store import Job, JobStore
from audio_transcriber.observability.costs import CostTracker
from audio_transcriber.pipeline import Converter, process_job
from audio_transcriber.storage.temp_store import TempArtifactStore
from audio_transcriber.utils.retry import BackoffPolicy

logger = logging.getLogger(__name__)


class TranscriptionService:
    """Wires the components together for one process.

    Every collaborator can be injected; anything omitted is built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        client: TranscriptionClient | None = None,
        cost_tracker: CostTracker | None = None,
        jobs: JobStore | None = None,
        temp_store: TempArtifactStore | None = None,
        throttle: UploadThrottle | None = None,
        converter: Converter = transcode_for_asr,
    ) -> None:
        self.settings = settings
        self.cost_tracker = cost_tracker or CostTracker(
            daily_budget=settings.daily_budget,
            monthly_budget=settings.monthly_budget,
            warning_threshold=settings.budget_warning_threshold,
            critical_threshold=settings.budget_critical_threshold,
            rate_per_minute=settings.cost_per_minute,
        )
        if client is None:
            client = TranscriptionClient(
                engine_from_settings(settings),
                self.cost_tracker,
                policy=BackoffPolicy(max_attempts=settings.transcription_max_attempts),
                options=TranscriptionOptions(model=settings.openai_model),
            )
        self.client = client
        self.jobs = jobs or JobStore(
            retention_seconds=settings.job_retention_seconds,
            evict_on_read=settings.evict_on_read,
        )
        self.temp_store = temp_store or TempArtifactStore(
            settings.temp_dir, max_age_seconds=settings.max_file_age_seconds
        )
        self.throttle = throttle or UploadThrottle(settings.max_concurrent_uploads)
        self.converter = converter
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    async def start(self) -> None:
        """Prepare the temp directory, clear leftovers and start the sweeper."""
        self.temp_store.ensure_directory()
        self.run_sweep()
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="sweeper")
        logger.info(
            "Service started (temp_dir=%s, max_concurrent_uploads=%d)",
            self.temp_store.directory,
            self.throttle.max_concurrent,
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            try:
                self.run_sweep()
            except Exception:
                logger.error("Periodic sweep failed", exc_info=True)

    def run_sweep(self) -> dict[str, int]:
        """Remove expired temp files and expired terminal jobs.

        Returns:
            Counts of removed files and jobs.
        """
        files_removed = self.temp_store.sweep()
        expired = self.jobs.sweep()
        for job in expired:
            if job.artifact is not None:
                self.temp_store.remove(job.artifact)
        return {"files_removed": files_removed, "jobs_removed": len(expired)}

    async def receive(
        self, open_upload: UploadOpener, declared_size: int | None = None
    ) -> Job:
        """Admit an upload, read its body, and start processing it.

        ``open_upload`` is awaited only once a throttle slot is held.
        """
        job = await receive_upload(
            open_upload,
            self.jobs,
            self.temp_store,
            self.throttle,
            max_bytes=self.settings.max_upload_bytes,
            declared_size=declared_size,
        )
        self.dispatch(job.id)
        return job

    async def submit(self, upload: UploadedFile | None) -> Job:
        """Accept an already received upload and start processing it."""
        job = await accept_upload(
            upload,
            self.jobs,
            self.temp_store,
            self.throttle,
            max_bytes=self.settings.max_upload_bytes,
        )
        self.dispatch(job.id)
        return job

    def dispatch(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(
            process_job(
                job_id,
                self.jobs,
                self.temp_store,
                self.client,
                converter=self.converter,
            ),
            name=f"job-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every dispatched pipeline task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def usage(self) -> dict[str, Any]:
        return {
            **self.cost_tracker.summary(),
            "jobs": self.jobs.counts(),
            "uploads": {
                "in_flight": self.throttle.in_flight,
                "max_concurrent": self.throttle.max_concurrent,
            },
        }

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop intake, wait for uploads to drain, then reclaim everything.

        Args:
            timeout: Seconds to wait for in-flight uploads (default from
                settings).
        """
        if timeout is None:
            timeout = self.settings.shutdown_timeout_seconds
        logger.info("Shutting down gracefully")
        self.throttle.close()

        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        if not await self.throttle.wait_until_drained(timeout):
            logger.warning(
                "Shutdown timeout (%.0fs) exceeded with %d uploads in flight",
                timeout,
                self.throttle.in_flight,
            )

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            logger.info("Cancelling %d running jobs", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

        self.temp_store.drain()
        logger.info("Shutdown complete")
