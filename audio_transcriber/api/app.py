"""HTTP surface for the transcription service.

Endpoints:
    POST /transcribe        upload audio (multipart field ``audio``), 202 + job id
    GET  /job/{job_id}      poll job status
    GET  /usage             cost, budget and capacity counters
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException

from audio_transcriber.service import TranscriptionService
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import (
    JobNotFoundError,
    PipelineError,
    UploadValidationError,
)

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "audio"


def _content_length(request: Request) -> int | None:
    try:
        return int(request.headers["content-length"])
    except (KeyError, ValueError):
        return None


def error_body(exc: PipelineError) -> dict:
    return {
        "success": False,
        "error": exc.message,
        "code": exc.code,
        "job_id": exc.job_id,
    }


def create_app(service: TranscriptionService) -> FastAPI:
    """Build the FastAPI app around ``service``.

    The app's lifespan starts the service (temp directory, startup sweep,
    sweeper task) and runs its graceful shutdown on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Audio Transcriber", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(PipelineError)
    async def handle_pipeline_error(request: Request, exc: PipelineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed: %s", exc.message,
                extra={"job_id": exc.job_id, "error_code": exc.code},
            )
        return JSONResponse(status_code=exc.status_code, content=error_body(exc))

    @app.post("/transcribe", status_code=202)
    async def transcribe(request: Request) -> dict:
        """Upload an audio file (multipart field ``audio``) and queue it."""

        async def open_upload() -> UploadFile | None:
            try:
                form = await request.form(max_files=1)
            except (HTTPException, MultiPartException) as exc:
                raise UploadValidationError(
                    "Malformed multipart body",
                    code=errors.INVALID_REQUEST,
                    status_code=400,
                ) from exc
            audio = form.get(UPLOAD_FIELD)
            return audio if isinstance(audio, UploadFile) else None

        try:
            job = await service.receive(open_upload, declared_size=_content_length(request))
        finally:
            await request.close()
        return {"success": True, "job_id": job.id, "status": job.status.value}

    @app.get("/job/{job_id}")
    async def get_job(job_id: str) -> dict:
        """Return current status and, once finished, the result of a job."""
        body = service.jobs.poll(job_id)
        if body is None:
            raise JobNotFoundError(
                "Job not found. It may have been completed and cleaned up.",
                job_id=job_id,
                code=errors.JOB_NOT_FOUND,
                status_code=404,
            )
        return {"success": True, **body}

    @app.get("/usage")
    async def usage() -> dict:
        """Return cost tracker totals, budgets and capacity counters."""
        return {"success": True, **service.usage()}

    return app
