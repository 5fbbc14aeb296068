"""HTTP server entry point for the transcription service.

Builds the service from environment settings and serves the FastAPI app
with uvicorn. uvicorn handles SIGTERM/SIGINT; the app lifespan runs the
graceful shutdown drain.
"""

import logging
import sys

import uvicorn

from audio_transcriber.api.app import create_app
from audio_transcriber.config import Settings
from audio_transcriber.observability.logger import setup_logging
from audio_transcriber.service import TranscriptionService

logger = logging.getLogger(__name__)


def main() -> None:
    """Start the transcription HTTP server."""
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    try:
        settings.validate()
    except ValueError as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)

    service = TranscriptionService(settings)
    app = create_app(service)

    logger.info("Audio transcriber starting on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
