"""Concurrency ceiling for uploads being received.

Each admitted request holds one upload id in the in-flight set until its
body has been stored (or rejected). Shutdown closes the throttle so no new
uploads are admitted, then waits for the set to drain.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager

from audio_transcriber.utils.errors import CapacityError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_UPLOADS = 10


class UploadThrottle:
    """Tracks in-flight uploads against a fixed ceiling."""

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT_UPLOADS) -> None:
        self.max_concurrent = max_concurrent
        self._in_flight: set[str] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> str:
        """Admit one upload.

        Returns:
            A new 16-hex-character upload id.

        Raises:
            CapacityError: The ceiling is reached or the service is
                shutting down.
        """
        if self._closed:
            raise CapacityError("Server is shutting down. Please try again later.")
        if len(self._in_flight) >= self.max_concurrent:
            logger.warning(
                "Upload rejected: %d uploads in flight", len(self._in_flight)
            )
            raise CapacityError("Server is busy. Please try again later.")
        upload_id = secrets.token_hex(8)
        self._in_flight.add(upload_id)
        return upload_id

    def release(self, upload_id: str) -> None:
        self._in_flight.discard(upload_id)

    @contextmanager
    def slot(self) -> Iterator[str]:
        """Hold an upload id for the duration of the block."""
        upload_id = self.acquire()
        try:
            yield upload_id
        finally:
            self.release(upload_id)

    def close(self) -> None:
        self._closed = True

    async def wait_until_drained(
        self, timeout: float, poll_interval: float = 0.1
    ) -> bool:
        """Wait for in-flight uploads to finish.

        Returns:
            True if the set drained before ``timeout`` seconds elapsed.
        """
        deadline = time.monotonic() + timeout
        while self._in_flight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Timed out waiting for %d uploads to finish", len(self._in_flight)
                )
                return False
            await asyncio.sleep(min(poll_interval, remaining))
        return True
