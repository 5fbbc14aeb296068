"""Filesystem store for uploaded and converted audio.

Every file lives in one temp directory under a generated, collision-
resistant name and is represented by a TempArtifact handle owned by a
single job. Files are removed eagerly by the pipeline, by an age-based
sweep, or all at once by drain() during shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from audio_transcriber.utils.errors import FILE_TOO_LARGE, UploadValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_MAX_AGE_SECONDS = 30 * 60


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


def file_too_large(max_bytes: int, job_id: str | None = None) -> UploadValidationError:
    return UploadValidationError(
        f"File too large. Maximum size allowed is {max_bytes // (1024 * 1024)}MB",
        job_id=job_id,
        code=FILE_TOO_LARGE,
        status_code=413,
        details={"max_size": max_bytes},
    )


@dataclass
class TempArtifact:
    """Handle for one file in the temp directory."""

    path: Path
    owner: str | None = None
    size_bytes: int = 0
    created_at: float = field(default_factory=time.time)
    removed: bool = False

    @property
    def exists(self) -> bool:
        return not self.removed and self.path.exists()

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()


class TempArtifactStore:
    """Owns the temp directory and the lifecycle of files inside it.

    Args:
        directory: Directory holding all temp artifacts.
        max_age_seconds: Files older than this are removed by sweep().
    """

    def __init__(
        self,
        directory: str | Path,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    ) -> None:
        self.directory = Path(directory)
        self.max_age_seconds = max_age_seconds

    def ensure_directory(self) -> None:
        """Create the temp directory if it does not exist."""
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info("Temp directory created: %s", self.directory)

    @property
    def available(self) -> bool:
        return self.directory.is_dir()

    def allocate(
        self, extension: str = "", prefix: str = "audio", owner: str | None = None
    ) -> TempArtifact:
        """Reserve a unique path in the temp directory.

        Only the (already validated) extension of the client's filename is
        kept; the rest of the name is generated.
        """
        self.ensure_directory()
        unique_id = secrets.token_hex(16)
        timestamp = int(time.time() * 1000)
        name = f"{prefix}-{timestamp}-{unique_id}{extension.lower()}"
        return TempArtifact(path=self.directory / name, owner=owner)

    async def write_upload(
        self,
        source: AsyncReadable,
        extension: str,
        max_bytes: int,
        owner: str | None = None,
    ) -> TempArtifact:
        """Stream an upload into a newly allocated artifact.

        Args:
            source: Object with an async ``read(size)`` (e.g. UploadFile).
            extension: Validated file extension including the dot.
            max_bytes: Hard cap on the stored size.
            owner: Job id that will own the artifact.

        Returns:
            The stored TempArtifact with ``size_bytes`` set.

        Raises:
            UploadValidationError: FILE_TOO_LARGE if the cap is exceeded;
                the partial file is removed first.
        """
        artifact = self.allocate(extension, owner=owner)
        total_bytes = 0
        too_large = False
        try:
            out = await asyncio.to_thread(open, artifact.path, "wb")
            try:
                while True:
                    chunk = await source.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    total_bytes += len(chunk)
                    if total_bytes > max_bytes:
                        too_large = True
                        break
                    await asyncio.to_thread(out.write, chunk)
            finally:
                await asyncio.to_thread(out.close)
        except BaseException:
            self.remove(artifact)
            raise

        if too_large:
            self.remove(artifact)
            raise file_too_large(max_bytes, owner)

        artifact.size_bytes = total_bytes
        logger.debug(
            "Stored upload %s (%d bytes)",
            artifact.path.name,
            total_bytes,
            extra={"job_id": owner},
        )
        return artifact

    def track(self, path: str | Path, owner: str | None = None) -> TempArtifact:
        """Wrap a file produced by another stage (e.g. conversion output)."""
        path = Path(path)
        size = path.stat().st_size if path.exists() else 0
        return TempArtifact(path=path, owner=owner, size_bytes=size)

    def remove(self, artifact: TempArtifact) -> bool:
        """Delete the artifact's file; a file that is already gone is fine.

        Returns:
            True if the file is absent afterwards.
        """
        if artifact.removed:
            return True
        try:
            os.remove(artifact.path)
            logger.info(
                "Cleaned up file: %s", artifact.path.name, extra={"job_id": artifact.owner}
            )
        except FileNotFoundError:
            pass
        except OSError:
            logger.error(
                "Error cleaning up file: %s",
                artifact.path,
                exc_info=True,
                extra={"job_id": artifact.owner},
            )
            return False
        artifact.removed = True
        return True

    def sweep(self, now: float | None = None) -> int:
        """Remove files older than ``max_age_seconds`` (by mtime).

        Returns:
            Number of files removed.
        """
        if not self.available:
            return 0
        now = time.time() if now is None else now
        removed = 0
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            try:
                age = now - entry.stat().st_mtime
                if age > self.max_age_seconds:
                    entry.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.error("Error checking file: %s", entry.name, exc_info=True)
        if removed:
            logger.info("Swept %d expired temp files", removed)
        return removed

    def drain(self) -> int:
        """Remove every file in the temp directory.

        Returns:
            Number of files removed.
        """
        if not self.available:
            return 0
        removed = 0
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            try:
                entry.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.error("Error removing temp file: %s", entry.name, exc_info=True)
        logger.info("All temp files cleaned up (%d removed)", removed)
        return removed
