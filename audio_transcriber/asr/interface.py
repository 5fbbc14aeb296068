"""Abstract ASR engine interface and transcription data models.

Concrete implementations (e.g., WhisperEngine) subclass ASREngine and make
exactly one request per transcribe() call; retries belong to the caller.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TranscriptionOptions:
    """Per-request parameters sent to the transcription service."""

    model: str = "whisper-1"
    response_format: str = "json"
    temperature: float = 0.0
    language: str | None = None


@dataclass
class TranscriptionResult:
    """Transcript text plus processing metadata."""

    transcript: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProgressUpdate:
    """A progress annotation delivered to the job that owns a request."""

    stage: str
    message: str
    retry_count: int = 0


ProgressCallback = Callable[[ProgressUpdate], None]


class ASREngine(ABC):
    """Abstract base class for ASR engine implementations.

    Subclasses must implement the transcribe() method.
    """

    name: str = "asr"

    @abstractmethod
    async def transcribe(self, audio_path: str, options: TranscriptionOptions) -> str:
        """Transcribe an audio file with a single request.

        Args:
            audio_path: Path to an audio file the service accepts directly.
            options: Model and response parameters.

        Returns:
            The transcript text.

        Raises:
            ASRError: Classified failure, with ``retryable`` set for
                transient conditions.
        """
