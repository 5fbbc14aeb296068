"""OpenAI Whisper ASR client implementation.

Submits one audio file per call to the ``/audio/transcriptions`` endpoint
and classifies every failure into an ASRError with a stable code, an
HTTP-equivalent status, and a retryable flag.
"""

import logging
import mimetypes
import os
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx

from audio_transcriber.asr.interface import ASREngine, TranscriptionOptions
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import ASRError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT_SECONDS = 300.0
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
PROVIDER = "openai-whisper"


def parse_retry_after(headers: httpx.Headers) -> float | None:
    """Read a server-specified retry delay in seconds, if any.

    Understands ``retry-after-ms``, a numeric ``retry-after`` and the
    HTTP-date form of ``retry-after``.
    """
    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms:
        try:
            return max(float(retry_after_ms) / 1000, 0.0)
        except ValueError:
            pass

    retry_after = headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return max(float(retry_after), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(retry_after)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text.strip()


def classify_response(response: httpx.Response) -> ASRError:
    """Map a non-success HTTP response to a classified ASRError."""
    status = response.status_code
    api_message = _error_message(response)
    details: dict[str, object] = {}
    if api_message:
        details["api_message"] = api_message
    retryable = status in RETRYABLE_STATUS_CODES
    retry_after = None

    if status == 400:
        if "format" in api_message.lower():
            code, message = errors.INVALID_FORMAT, "Audio format not supported by the transcription service"
        else:
            code, message = errors.INVALID_REQUEST, "Invalid request to the transcription service"
    elif status == 401:
        code, message = errors.INVALID_API_KEY, "Invalid or missing OpenAI API key"
    elif status == 403:
        code, message = errors.FORBIDDEN, "Access forbidden. Check your API key permissions"
    elif status == 413:
        code, message = errors.FILE_TOO_LARGE, "Audio file exceeds the transcription service size limit"
    elif status == 415:
        code, message = errors.UNSUPPORTED_FORMAT, "Audio format not supported by the transcription service"
    elif status == 429:
        code, message = errors.RATE_LIMIT, "Transcription service rate limit exceeded"
        retry_after = parse_retry_after(response.headers)
        if retry_after is not None:
            details["retry_after"] = retry_after
    elif status in (500, 502, 503):
        code, message = errors.SERVER_ERROR, "Transcription service error. Please try again later"
    elif status in (408, 504):
        code, message = errors.TIMEOUT, "Request to the transcription service timed out"
    else:
        code, message = errors.TRANSCRIPTION_API_ERROR, f"Unexpected response status {status}"

    return ASRError(
        message,
        code=code,
        status_code=status,
        details=details,
        retryable=retryable,
        retry_after=retry_after,
        provider=PROVIDER,
    )


def classify_transport_error(exc: httpx.RequestError) -> ASRError:
    """Map a transport-level failure (no HTTP response) to an ASRError."""
    details = {"transport_error": type(exc).__name__}
    if isinstance(exc, httpx.TimeoutException):
        return ASRError(
            f"Request to the transcription service timed out: {exc}",
            code=errors.TIMEOUT,
            status_code=504,
            details=details,
            retryable=True,
            provider=PROVIDER,
        )
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, httpx.ProxyError)):
        return ASRError(
            f"Network error contacting the transcription service: {exc}",
            code=errors.CONNECTION_ERROR,
            status_code=503,
            details=details,
            retryable=True,
            provider=PROVIDER,
        )
    return ASRError(
        f"Transcription request failed: {exc}",
        code=errors.TRANSCRIPTION_API_ERROR,
        status_code=500,
        details=details,
        retryable=False,
        provider=PROVIDER,
    )


class WhisperEngine(ASREngine):
    """OpenAI Whisper transcription engine.

    Args:
        api_key: OpenAI API key for authentication.
        timeout: Per-request timeout in seconds (default 300, files may be
            large). Exceeding it is a retryable TIMEOUT.
        base_url: API base URL (default production endpoint).
        transport: Optional httpx transport, used by tests.
    """

    name = "whisper"

    def __init__(
        self,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = DEFAULT_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def transcribe(self, audio_path: str, options: TranscriptionOptions) -> str:
        """Send one transcription request for ``audio_path``.

        The file is opened fresh for this request and closed before
        returning, so a retry never reuses a consumed stream.

        Raises:
            ASRError: On transport failure, non-200 status, or an empty or
                unrecognized response body.
        """
        url = f"{self._base_url}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        data = {
            "model": options.model,
            "response_format": options.response_format,
            "temperature": str(options.temperature),
        }
        if options.language:
            data["language"] = options.language

        filename = os.path.basename(audio_path)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        async with httpx.AsyncClient(
            transport=self._transport, timeout=self._timeout
        ) as client:
            try:
                with open(audio_path, "rb") as audio_file:
                    files = {"file": (filename, audio_file, content_type)}
                    response = await client.post(
                        url, headers=headers, data=data, files=files
                    )
            except httpx.RequestError as exc:
                raise classify_transport_error(exc) from exc
            except OSError as exc:
                raise ASRError(
                    f"Failed to read audio file: {exc}",
                    code=errors.FILE_NOT_FOUND,
                    status_code=404,
                    provider=PROVIDER,
                ) from exc

        if response.status_code != 200:
            raise classify_response(response)

        return self._parse_transcript(response, options.response_format)

    @staticmethod
    def _parse_transcript(response: httpx.Response, response_format: str) -> str:
        if response_format in ("json", "verbose_json"):
            try:
                body = response.json()
            except ValueError as exc:
                raise ASRError(
                    "Unrecognized response from the transcription service",
                    code=errors.INVALID_RESPONSE,
                    status_code=502,
                    provider=PROVIDER,
                ) from exc
            text = body.get("text") if isinstance(body, dict) else None
            if not isinstance(text, str):
                raise ASRError(
                    "Unrecognized response from the transcription service",
                    code=errors.INVALID_RESPONSE,
                    status_code=502,
                    details={"body_type": type(body).__name__},
                    provider=PROVIDER,
                )
        else:
            text = response.text

        if not text.strip():
            raise ASRError(
                "Empty response from the transcription service",
                code=errors.EMPTY_RESPONSE,
                status_code=500,
                retryable=True,
                provider=PROVIDER,
            )
        return text.strip()
