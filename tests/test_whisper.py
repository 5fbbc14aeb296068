"""Tests for the Whisper engine: request shape and error classification."""

import json
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from audio_transcriber.asr.interface import ASREngine, TranscriptionOptions
from audio_transcriber.asr.registry import get_asr_engine
from audio_transcriber.asr.whisper import WhisperEngine, parse_retry_after
from audio_transcriber.utils import errors
from audio_transcriber.utils.errors import ASRError

BASE_URL = "https://whisper.mock/v1"


def _json_response(status_code: int, data: object, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        content=json.dumps(data).encode("utf-8"),
        headers={"content-type": "application/json", **(headers or {})},
    )


def _error_response(status_code: int, message: str = "", headers: dict | None = None) -> httpx.Response:
    return _json_response(status_code, {"error": {"message": message}}, headers)


def _build_engine(handler) -> WhisperEngine:
    return WhisperEngine(
        api_key="sk-test",
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def audio_file(tmp_path) -> str:
    path = tmp_path / "clip.mp3"
    path.write_bytes(b"ID3" + b"\x00" * 2048)
    return str(path)


async def _transcribe_error(handler, audio_file: str) -> ASRError:
    engine = _build_engine(handler)
    with pytest.raises(ASRError) as exc_info:
        await engine.transcribe(audio_file, TranscriptionOptions())
    return exc_info.value


class TestWhisperEngineInit:
    """Tests for construction and registry lookup."""

    def test_is_asr_engine(self) -> None:
        assert issubclass(WhisperEngine, ASREngine)
        assert WhisperEngine.name == "whisper"

    def test_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            WhisperEngine(api_key="")

    def test_registry_builds_whisper(self) -> None:
        engine = get_asr_engine("whisper", api_key="sk-test")
        assert isinstance(engine, WhisperEngine)

    def test_registry_rejects_unknown_provider(self) -> None:
        with pytest.raises(ASRError, match="Unknown ASR provider: 'nope'"):
            get_asr_engine("nope")


class TestWhisperRequest:
    """Tests for the outgoing request."""

    @pytest.mark.asyncio
    async def test_success_returns_text(self, audio_file: str) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return _json_response(200, {"text": "  hello world  "})

        engine = _build_engine(handler)
        text = await engine.transcribe(audio_file, TranscriptionOptions(language="en"))

        assert text == "hello world"
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == f"{BASE_URL}/audio/transcriptions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.content
        assert b'name="file"; filename="clip.mp3"' in body
        assert b'name="model"\r\n\r\nwhisper-1' in body
        assert b'name="response_format"\r\n\r\njson' in body
        assert b'name="temperature"\r\n\r\n0.0' in body
        assert b'name="language"\r\n\r\nen' in body

    @pytest.mark.asyncio
    async def test_language_omitted_by_default(self, audio_file: str) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return _json_response(200, {"text": "ok"})

        await _build_engine(handler).transcribe(audio_file, TranscriptionOptions())
        assert b'name="language"' not in captured[0].content

    @pytest.mark.asyncio
    async def test_text_response_format(self, audio_file: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="plain transcript\n")

        engine = _build_engine(handler)
        text = await engine.transcribe(audio_file, TranscriptionOptions(response_format="text"))
        assert text == "plain transcript"


class TestWhisperErrorClassification:
    """Tests for mapping failures onto error codes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "message", "code", "retryable"),
        [
            (400, "Invalid file format.", errors.INVALID_FORMAT, False),
            (400, "Missing model parameter", errors.INVALID_REQUEST, False),
            (401, "Incorrect API key provided", errors.INVALID_API_KEY, False),
            (403, "Country not supported", errors.FORBIDDEN, False),
            (413, "Maximum content size exceeded", errors.FILE_TOO_LARGE, False),
            (415, "Unsupported media", errors.UNSUPPORTED_FORMAT, False),
            (408, "Request timeout", errors.TIMEOUT, True),
            (429, "Rate limit reached", errors.RATE_LIMIT, True),
            (500, "Internal error", errors.SERVER_ERROR, True),
            (502, "Bad gateway", errors.SERVER_ERROR, True),
            (503, "Overloaded", errors.SERVER_ERROR, True),
            (504, "Gateway timeout", errors.TIMEOUT, True),
            (418, "Teapot", errors.TRANSCRIPTION_API_ERROR, False),
        ],
    )
    async def test_status_mapping(
        self, audio_file: str, status: int, message: str, code: str, retryable: bool
    ) -> None:
        err = await _transcribe_error(lambda request: _error_response(status, message), audio_file)

        assert err.code == code
        assert err.status_code == status
        assert err.retryable is retryable
        assert err.details["api_message"] == message

    @pytest.mark.asyncio
    async def test_rate_limit_reads_retry_after(self, audio_file: str) -> None:
        err = await _transcribe_error(
            lambda request: _error_response(429, "slow down", {"retry-after": "2"}),
            audio_file,
        )
        assert err.retry_after == 2.0
        assert err.details["retry_after"] == 2.0

    @pytest.mark.asyncio
    async def test_empty_transcript_is_retryable(self, audio_file: str) -> None:
        err = await _transcribe_error(lambda request: _json_response(200, {"text": "   "}), audio_file)
        assert err.code == errors.EMPTY_RESPONSE
        assert err.retryable is True

    @pytest.mark.asyncio
    async def test_unrecognized_shape_is_permanent(self, audio_file: str) -> None:
        err = await _transcribe_error(lambda request: _json_response(200, {"segments": []}), audio_file)
        assert err.code == errors.INVALID_RESPONSE
        assert err.retryable is False

    @pytest.mark.asyncio
    async def test_non_json_body_is_permanent(self, audio_file: str) -> None:
        err = await _transcribe_error(lambda request: httpx.Response(200, text="<html>"), audio_file)
        assert err.code == errors.INVALID_RESPONSE
        assert err.retryable is False

    @pytest.mark.asyncio
    async def test_connect_error_is_retryable(self, audio_file: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        err = await _transcribe_error(handler, audio_file)
        assert err.code == errors.CONNECTION_ERROR
        assert err.retryable is True
        assert isinstance(err.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_read_timeout_is_retryable(self, audio_file: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        err = await _transcribe_error(handler, audio_file)
        assert err.code == errors.TIMEOUT
        assert err.retryable is True

    @pytest.mark.asyncio
    async def test_connection_reset_is_retryable(self, audio_file: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("peer closed connection", request=request)

        err = await _transcribe_error(handler, audio_file)
        assert err.code == errors.CONNECTION_ERROR
        assert err.retryable is True

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        err = await _transcribe_error(handler, str(tmp_path / "gone.mp3"))
        assert err.code == errors.FILE_NOT_FOUND


class TestParseRetryAfter:
    """Tests for Retry-After header parsing."""

    def test_missing_header(self) -> None:
        assert parse_retry_after(httpx.Headers({})) is None

    def test_seconds(self) -> None:
        assert parse_retry_after(httpx.Headers({"retry-after": "7"})) == 7.0

    def test_milliseconds_take_precedence(self) -> None:
        headers = httpx.Headers({"retry-after-ms": "1500", "retry-after": "7"})
        assert parse_retry_after(headers) == 1.5

    def test_http_date(self) -> None:
        when = datetime.now(UTC) + timedelta(seconds=30)
        headers = httpx.Headers({"retry-after": format_datetime(when, usegmt=True)})
        delay = parse_retry_after(headers)
        assert delay is not None
        assert 25 <= delay <= 30

    def test_garbage_is_ignored(self) -> None:
        assert parse_retry_after(httpx.Headers({"retry-after": "soon"})) is None
