"""Tests for ASR engine interface and transcription data models."""

import pytest

from audio_transcriber.asr.interface import (
    ASREngine,
    ProgressUpdate,
    TranscriptionOptions,
    TranscriptionResult,
)


class TestDataModels:
    """Tests for option and result defaults."""

    def test_options_defaults(self) -> None:
        options = TranscriptionOptions()
        assert options.model == "whisper-1"
        assert options.response_format == "json"
        assert options.temperature == 0.0
        assert options.language is None

    def test_result_metadata_not_shared(self) -> None:
        first = TranscriptionResult(transcript="a")
        second = TranscriptionResult(transcript="b")
        first.metadata["x"] = 1

        assert second.metadata == {}

    def test_progress_update_default_retry_count(self) -> None:
        update = ProgressUpdate(stage="transcribing", message="attempt 1/5")
        assert update.retry_count == 0


class TestASREngineABC:
    """Tests for ASR engine abstract base class."""

    def test_cannot_instantiate_directly(self) -> None:
        with pytest.raises(TypeError):
            ASREngine()  # type: ignore[abstract]

    @pytest.mark.asyncio
    async def test_concrete_subclass_transcribe(self) -> None:
        class EchoASR(ASREngine):
            name = "echo"

            async def transcribe(self, audio_path: str, options: TranscriptionOptions) -> str:
                return f"{options.model}:{audio_path}"

        engine = EchoASR()
        text = await engine.transcribe("a.wav", TranscriptionOptions(model="m"))

        assert isinstance(engine, ASREngine)
        assert text == "m:a.wav"
