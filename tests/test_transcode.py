"""Tests for ffmpeg audio conversion and duration probing."""

import os
import re
import shutil
import struct
import subprocess
import wave

import pytest

from audio_transcriber.audio.transcode import (
    FFMPEG_TIMEOUT_SECONDS,
    TranscodeResult,
    _check_audio_valid,
    needs_conversion,
    probe_duration,
    transcode_for_asr,
)
from audio_transcriber.utils.errors import CONVERSION_FAILED, TranscodeError


def _ffmpeg_available() -> bool:
    """Check if ffmpeg is available on the system."""
    return shutil.which("ffmpeg") is not None


def _ffprobe_available() -> bool:
    """Check if ffprobe is available on the system."""
    return shutil.which("ffprobe") is not None


def _write_wav(filepath: str, seconds: float, sample_rate: int = 16000) -> str:
    num_samples = int(sample_rate * seconds)
    with wave.open(filepath, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        samples = struct.pack(f"<{num_samples}h", *([1000, -1000] * (num_samples // 2)))
        wf.writeframes(samples)
    return filepath


@pytest.fixture
def valid_audio_file(tmp_path: object) -> str:
    """Create a tiny valid WAV file (1 second, 16 kHz mono, 16-bit)."""
    return _write_wav(os.path.join(str(tmp_path), "input.wav"), 1.0)


@pytest.fixture
def output_dir(tmp_path: object) -> str:
    out = os.path.join(str(tmp_path), "output")
    os.makedirs(out, exist_ok=True)
    return out


@pytest.fixture
def corrupt_audio_file(tmp_path: object) -> str:
    """Create a corrupt file (text renamed to .flac)."""
    filepath = os.path.join(str(tmp_path), "corrupt.flac")
    with open(filepath, "w") as f:
        f.write("this is not audio data")
    return filepath


def _only_ffmpeg(name: str):
    return "/usr/bin/ffmpeg" if name == "ffmpeg" else None


class TestNeedsConversion:
    """Tests for format routing."""

    @pytest.mark.parametrize("name", ["a.flac", "b.AAC", "c.wma", "d.amr", "e.opus", "f.ogg"])
    def test_converted_formats(self, name: str) -> None:
        assert needs_conversion(name) is True

    @pytest.mark.parametrize("name", ["a.wav", "b.mp3", "c.m4a", "d.webm", "e.mp4"])
    def test_passthrough_formats(self, name: str) -> None:
        assert needs_conversion(name) is False


@pytest.mark.skipif(not _ffmpeg_available(), reason="ffmpeg not available")
class TestTranscodeForAsr:
    """Tests for transcode_for_asr with real ffmpeg."""

    def test_produces_mp3_with_generated_name(
        self, valid_audio_file: str, output_dir: str
    ) -> None:
        result = transcode_for_asr(valid_audio_file, output_dir)

        assert isinstance(result, TranscodeResult)
        assert os.path.exists(result.output_path)
        assert os.path.dirname(result.output_path) == output_dir
        assert re.fullmatch(
            r"converted-[0-9a-f]{16}-input\.mp3", os.path.basename(result.output_path)
        )
        assert result.input_path == valid_audio_file
        assert result.input_size_bytes > 0
        assert result.output_size_bytes > 0
        assert result.duration_seconds >= 0

    @pytest.mark.skipif(not _ffprobe_available(), reason="ffprobe not available")
    def test_output_duration_matches_input(
        self, valid_audio_file: str, output_dir: str
    ) -> None:
        result = transcode_for_asr(valid_audio_file, output_dir)

        duration = probe_duration(result.output_path)
        assert duration is not None
        assert abs(duration - 1.0) < 0.2

    def test_error_on_corrupt_input(
        self, corrupt_audio_file: str, output_dir: str
    ) -> None:
        with pytest.raises(TranscodeError) as exc_info:
            transcode_for_asr(corrupt_audio_file, output_dir)

        assert exc_info.value.code == CONVERSION_FAILED
        assert os.listdir(output_dir) == []


class TestTranscodeValidation:
    """Tests for failure handling (no ffmpeg needed)."""

    def test_error_on_missing_input(self, output_dir: str) -> None:
        with pytest.raises(TranscodeError, match="does not exist"):
            transcode_for_asr("/nonexistent/file.flac", output_dir)

    def test_error_on_missing_ffmpeg(
        self, valid_audio_file: str, output_dir: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(shutil, "which", lambda _name: None)

        with pytest.raises(TranscodeError, match="ffmpeg binary not found"):
            transcode_for_asr(valid_audio_file, output_dir)

    def test_ffmpeg_failure_is_reported(
        self, valid_audio_file: str, output_dir: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(shutil, "which", _only_ffmpeg)

        def fail(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, stderr="Invalid data found")

        monkeypatch.setattr(subprocess, "run", fail)

        with pytest.raises(TranscodeError, match="Invalid data found") as exc_info:
            transcode_for_asr(valid_audio_file, output_dir)

        assert exc_info.value.input_path == valid_audio_file

    def test_ffmpeg_timeout_discards_partial_output(
        self, valid_audio_file: str, output_dir: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(shutil, "which", _only_ffmpeg)

        def hang(cmd, **kwargs):
            with open(cmd[-1], "wb") as partial:
                partial.write(b"partial")
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))

        monkeypatch.setattr(subprocess, "run", hang)

        with pytest.raises(TranscodeError, match=f"timed out after {FFMPEG_TIMEOUT_SECONDS}"):
            transcode_for_asr(valid_audio_file, output_dir)

        assert os.listdir(output_dir) == []


@pytest.mark.skipif(not _ffprobe_available(), reason="ffprobe not available")
class TestFfprobePreCheck:
    """Tests for ffprobe pre-validation of audio files."""

    def test_corrupt_audio_fails_fast(self, corrupt_audio_file: str) -> None:
        with pytest.raises(TranscodeError, match="corrupt or unreadable"):
            _check_audio_valid(corrupt_audio_file)

    def test_valid_audio_passes(self, valid_audio_file: str) -> None:
        _check_audio_valid(valid_audio_file)

    def test_probe_duration_of_wav(self, valid_audio_file: str) -> None:
        duration = probe_duration(valid_audio_file)
        assert duration == pytest.approx(1.0, abs=0.05)


class TestProbeWithoutFfprobe:
    """Tests for when ffprobe is not available."""

    def test_skips_precheck(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(shutil, "which", lambda _name: None)
        _check_audio_valid("/some/file.flac")

    def test_wav_header_fallback(
        self, tmp_path: object, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(shutil, "which", lambda _name: None)
        path = _write_wav(os.path.join(str(tmp_path), "ten.wav"), 10.0)

        assert probe_duration(path) == pytest.approx(10.0)

    def test_unknown_duration_for_other_formats(
        self, corrupt_audio_file: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(shutil, "which", lambda _name: None)
        assert probe_duration(corrupt_audio_file) is None
