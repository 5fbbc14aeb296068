"""Audio format conversion for the transcription service using ffmpeg.

Formats the transcription API cannot consume (FLAC, AAC, WMA, AMR, Opus,
Ogg) are converted to 128 kbit/s stereo 44.1 kHz MP3. Also provides
ffprobe-based duration probing used for cost calculation.
"""

import json
import logging
import os
import secrets
import shutil
import subprocess
import time
import wave
from dataclasses import dataclass
from pathlib import Path

from audio_transcriber.utils.errors import TranscodeError

logger = logging.getLogger(__name__)

NEEDS_CONVERSION = frozenset({".flac", ".aac", ".wma", ".amr", ".opus", ".ogg"})

TARGET_FORMAT = "mp3"
TARGET_EXTENSION = ".mp3"
TARGET_CODEC = "libmp3lame"
TARGET_BITRATE = "128k"
TARGET_CHANNELS = 2
TARGET_SAMPLE_RATE = 44100

FFPROBE_TIMEOUT_SECONDS = 10
FFMPEG_TIMEOUT_SECONDS = 120


@dataclass
class TranscodeResult:
    """Result of a successful conversion."""

    input_path: str
    output_path: str
    input_size_bytes: int
    output_size_bytes: int
    duration_seconds: float


def needs_conversion(file_path: str | os.PathLike) -> bool:
    """Return True if the file's extension must be converted before upload."""
    return Path(file_path).suffix.lower() in NEEDS_CONVERSION


def _check_ffmpeg_available() -> str:
    """Verify ffmpeg is available on the system.

    Returns:
        Path to the ffmpeg binary.

    Raises:
        TranscodeError: If ffmpeg is not found.
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path is None:
        raise TranscodeError("ffmpeg binary not found on PATH")
    return ffmpeg_path


def _check_audio_valid(input_path: str) -> None:
    """Pre-validate the input with ffprobe so corrupt files fail fast.

    Skipped when ffprobe is not installed.

    Raises:
        TranscodeError: If ffprobe rejects the file or times out.
    """
    ffprobe_path = shutil.which("ffprobe")
    if ffprobe_path is None:
        return

    cmd = [ffprobe_path, "-v", "error", "-show_format", input_path]

    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else "unknown error"
        raise TranscodeError(
            f"Audio file is corrupt or unreadable (ffprobe): {stderr}",
            input_path=input_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise TranscodeError(
            f"ffprobe timed out after {FFPROBE_TIMEOUT_SECONDS}s",
            input_path=input_path,
        ) from exc


def _read_wav_duration(wav_path: str) -> float:
    with wave.open(wav_path, "rb") as wf:
        return wf.getnframes() / wf.getframerate()


def probe_duration(file_path: str) -> float | None:
    """Return the audio duration in seconds, or None if it cannot be read.

    Uses ffprobe (audio stream duration, then container duration) and falls
    back to the WAV header for .wav files when ffprobe is unavailable or
    fails.
    """
    ffprobe_path = shutil.which("ffprobe")
    if ffprobe_path is not None:
        cmd = [
            ffprobe_path,
            "-v", "error",
            "-show_streams",
            "-show_format",
            "-of", "json",
            file_path,
        ]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=FFPROBE_TIMEOUT_SECONDS,
            )
            probe = json.loads(result.stdout or "{}")
            for stream in probe.get("streams", []):
                if stream.get("codec_type") == "audio" and stream.get("duration"):
                    return float(stream["duration"])
            fmt_duration = probe.get("format", {}).get("duration")
            if fmt_duration:
                return float(fmt_duration)
        except (subprocess.SubprocessError, ValueError) as exc:
            logger.warning(
                "Failed to get duration for %s: %s", os.path.basename(file_path), exc
            )

    if Path(file_path).suffix.lower() == ".wav":
        try:
            return _read_wav_duration(file_path)
        except (OSError, EOFError, wave.Error) as exc:
            logger.warning("Could not read WAV header for %s: %s", file_path, exc)

    logger.warning("Could not determine duration for %s", os.path.basename(file_path))
    return None


def transcode_for_asr(input_path: str, output_dir: str) -> TranscodeResult:
    """Convert an audio file to the normalized MP3 format.

    The output is written to ``converted-<random>-<stem>.mp3`` in
    ``output_dir`` so it never collides with another artifact.

    Args:
        input_path: Path to the source audio file.
        output_dir: Directory for the converted file.

    Returns:
        TranscodeResult with paths, sizes and the conversion wall time.

    Raises:
        TranscodeError: If the input is missing or corrupt, ffmpeg is not
            installed, or ffmpeg fails or times out.
    """
    input_file = Path(input_path)

    if not input_file.exists():
        raise TranscodeError(
            f"Input file does not exist: {input_path}",
            input_path=input_path,
        )

    ffmpeg_path = _check_ffmpeg_available()
    _check_audio_valid(input_path)

    output_filename = (
        f"converted-{secrets.token_hex(8)}-{input_file.stem}{TARGET_EXTENSION}"
    )
    output_path = os.path.join(output_dir, output_filename)
    os.makedirs(output_dir, exist_ok=True)

    cmd = [
        ffmpeg_path,
        "-y",
        "-i", input_path,
        "-vn",
        "-acodec", TARGET_CODEC,
        "-b:a", TARGET_BITRATE,
        "-ac", str(TARGET_CHANNELS),
        "-ar", str(TARGET_SAMPLE_RATE),
        "-f", TARGET_FORMAT,
        output_path,
    ]

    logger.info(
        "Converting %s from %s to %s",
        input_file.name,
        input_file.suffix.lower(),
        TARGET_FORMAT,
    )
    start = time.monotonic()
    try:
        subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=FFMPEG_TIMEOUT_SECONDS,
        )
    except subprocess.CalledProcessError as exc:
        _discard(output_path)
        stderr = exc.stderr.strip() if exc.stderr else "unknown error"
        raise TranscodeError(
            f"ffmpeg conversion failed: {stderr}",
            input_path=input_path,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        _discard(output_path)
        raise TranscodeError(
            f"ffmpeg conversion timed out after {FFMPEG_TIMEOUT_SECONDS} seconds",
            input_path=input_path,
        ) from exc

    if not os.path.exists(output_path):
        raise TranscodeError(
            f"ffmpeg produced no output file: {output_path}",
            input_path=input_path,
        )

    elapsed = time.monotonic() - start
    logger.info("Conversion completed in %.2fs", elapsed)

    return TranscodeResult(
        input_path=input_path,
        output_path=output_path,
        input_size_bytes=input_file.stat().st_size,
        output_size_bytes=os.path.getsize(output_path),
        duration_seconds=elapsed,
    )


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
