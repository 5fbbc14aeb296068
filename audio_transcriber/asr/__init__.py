"""Speech-to-text engines and the retrying transcription client."""

from audio_transcriber.asr.registry import engine_from_settings, get_asr_engine

__all__ = ["engine_from_settings", "get_asr_engine"]
