"""Service settings read from environment variables."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from audio_transcriber.asr.registry import ASR_ENGINES, available_providers


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Centralized service settings.

    Defaults match production; ``from_env()`` overrides them from the
    process environment so other modules depend on typed attributes instead
    of calling os.environ directly.
    """

    # Transcription service
    asr_provider: str = "whisper"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "whisper-1"
    openai_timeout: float = 300.0
    transcription_max_attempts: int = 5

    # Temp files and jobs
    temp_dir: Path = Path(tempfile.gettempdir()) / "audio-transcriber"
    max_file_age_seconds: float = 30 * 60
    cleanup_interval_seconds: float = 10 * 60
    job_retention_seconds: float = 30 * 60
    evict_on_read: bool = False

    # Intake
    max_concurrent_uploads: int = 10
    max_upload_bytes: int = 100 * 1024 * 1024

    # Cost tracking
    daily_budget: float = 10.0
    monthly_budget: float = 200.0
    budget_warning_threshold: float = 0.8
    budget_critical_threshold: float = 0.95
    cost_per_minute: float = 0.006

    # Runtime
    shutdown_timeout_seconds: float = 30.0
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``environ`` (default: ``os.environ``)."""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            asr_provider=env.get("ASR_PROVIDER", defaults.asr_provider).strip().lower(),
            openai_api_key=env.get("OPENAI_API_KEY", defaults.openai_api_key),
            openai_base_url=env.get("OPENAI_BASE_URL", defaults.openai_base_url),
            openai_model=env.get("OPENAI_MODEL", defaults.openai_model),
            openai_timeout=float(env.get("OPENAI_TIMEOUT", defaults.openai_timeout)),
            transcription_max_attempts=int(
                env.get("TRANSCRIPTION_MAX_ATTEMPTS", defaults.transcription_max_attempts)
            ),
            temp_dir=Path(env.get("TEMP_DIR", defaults.temp_dir)),
            max_file_age_seconds=float(
                env.get("MAX_FILE_AGE_SECONDS", defaults.max_file_age_seconds)
            ),
            cleanup_interval_seconds=float(
                env.get("CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval_seconds)
            ),
            job_retention_seconds=float(
                env.get("JOB_RETENTION_SECONDS", defaults.job_retention_seconds)
            ),
            evict_on_read=_bool(env.get("EVICT_ON_READ", str(defaults.evict_on_read))),
            max_concurrent_uploads=int(
                env.get("MAX_CONCURRENT_UPLOADS", defaults.max_concurrent_uploads)
            ),
            max_upload_bytes=int(env.get("MAX_UPLOAD_BYTES", defaults.max_upload_bytes)),
            daily_budget=float(env.get("WHISPER_DAILY_BUDGET", defaults.daily_budget)),
            monthly_budget=float(env.get("WHISPER_MONTHLY_BUDGET", defaults.monthly_budget)),
            budget_warning_threshold=float(
                env.get("BUDGET_WARNING_THRESHOLD", defaults.budget_warning_threshold)
            ),
            budget_critical_threshold=float(
                env.get("BUDGET_CRITICAL_THRESHOLD", defaults.budget_critical_threshold)
            ),
            cost_per_minute=float(env.get("WHISPER_COST_PER_MINUTE", defaults.cost_per_minute)),
            shutdown_timeout_seconds=float(
                env.get("SHUTDOWN_TIMEOUT_SECONDS", defaults.shutdown_timeout_seconds)
            ),
            host=env.get("HOST", defaults.host),
            port=int(env.get("PORT", defaults.port)),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )

    def validate(self) -> None:
        """Fail fast on settings the service cannot start without.

        Raises:
            ValueError: If a required setting is missing or out of range.
        """
        if self.asr_provider not in ASR_ENGINES:
            raise ValueError(
                f"ASR_PROVIDER must be one of: {', '.join(available_providers())}"
            )
        if not self.openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")
        if self.max_concurrent_uploads < 1:
            raise ValueError("MAX_CONCURRENT_UPLOADS must be at least 1")
        if self.transcription_max_attempts < 1:
            raise ValueError("TRANSCRIPTION_MAX_ATTEMPTS must be at least 1")
        if not 0 < self.budget_warning_threshold <= self.budget_critical_threshold:
            raise ValueError(
                "BUDGET_WARNING_THRESHOLD must be positive and not above "
                "BUDGET_CRITICAL_THRESHOLD"
            )
