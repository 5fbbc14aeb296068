"""Speech-to-text provider selection.

Each provider registers its engine class together with a function that
derives the engine's constructor options from Settings. The service asks
for ``engine_from_settings(settings)`` and never names a provider itself.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from audio_transcriber.asr.interface import ASREngine
from audio_transcriber.asr.whisper import WhisperEngine
from audio_transcriber.utils.errors import ASRError

if TYPE_CHECKING:
    from audio_transcriber.config import Settings

logger = logging.getLogger(__name__)

EngineOptions = Callable[["Settings"], dict[str, Any]]


def _whisper_options(settings: Settings) -> dict[str, Any]:
    return {
        "api_key": settings.openai_api_key,
        "timeout": settings.openai_timeout,
        "base_url": settings.openai_base_url,
    }


ASR_ENGINES: dict[str, type[ASREngine]] = {
    "whisper": WhisperEngine,
}

ENGINE_OPTIONS: dict[str, EngineOptions] = {
    "whisper": _whisper_options,
}


def available_providers() -> list[str]:
    return sorted(ASR_ENGINES)


def get_asr_engine(provider: str, **kwargs: Any) -> ASREngine:
    """Instantiate the engine registered as ``provider`` with ``kwargs``.

    Raises:
        ASRError: No engine is registered under that name.
    """
    try:
        engine_cls = ASR_ENGINES[provider]
    except KeyError:
        raise ASRError(
            f"Unknown ASR provider: '{provider}'. "
            f"Available: {', '.join(available_providers())}",
            provider=provider,
        ) from None
    return engine_cls(**kwargs)


def engine_from_settings(settings: Settings) -> ASREngine:
    """Build the engine named by ``settings.asr_provider``.

    Providers without a registered options function are constructed with
    no arguments.
    """
    provider = settings.asr_provider
    options = ENGINE_OPTIONS.get(provider)
    engine = get_asr_engine(provider, **(options(settings) if options else {}))
    logger.info("ASR engine selected: %s", provider)
    return engine
