"""
Provider adapters and factory.

One implementation per vendor; the configured vendor for each capability is
instantiated once per session.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from src.turnloop.config import ConfigError, get_config
from src.turnloop.providers.base import LLMProvider, STTProvider, TTSProvider

logger = structlog.get_logger(__name__)


def create_stt(config: Optional[Any] = None) -> STTProvider:
    config = config or get_config()
    provider = (config.stt_provider or "").strip().lower()
    if provider == "openai":
        from src.turnloop.providers.openai_stt import OpenAISTT

        return OpenAISTT(config)
    if provider == "deepgram":
        from src.turnloop.providers.deepgram_stt import DeepgramSTT

        return DeepgramSTT(config)
    if provider == "assemblyai":
        from src.turnloop.providers.assemblyai_stt import AssemblyAISTT

        return AssemblyAISTT(config)
    raise ConfigError(f"Unknown STT_PROVIDER '{config.stt_provider}'")


def create_llm(config: Optional[Any] = None) -> LLMProvider:
    config = config or get_config()
    provider = (config.llm_provider or "").strip().lower()
    if provider in ("openai", "groq"):
        from src.turnloop.providers.openai_llm import OpenAICompatibleLLM

        return OpenAICompatibleLLM(config, provider=provider)
    raise ConfigError(f"Unknown LLM_PROVIDER '{config.llm_provider}'")


def create_tts(config: Optional[Any] = None) -> TTSProvider:
    config = config or get_config()
    provider = (config.tts_provider or "").strip().lower()
    if provider == "openai":
        from src.turnloop.providers.openai_tts import OpenAITTS

        return OpenAITTS(config)
    if provider == "cartesia":
        from src.turnloop.providers.cartesia_tts import CartesiaTTS

        return CartesiaTTS(config)
    if provider == "elevenlabs":
        from src.turnloop.providers.elevenlabs_tts import ElevenLabsTTS

        return ElevenLabsTTS(config)
    if provider == "deepgram":
        from src.turnloop.providers.deepgram_tts import DeepgramTTS

        return DeepgramTTS(config)
    raise ConfigError(f"Unknown TTS_PROVIDER '{config.tts_provider}'")


@dataclass
class ProviderSet:
    """The three adapters a session uses."""
    stt: STTProvider
    llm: LLMProvider
    tts: TTSProvider

    async def close(self) -> None:
        results = await asyncio.gather(
            self.stt.close(),
            self.llm.close(),
            self.tts.close(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Provider close failed", error=str(result))


def build_providers(config: Optional[Any] = None) -> ProviderSet:
    """Instantiate the configured STT, LLM and TTS adapters."""
    config = config or get_config()
    return ProviderSet(stt=create_stt(config), llm=create_llm(config), tts=create_tts(config))


__all__ = [
    "LLMProvider",
    "ProviderSet",
    "STTProvider",
    "TTSProvider",
    "build_providers",
    "create_llm",
    "create_stt",
    "create_tts",
]
