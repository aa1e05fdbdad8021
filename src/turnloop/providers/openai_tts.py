from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.turnloop.audio import PCMStreamConverter
from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import TTSProvider
from src.turnloop.providers.types import TTSChunk

logger = structlog.get_logger(__name__)

# The speech API's "pcm" format is fixed at 24kHz 16-bit mono.
OPENAI_PCM_SAMPLE_RATE = 24000
STREAM_CHUNK_BYTES = 4800  # 100ms at 24kHz


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (streaming).

    Streams raw PCM from the speech endpoint and converts it to the session
    sample rate chunk by chunk.
    """

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    async def synthesize(self, text: str) -> AsyncIterator[TTSChunk]:
        if not text or not text.strip():
            return

        self._cancelled = False
        converter = PCMStreamConverter(OPENAI_PCM_SAMPLE_RATE, self.config.sample_rate)
        try:
            async with self._client.audio.speech.with_streaming_response.create(
                model=self.config.tts_model,
                voice=self.config.tts_voice,
                input=text,
                response_format="pcm",
            ) as response:
                async for data in response.iter_bytes(STREAM_CHUNK_BYTES):
                    if self._cancelled:
                        logger.debug("OpenAI TTS cancelled mid-stream")
                        return
                    audio = converter.feed(data)
                    if audio:
                        yield TTSChunk(audio_bytes=audio, sample_rate=self.config.sample_rate)
        except openai.OpenAIError as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise ProviderError(str(e), phase="tts", provider=self.name) from e

    async def close(self) -> None:
        await self._client.close()
