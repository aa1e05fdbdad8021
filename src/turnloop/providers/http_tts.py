"""
Shared streaming-POST TTS adapter.

Vendors that return raw PCM over a chunked HTTP response (ElevenLabs,
Deepgram Aura) only differ in the request they build and the rate they
return; the streaming, conversion and cancellation live here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog

from src.turnloop.audio import PCMStreamConverter
from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import TTSProvider
from src.turnloop.providers.types import TTSChunk

logger = structlog.get_logger(__name__)

STREAM_CHUNK_BYTES = 3200


@dataclass
class SpeechRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    params: Dict[str, Any] = field(default_factory=dict)


class HTTPStreamingTTS(TTSProvider):
    """Base for TTS vendors that stream raw PCM16 from a POST endpoint."""

    name = "http"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        self._cancelled = False

    @property
    def output_rate(self) -> int:
        """Sample rate of the PCM the vendor returns."""
        return self.config.sample_rate

    def build_request(self, text: str) -> SpeechRequest:
        raise NotImplementedError

    def cancel(self) -> None:
        self._cancelled = True

    async def synthesize(self, text: str) -> AsyncIterator[TTSChunk]:
        if not text or not text.strip():
            return

        self._cancelled = False
        request = self.build_request(text)
        converter = PCMStreamConverter(self.output_rate, self.config.sample_rate)
        try:
            async with self._client.stream(
                "POST",
                request.url,
                params=request.params,
                headers=request.headers,
                json=request.body,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.error(
                        "TTS request rejected",
                        provider=self.name,
                        status_code=response.status_code,
                        response=body[:200].decode("utf-8", "replace"),
                    )
                    raise ProviderError(
                        f"HTTP {response.status_code}: {body[:200].decode('utf-8', 'replace')}",
                        phase="tts",
                        provider=self.name,
                    )

                async for data in response.aiter_bytes(STREAM_CHUNK_BYTES):
                    if self._cancelled:
                        logger.debug("TTS cancelled mid-stream", provider=self.name)
                        return
                    audio = converter.feed(data)
                    if audio:
                        yield TTSChunk(audio_bytes=audio, sample_rate=self.config.sample_rate)
        except httpx.HTTPError as e:
            logger.warning("TTS request failed", provider=self.name, error=str(e))
            raise ProviderError(str(e) or type(e).__name__, phase="tts", provider=self.name) from e

    async def close(self) -> None:
        await self._client.aclose()
