from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import structlog
import websockets
import websockets.exceptions

from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import TTSProvider
from src.turnloop.providers.types import TTSChunk

logger = structlog.get_logger(__name__)

CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(self, *, characters: int, first_byte_ms: float, total_ms: float) -> None:
        self.total_requests += 1
        self.total_characters += characters

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia streaming TTS client using WebSocket API.

    Requests raw pcm_s16le at the session sample rate, so chunks need no
    conversion.
    """

    name = "cartesia"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = CartesiaTTSMetrics()
        self._is_cancelled = False

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    def cancel(self) -> None:
        self._is_cancelled = True
        logger.debug("Cartesia TTS cancelled")

    def _build_request(self, text: str, context_id: str) -> dict:
        return {
            "context_id": context_id,
            "model_id": self.config.cartesia_model,
            "transcript": text,
            "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self.config.sample_rate,
            },
            "continue": False,
        }

    async def synthesize(self, text: str) -> AsyncIterator[TTSChunk]:
        if not text or not text.strip():
            return

        self._is_cancelled = False
        start_time = time.time()
        first_byte_time: Optional[float] = None
        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        try:
            async with websockets.connect(url, open_timeout=10) as ws:
                await ws.send(json.dumps(self._build_request(text, uuid.uuid4().hex)))

                async for message in ws:
                    if self._is_cancelled:
                        break

                    if isinstance(message, (bytes, bytearray)):
                        audio = bytes(message)
                    else:
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            logger.warning("Invalid JSON from Cartesia")
                            continue

                        msg_type = data.get("type", "")
                        if msg_type == "done":
                            break
                        if msg_type == "error":
                            logger.error("Cartesia error", error=data.get("error"), details=data)
                            raise ProviderError(
                                str(data.get("error") or data.get("message") or "Cartesia error"),
                                phase="tts",
                                provider=self.name,
                            )
                        if msg_type != "chunk" or not data.get("data"):
                            continue
                        audio = base64.b64decode(data["data"])

                    if first_byte_time is None:
                        first_byte_time = time.time()
                    if audio:
                        yield TTSChunk(audio_bytes=audio, sample_rate=self.config.sample_rate)

        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Cartesia synthesis failed", error=str(e))
            raise ProviderError(str(e), phase="tts", provider=self.name) from e

        end_time = time.time()
        self._metrics.record_synthesis(
            characters=len(text),
            first_byte_ms=((first_byte_time or end_time) - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )

    async def close(self) -> None:
        logger.info(
            "Cartesia TTS closed",
            requests=self._metrics.total_requests,
            characters=self._metrics.total_characters,
            avg_first_byte_ms=round(self._metrics.avg_first_byte_ms, 2),
        )
