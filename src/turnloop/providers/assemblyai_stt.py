"""
AssemblyAI streaming speech-to-text adapter (Universal Streaming, v3).

Opens one WebSocket per utterance. The API wants audio in 50-1000ms
messages, so 20ms transport frames are batched to 100ms. Each `Turn` message
carries the running transcript of one turn (keyed by `turn_order`); with
`format_turns` the last message of a turn repeats it punctuated. Sending
`Terminate` flushes the open turn and ends the stream with `Termination`.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Set

import structlog
import websockets
import websockets.exceptions

from src.turnloop.audio import frame_size_bytes
from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import STTProvider
from src.turnloop.providers.types import TranscriptDelta

logger = structlog.get_logger(__name__)

ASSEMBLYAI_URL = "wss://streaming.assemblyai.com/v3/ws"
SEND_CHUNK_MS = 100


class AssemblyAISTT(STTProvider):
    """AssemblyAI streaming STT client using raw WebSocket."""

    name = "assemblyai"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self.url = (
            f"{ASSEMBLYAI_URL}"
            f"?sample_rate={self.config.sample_rate}"
            f"&encoding=pcm_s16le"
            f"&format_turns=true"
        )
        self.chunk_bytes = frame_size_bytes(self.config.sample_rate, SEND_CHUNK_MS)

    async def _connect(self):
        headers = {"Authorization": self.config.assemblyai_api_key}
        try:
            return await websockets.connect(self.url, additional_headers=headers, open_timeout=10)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("AssemblyAI connection failed", error_type=type(e).__name__, error=str(e))
            raise ProviderError(f"Connection failed: {e}", phase="stt", provider=self.name) from e

    async def _send_audio(self, ws, audio: AsyncIterator[bytes]) -> None:
        buffer = bytearray()
        async for frame in audio:
            buffer.extend(frame)
            if len(buffer) >= self.chunk_bytes:
                await ws.send(bytes(buffer))
                buffer.clear()
        if buffer:
            # Pad the tail up to the minimum message duration.
            buffer.extend(b"\x00" * (self.chunk_bytes - len(buffer)))
            await ws.send(bytes(buffer))
        await ws.send(json.dumps({"type": "Terminate"}))

    @staticmethod
    def _joined(segments: Dict[int, str]) -> str:
        return " ".join(segments[order] for order in sorted(segments) if segments[order]).strip()

    async def transcribe(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptDelta]:
        ws = await self._connect()
        sender = asyncio.create_task(self._send_audio(ws, audio))
        segments: Dict[int, str] = {}
        formatted: Set[int] = set()
        last_text = ""

        try:
            async for message in ws:
                if not isinstance(message, str):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from AssemblyAI")
                    continue

                if data.get("error"):
                    logger.error("AssemblyAI error", details=data)
                    raise ProviderError(str(data["error"]), phase="stt", provider=self.name)

                msg_type = data.get("type", "")
                if msg_type == "Termination":
                    break
                if msg_type != "Turn":
                    continue

                order = int(data.get("turn_order", len(segments)))
                if order in formatted:
                    continue
                segments[order] = data.get("transcript", "")
                if data.get("end_of_turn") and data.get("turn_is_formatted"):
                    formatted.add(order)

                text = self._joined(segments)
                if text and text != last_text:
                    last_text = text
                    yield TranscriptDelta(
                        text=text,
                        is_final=False,
                        confidence=data.get("end_of_turn_confidence"),
                    )

            if sender.done() and not sender.cancelled() and sender.exception() is not None:
                error = sender.exception()
                raise ProviderError(f"Audio upload failed: {error}", phase="stt", provider=self.name) from error

        except websockets.exceptions.ConnectionClosedError as e:
            raise ProviderError(f"Connection closed: {e}", phase="stt", provider=self.name) from e
        finally:
            if not sender.done():
                sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            await ws.close()

        yield TranscriptDelta(text=self._joined(segments), is_final=True)
