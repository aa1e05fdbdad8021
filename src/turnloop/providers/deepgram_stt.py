"""
Deepgram live speech-to-text adapter.

Opens one WebSocket per utterance, streams linear16 frames as they arrive and
relays interim results as partial deltas. When the audio stream ends the
adapter sends CloseStream; Deepgram flushes its last results and closes the
socket, at which point the finalized segments are joined into the final
transcript.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, List, Optional

import structlog
import websockets
import websockets.exceptions

from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import STTProvider
from src.turnloop.providers.types import TranscriptDelta

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_MODEL = "nova-3"


class DeepgramSTT(STTProvider):
    """Deepgram streaming STT client using raw WebSocket."""

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        model = self.config.stt_model if self.config.stt_model.startswith("nova") else DEEPGRAM_MODEL
        self.url = (
            f"{DEEPGRAM_URL}"
            f"?model={model}"
            f"&encoding=linear16"
            f"&sample_rate={self.config.sample_rate}"
            f"&channels=1"
            f"&punctuate=true"
            f"&interim_results=true"
            f"&smart_format=true"
        )

    async def _connect(self):
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            return await websockets.connect(self.url, additional_headers=headers, open_timeout=10)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Deepgram connection failed", error_type=type(e).__name__, error=str(e))
            raise ProviderError(f"Connection failed: {e}", phase="stt", provider=self.name) from e

    @staticmethod
    async def _send_audio(ws, audio: AsyncIterator[bytes]) -> None:
        async for frame in audio:
            await ws.send(frame)
        await ws.send(json.dumps({"type": "CloseStream"}))

    async def transcribe(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptDelta]:
        ws = await self._connect()
        sender = asyncio.create_task(self._send_audio(ws, audio))
        finalized: List[str] = []

        try:
            async for message in ws:
                if not isinstance(message, str):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue

                msg_type = str(data.get("type", "")).lower()
                if msg_type == "results":
                    alternatives = data.get("channel", {}).get("alternatives", [])
                    transcript = alternatives[0].get("transcript", "") if alternatives else ""
                    if not transcript:
                        continue
                    if data.get("is_final", False):
                        finalized.append(transcript)
                        text = " ".join(finalized)
                    else:
                        text = " ".join(finalized + [transcript])
                    yield TranscriptDelta(
                        text=text,
                        is_final=False,
                        confidence=alternatives[0].get("confidence"),
                    )
                elif msg_type == "error":
                    logger.error("Deepgram error", details=data)
                    raise ProviderError(
                        str(data.get("description") or data.get("message") or "Deepgram error"),
                        phase="stt",
                        provider=self.name,
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

        yield TranscriptDelta(text=" ".join(finalized).strip(), is_final=True)
