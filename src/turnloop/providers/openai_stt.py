"""
OpenAI speech-to-text adapter.

The transcription endpoint takes a whole file, so the utterance is buffered
until the audio stream ends and then uploaded as a mono PCM16 WAV. The
gpt-4o transcribe models stream the transcript back as deltas; whisper-1
returns it in one response.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.turnloop.audio import get_audio_duration_ms, write_wav_mono_pcm16
from src.turnloop.config import get_config
from src.turnloop.errors import ProviderError
from src.turnloop.providers.base import STTProvider
from src.turnloop.providers.types import TranscriptDelta

logger = structlog.get_logger(__name__)

# Models that support `stream=True` on audio.transcriptions.create.
STREAMING_MODELS = ("gpt-4o-transcribe", "gpt-4o-mini-transcribe")


class OpenAISTT(STTProvider):
    """OpenAI audio transcription (buffered upload, streamed result)."""

    name = "openai"

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.model = self.config.stt_model
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    @property
    def streams_deltas(self) -> bool:
        return self.model.startswith(STREAMING_MODELS)

    async def transcribe(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptDelta]:
        buffer = bytearray()
        async for frame in audio:
            buffer.extend(frame)

        if not buffer:
            yield TranscriptDelta(text="", is_final=True)
            return

        wav_bytes = write_wav_mono_pcm16(bytes(buffer), self.config.sample_rate)
        logger.debug(
            "Uploading utterance for transcription",
            model=self.model,
            audio_ms=round(get_audio_duration_ms(bytes(buffer), self.config.sample_rate), 1),
        )

        file = ("utterance.wav", wav_bytes, "audio/wav")
        try:
            if not self.streams_deltas:
                result = await self._client.audio.transcriptions.create(model=self.model, file=file)
                yield TranscriptDelta(text=(result.text or "").strip(), is_final=True)
                return

            stream = await self._client.audio.transcriptions.create(
                model=self.model,
                file=file,
                stream=True,
            )
            text = ""
            final_text: Optional[str] = None
            async for event in stream:
                event_type = getattr(event, "type", "")
                if event_type == "transcript.text.delta":
                    text += event.delta or ""
                    yield TranscriptDelta(text=text, is_final=False)
                elif event_type == "transcript.text.done":
                    final_text = event.text or text
        except openai.OpenAIError as e:
            raise ProviderError(str(e), phase="stt", provider=self.name) from e

        yield TranscriptDelta(text=(final_text if final_text is not None else text).strip(), is_final=True)

    async def close(self) -> None:
        await self._client.close()
