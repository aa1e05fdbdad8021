from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from src.turnloop.providers.types import LLMDelta, TranscriptDelta, TTSChunk


class STTProvider(ABC):
    """Speech-to-text adapter. One instance per session."""

    name: str = "stt"

    @abstractmethod
    def transcribe(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptDelta]:
        """
        Transcribe one utterance.

        Consumes PCM16 frames until `audio` is exhausted and yields partial
        deltas followed by exactly one final delta. Failures raise ProviderError.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LLMProvider(ABC):
    """Chat-completion adapter with streaming and tool calling."""

    name: str = "llm"

    @abstractmethod
    def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[LLMDelta]:
        """
        Run one generation round.

        Yields TextDelta and complete ToolCallRequest items, then exactly one
        LLMResult. Closing the generator aborts the HTTP stream.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


class TTSProvider(ABC):
    """Text-to-speech adapter producing PCM16 chunks."""

    name: str = "tts"

    @abstractmethod
    def synthesize(self, text: str) -> AsyncIterator[TTSChunk]:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
