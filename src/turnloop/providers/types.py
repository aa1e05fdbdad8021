from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass
class TranscriptDelta:
    """
    A piece of transcription.

    Partial deltas carry the text recognized so far for the current segment;
    exactly one delta per utterance has `is_final=True` and carries the full
    transcript.
    """

    text: str
    is_final: bool = False
    confidence: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class TextDelta:
    """Streamed assistant text."""

    text: str


@dataclass
class ToolCallRequest:
    """A complete tool call emitted by the LLM."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class LLMResult:
    """End of one LLM generation round."""

    text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None


LLMDelta = Union[TextDelta, ToolCallRequest, LLMResult]


@dataclass
class TTSChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is PCM16 little-endian mono at `sample_rate`.
    """

    audio_bytes: bytes
    sample_rate: int = 16000
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)
