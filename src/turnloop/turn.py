"""
Turn data model.

A Turn is one user input and the response to it. Turn ids are monotonic per
session starting at 1; at most one turn per session is in a non-terminal state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.turnloop.metrics import TurnMetrics


class TurnState(str, Enum):
    """Lifecycle state of a turn."""
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.INTERRUPTED, TurnState.ERRORED)


class TurnSource(str, Enum):
    AUDIO = "audio"
    TEXT = "text"


@dataclass
class ToolCallResult:
    """A tool call issued during a turn and what came back."""
    id: str
    name: str
    arguments: Dict[str, Any]
    result: Any = None
    is_error: bool = False


@dataclass
class TurnError:
    phase: str
    provider: str
    message: str


@dataclass
class Turn:
    """A single conversation turn."""
    turn_id: int
    source: TurnSource
    state: TurnState = TurnState.LISTENING
    input_transcript: str = ""
    output_text: str = ""
    spoken_text: str = ""
    tool_calls: List[ToolCallResult] = field(default_factory=list)
    audio_chunks: int = 0
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    error: Optional[TurnError] = None
    metrics: TurnMetrics = field(default_factory=TurnMetrics)

    def __post_init__(self) -> None:
        self.metrics.turn_id = self.turn_id
        if not self.metrics.start_time:
            self.metrics.start_time = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def append_spoken(self, sentence: str) -> None:
        self.spoken_text = f"{self.spoken_text} {sentence}".strip()

    def finish(self, state: TurnState) -> None:
        self.state = state
        self.ended_at = time.time()
        self.metrics.finalize()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "source": self.source.value,
            "state": self.state.value,
            "input_transcript": self.input_transcript,
            "output_text": self.output_text,
            "spoken_text": self.spoken_text,
            "tool_calls": [
                {
                    "id": c.id,
                    "name": c.name,
                    "arguments": c.arguments,
                    "result": c.result,
                    "is_error": c.is_error,
                }
                for c in self.tool_calls
            ],
            "audio_chunks": self.audio_chunks,
            "error": (
                {"phase": self.error.phase, "provider": self.error.provider, "message": self.error.message}
                if self.error
                else None
            ),
        }
