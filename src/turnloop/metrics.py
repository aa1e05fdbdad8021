"""
Latency and outcome metrics for turns and sessions.

Only the turn controller writes these, at phase boundaries. Callers get plain
dict snapshots.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def _ms_since(start: float, end: Optional[float] = None) -> float:
    return ((end if end is not None else time.time()) - start) * 1000


@dataclass
class TurnMetrics:
    """Metrics for a single conversation turn."""
    turn_id: int = 0
    start_time: float = 0.0
    stt_ms: float = 0.0
    llm_first_token_ms: float = 0.0
    llm_total_ms: float = 0.0
    tts_first_audio_ms: float = 0.0
    tts_total_ms: float = 0.0
    total_turn_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tool_calls: int = 0
    was_interrupted: bool = False

    # Phase start times (wall clock, seconds)
    stt_started_at: float = 0.0
    llm_started_at: float = 0.0
    tts_started_at: float = 0.0

    def mark_stt_start(self) -> None:
        self.stt_started_at = time.time()

    def mark_stt_end(self) -> None:
        if self.stt_started_at:
            self.stt_ms = _ms_since(self.stt_started_at)

    def mark_llm_start(self) -> None:
        self.llm_started_at = time.time()

    def mark_llm_first_token(self) -> None:
        if self.llm_started_at and not self.llm_first_token_ms:
            self.llm_first_token_ms = _ms_since(self.llm_started_at)

    def mark_llm_end(self) -> None:
        if self.llm_started_at:
            self.llm_total_ms = _ms_since(self.llm_started_at)

    def mark_tts_start(self) -> None:
        if not self.tts_started_at:
            self.tts_started_at = time.time()

    def mark_tts_first_audio(self) -> None:
        if self.tts_started_at and not self.tts_first_audio_ms:
            self.tts_first_audio_ms = _ms_since(self.tts_started_at)

    def mark_tts_end(self) -> None:
        if self.tts_started_at:
            self.tts_total_ms = _ms_since(self.tts_started_at)

    def finalize(self) -> None:
        """Calculate total turn time."""
        if self.start_time > 0:
            self.total_turn_ms = _ms_since(self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "stt_ms": round(self.stt_ms, 2),
            "llm_first_token_ms": round(self.llm_first_token_ms, 2),
            "llm_total_ms": round(self.llm_total_ms, 2),
            "tts_first_audio_ms": round(self.tts_first_audio_ms, 2),
            "tts_total_ms": round(self.tts_total_ms, 2),
            "total_ms": round(self.total_turn_ms, 2),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "tool_calls": self.tool_calls,
            "was_interrupted": self.was_interrupted,
        }


@dataclass
class SessionMetrics:
    """Metrics for an entire session."""
    session_id: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns_completed: int = 0
    turns_interrupted: int = 0
    turns_errored: int = 0
    turns_empty: int = 0
    consecutive_failures: int = 0
    total_stt_ms: float = 0.0
    total_llm_ms: float = 0.0
    total_tts_ms: float = 0.0
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tool_calls: int = 0
    last_turn: Optional[TurnMetrics] = None

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def _accumulate(self, turn: TurnMetrics) -> None:
        self.total_stt_ms += turn.stt_ms
        self.total_llm_ms += turn.llm_total_ms
        self.total_tts_ms += turn.tts_total_ms
        self.total_prompt_tokens += turn.prompt_tokens
        self.total_completion_tokens += turn.completion_tokens
        self.total_tool_calls += turn.tool_calls
        self.last_turn = turn

    def record_completed(self, turn: TurnMetrics) -> None:
        self._accumulate(turn)
        self.turns_completed += 1
        self.consecutive_failures = 0

    def record_empty(self, turn: TurnMetrics) -> None:
        self._accumulate(turn)
        self.turns_empty += 1

    def record_interrupted(self, turn: TurnMetrics) -> None:
        turn.was_interrupted = True
        self._accumulate(turn)
        self.turns_interrupted += 1

    def record_errored(self, turn: TurnMetrics) -> int:
        """Record a failed turn and return the consecutive failure count."""
        self._accumulate(turn)
        self.turns_errored += 1
        self.consecutive_failures += 1
        return self.consecutive_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns_completed": self.turns_completed,
            "turns_interrupted": self.turns_interrupted,
            "turns_errored": self.turns_errored,
            "turns_empty": self.turns_empty,
            "consecutive_failures": self.consecutive_failures,
            "total_stt_ms": round(self.total_stt_ms, 2),
            "total_llm_ms": round(self.total_llm_ms, 2),
            "total_tts_ms": round(self.total_tts_ms, 2),
            "total_prompt_tokens": self.total_prompt_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tool_calls": self.total_tool_calls,
            "last_turn": self.last_turn.to_dict() if self.last_turn else None,
        }
