"""
Error taxonomy for the voice turn pipeline.

Each class maps to one handling policy:

- InputError: malformed frame or message. Dropped and reported; the session survives.
- ProviderError: an STT/LLM/TTS call failed or timed out. Fails the current turn.
- ToolExecutionError: a tool raised. Returned to the LLM as an error result.
- StateError: new input rejected because a turn is already active.
- SessionFatalError: the session cannot continue and is torn down.
"""

from __future__ import annotations

from typing import Any, Optional


class TurnloopError(Exception):
    """Base class for pipeline errors."""

    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InputError(TurnloopError):
    """Raised for malformed inbound audio frames or client messages."""

    code = "invalid_input"


class ProviderError(TurnloopError):
    """Raised when a provider adapter call fails, including timeouts."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        provider: str,
    ):
        super().__init__(message)
        self.phase = phase
        self.provider = provider

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update({"phase": self.phase, "provider": self.provider})
        return payload

    def __str__(self) -> str:
        return f"[{self.phase}:{self.provider}] {self.message}"


class ToolExecutionError(TurnloopError):
    """Raised when a tool is unknown, gets invalid arguments, or fails."""

    code = "tool_error"

    def __init__(self, message: str, *, tool: str):
        super().__init__(message)
        self.tool = tool


class StateError(TurnloopError):
    """Raised when an operation violates the single-active-turn invariant."""

    code = "invalid_state"


class SessionFatalError(TurnloopError):
    """Raised when the session must be torn down."""

    code = "session_fatal"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
