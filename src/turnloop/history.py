"""
Conversation history for a voice session.

Holds user, assistant and tool messages in order, with tool-call metadata so
the full exchange can be replayed to an OpenAI-compatible chat API. Only the
turn controller writes to it; everyone else reads snapshots.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ToolCallRecord:
    """A tool call requested by the assistant."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class Message:
    """A single message in the conversation."""
    role: str  # "user" | "assistant" | "tool"
    content: str
    timestamp: float = field(default_factory=time.time)
    turn_id: Optional[int] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    name: Optional[str] = None
    interrupted: bool = False

    def to_openai(self) -> Dict[str, Any]:
        """Message in OpenAI chat format."""
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
            if not self.content:
                message["content"] = None
        if self.role == "tool":
            message["tool_call_id"] = self.tool_call_id
        return message

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "turn_id": self.turn_id,
        }
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments} for c in self.tool_calls
            ]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
            data["name"] = self.name
        if self.interrupted:
            data["interrupted"] = True
        return data


class ConversationHistory:
    """Manages conversation history with a rolling window."""

    def __init__(self, max_messages: int = 40, system_prompt: str = ""):
        self.max_messages = max_messages
        self.system_prompt = system_prompt
        self._messages: List[Message] = []

    def add_user_message(self, content: str, *, turn_id: Optional[int] = None) -> Message:
        """Add a user message."""
        message = Message(role="user", content=content, turn_id=turn_id)
        self._append([message])
        return message

    def add_assistant_message(
        self,
        content: str,
        *,
        turn_id: Optional[int] = None,
        interrupted: bool = False,
    ) -> Message:
        """Add an assistant message (possibly a truncated, interrupted one)."""
        message = Message(role="assistant", content=content, turn_id=turn_id, interrupted=interrupted)
        self._append([message])
        return message

    def add_messages(self, messages: List[Message]) -> None:
        """Add a group of messages atomically (e.g. a tool exchange)."""
        if messages:
            self._append(list(messages))

    def _append(self, messages: List[Message]) -> None:
        self._messages.extend(messages)
        self._trim()

    def _trim(self) -> None:
        """Trim history to max messages without orphaning tool results."""
        if len(self._messages) <= self.max_messages:
            return
        trimmed = self._messages[-self.max_messages:]
        # A tool message needs its assistant tool-call message in front of it.
        while trimmed and trimmed[0].role == "tool":
            trimmed = trimmed[1:]
        self._messages = trimmed

    def get_messages(self) -> List[Dict[str, Any]]:
        """Get messages in OpenAI format, system prompt first."""
        messages: List[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(m.to_openai() for m in self._messages)
        return messages

    def snapshot(self) -> List[Dict[str, Any]]:
        """Read-only copy of the history."""
        return [m.to_dict() for m in self._messages]

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def clear(self) -> None:
        """Clear conversation history."""
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)
