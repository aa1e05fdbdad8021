"""
Client wire protocol for the realtime WebSocket.

Binary WebSocket frames carry raw PCM16 audio and never reach this module.
Text frames are JSON messages:

    {"type": "input_audio_buffer.append", "audio": "<base64 pcm16>"}
    {"type": "input_audio_buffer.commit"}
    {"type": "input_text", "text": "What time is it?"}
    {"type": "conversation.item.create",
     "item": {"type": "message", "role": "user",
              "content": [{"type": "input_text", "text": "..."}]}}
    {"type": "response.cancel"}
    {"type": "session.close"}

Outbound messages are the session events (see events.py).
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import msgspec
import structlog

from src.turnloop.errors import InputError

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()


class ClientMessageType(str, Enum):
    """Client → server message types."""
    AUDIO_APPEND = "input_audio_buffer.append"
    AUDIO_COMMIT = "input_audio_buffer.commit"
    INPUT_TEXT = "input_text"
    ITEM_CREATE = "conversation.item.create"
    RESPONSE_CANCEL = "response.cancel"
    SESSION_CLOSE = "session.close"


@dataclass
class ClientMessage:
    """A decoded client message."""
    type: ClientMessageType
    audio: Optional[bytes] = None
    text: Optional[str] = None


def _decode_audio(message: dict) -> bytes:
    value = message.get("audio")
    if not isinstance(value, str) or not value:
        raise InputError("input_audio_buffer.append requires a base64 'audio' field")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InputError(f"Invalid base64 audio: {e}") from e


def _extract_item_text(message: dict) -> Any:
    if "text" in message:
        return message.get("text")
    item = message.get("item")
    if not isinstance(item, dict):
        return None
    content = item.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return " ".join(parts) if parts else None
    return None


def parse_client_message(raw_message: Union[str, bytes]) -> ClientMessage:
    """
    Parse a JSON text frame from the client.

    Args:
        raw_message: Raw JSON text

    Returns:
        ClientMessage

    Raises:
        InputError: If the message is not valid JSON, has an unknown type or
            misses required fields
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise InputError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise InputError("Client message must be a JSON object")

    type_str = message.get("type", "")
    try:
        message_type = ClientMessageType(type_str)
    except ValueError:
        logger.warning("Unknown client message type", message_type=type_str)
        raise InputError(f"Unknown message type: {type_str!r}")

    if message_type is ClientMessageType.AUDIO_APPEND:
        return ClientMessage(type=message_type, audio=_decode_audio(message))

    if message_type in (ClientMessageType.INPUT_TEXT, ClientMessageType.ITEM_CREATE):
        text = _extract_item_text(message)
        if not isinstance(text, str) or not text.strip():
            raise InputError(f"{type_str} requires non-empty text")
        return ClientMessage(type=message_type, text=text)

    return ClientMessage(type=message_type)
