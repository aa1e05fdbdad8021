"""
Outbound event channel for a session.

Every transcript, text delta, audio chunk, tool notice, metric and error
produced by a session goes through one bounded asyncio.Queue, so:
- events are delivered in emission order
- a slow consumer applies backpressure to the producer (await put)
- an interrupted ("retired") turn emits nothing further, and its audio chunks
  still waiting in the queue are dropped at delivery instead of played

Wire encoding uses msgspec; audio is base64-encoded in the JSON form.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Set

import msgspec
import structlog

logger = structlog.get_logger(__name__)

encoder = msgspec.json.Encoder()


class EventType(str, Enum):
    """Outbound event types."""
    SESSION_CREATED = "session.created"
    SESSION_CLOSED = "session.closed"
    SPEECH_STARTED = "input.speech.started"
    SPEECH_STOPPED = "input.speech.stopped"
    TRANSCRIPTION_DELTA = "transcription.delta"
    TRANSCRIPTION_DONE = "transcription.done"
    RESPONSE_TEXT_DELTA = "response.text.delta"
    RESPONSE_TEXT_DONE = "response.text.done"
    AUDIO_CHUNK = "audio.chunk"
    TOOL_CALL = "tool.call"
    TOOL_RESULT = "tool.result"
    RESPONSE_DONE = "response.done"
    RESPONSE_CANCELLED = "response.cancelled"
    TURN_METRICS = "turn.metrics"
    ERROR = "error"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:16]}"


@dataclass
class Event:
    """A single outbound event."""
    type: EventType
    session_id: str
    turn_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    audio: Optional[bytes] = None
    event_id: str = field(default_factory=_new_event_id)
    timestamp: str = field(default_factory=_now_iso)

    @property
    def sequence(self) -> Optional[int]:
        return self.payload.get("sequence")

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.payload)
        if self.audio is not None:
            payload["audio"] = base64.b64encode(self.audio).decode("ascii")
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "turn_id": self.turn_id,
            "payload": payload,
        }

    def to_json(self) -> str:
        return encoder.encode(self.to_dict()).decode("utf-8")


class EventSink:
    """Bounded, ordered, turn-aware event queue for one session."""

    def __init__(self, session_id: str, maxsize: int = 256):
        self.session_id = session_id
        self._queue: asyncio.Queue[Optional[Event]] = asyncio.Queue(maxsize=maxsize)
        self._retired: Set[int] = set()
        self._sequences: Dict[int, int] = {}
        self._closed = False
        self.dropped_audio = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def is_retired(self, turn_id: Optional[int]) -> bool:
        return turn_id is not None and turn_id in self._retired

    def retire(self, turn_id: int) -> None:
        """
        Stop accepting events for a turn.

        Synchronous so the caller can retire a turn before yielding to the
        event loop; nothing from that turn is accepted afterwards.
        """
        self._retired.add(turn_id)

    async def emit(
        self,
        event_type: EventType,
        *,
        turn_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        audio: Optional[bytes] = None,
        force: bool = False,
    ) -> Optional[Event]:
        """
        Queue an event, waiting for room if the queue is full.

        Returns the queued event, or None if it was refused (sink closed, or the
        turn is retired and `force` is not set).
        """
        if self._closed:
            return None
        if self.is_retired(turn_id) and not force:
            return None

        payload = dict(payload or {})
        if event_type is EventType.AUDIO_CHUNK and turn_id is not None:
            sequence = self._sequences.get(turn_id, 0) + 1
            self._sequences[turn_id] = sequence
            payload["sequence"] = sequence

        event = Event(
            type=event_type,
            session_id=self.session_id,
            turn_id=turn_id,
            payload=payload,
            audio=audio,
        )
        await self._queue.put(event)
        return event

    def emit_nowait(
        self,
        event_type: EventType,
        *,
        turn_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        """
        Queue a control event without waiting.

        When the queue is full the oldest undelivered event is discarded to
        make room, so teardown never blocks on an absent consumer.
        """
        if self._closed:
            return None
        event = Event(
            type=event_type,
            session_id=self.session_id,
            turn_id=turn_id,
            payload=dict(payload or {}),
        )
        self._put_evicting(event)
        return event

    def _put_evicting(self, item: Optional[Event]) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                evicted = self._queue.get_nowait()
                logger.warning(
                    "Event queue full, dropping oldest event",
                    session_id=self.session_id,
                    dropped_type=evicted.type.value if evicted else None,
                )

    def close(self) -> None:
        """Close the sink; the iterator drains what is queued and ends."""
        if self._closed:
            return
        self._closed = True
        self._put_evicting(None)

    def _deliverable(self, event: Event) -> bool:
        if event.type is EventType.AUDIO_CHUNK and self.is_retired(event.turn_id):
            self.dropped_audio += 1
            return False
        return True

    async def events(self) -> AsyncIterator[Event]:
        """Iterate over events in emission order until the sink is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            if self._deliverable(event):
                yield event

