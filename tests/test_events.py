"""
Tests for the outbound event sink.
"""

import asyncio
import base64
import json

import pytest

from src.turnloop.events import Event, EventSink, EventType
from tests.fakes import drain_events


def test_event_to_dict_encodes_audio():
    event = Event(
        type=EventType.AUDIO_CHUNK,
        session_id="sess_1",
        turn_id=2,
        payload={"sequence": 1, "sample_rate": 16000},
        audio=b"\x01\x02",
    )
    data = event.to_dict()
    assert data["type"] == "audio.chunk"
    assert data["turn_id"] == 2
    assert base64.b64decode(data["payload"]["audio"]) == b"\x01\x02"
    assert event.sequence == 1


def test_event_to_json():
    event = Event(type=EventType.RESPONSE_TEXT_DELTA, session_id="sess_1", turn_id=1, payload={"text": "Hi"})
    data = json.loads(event.to_json())
    assert data["payload"] == {"text": "Hi"}
    assert data["session_id"] == "sess_1"
    assert data["event_id"].startswith("evt_")
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_emit_preserves_order():
    sink = EventSink("sess_1")
    await sink.emit(EventType.SESSION_CREATED)
    await sink.emit(EventType.TRANSCRIPTION_DONE, turn_id=1, payload={"text": "hello"})
    await sink.emit(EventType.RESPONSE_DONE, turn_id=1)
    assert [e.type for e in drain_events(sink)] == [
        EventType.SESSION_CREATED,
        EventType.TRANSCRIPTION_DONE,
        EventType.RESPONSE_DONE,
    ]


@pytest.mark.asyncio
async def test_audio_sequence_per_turn():
    sink = EventSink("sess_1")
    for turn_id in (1, 1, 2, 1, 2):
        await sink.emit(EventType.AUDIO_CHUNK, turn_id=turn_id, audio=b"\x00\x00")
    events = drain_events(sink)
    assert [(e.turn_id, e.sequence) for e in events] == [(1, 1), (1, 2), (2, 1), (1, 3), (2, 2)]


@pytest.mark.asyncio
async def test_retired_turn_emits_nothing():
    sink = EventSink("sess_1")
    sink.retire(1)
    assert await sink.emit(EventType.RESPONSE_TEXT_DELTA, turn_id=1, payload={"text": "late"}) is None
    assert await sink.emit(EventType.RESPONSE_CANCELLED, turn_id=1, force=True) is not None
    assert [e.type for e in drain_events(sink)] == [EventType.RESPONSE_CANCELLED]


@pytest.mark.asyncio
async def test_queued_audio_of_retired_turn_is_dropped():
    sink = EventSink("sess_1")
    await sink.emit(EventType.AUDIO_CHUNK, turn_id=1, audio=b"\x00\x00")
    await sink.emit(EventType.RESPONSE_TEXT_DONE, turn_id=1)
    await sink.emit(EventType.AUDIO_CHUNK, turn_id=1, audio=b"\x00\x00")
    sink.retire(1)

    delivered = drain_events(sink)
    assert [e.type for e in delivered] == [EventType.RESPONSE_TEXT_DONE]
    assert sink.dropped_audio == 2


@pytest.mark.asyncio
async def test_events_iterator_ends_on_close():
    sink = EventSink("sess_1")
    await sink.emit(EventType.SESSION_CREATED)
    sink.emit_nowait(EventType.SESSION_CLOSED)
    sink.close()

    received = [e.type async for e in sink.events()]
    assert received == [EventType.SESSION_CREATED, EventType.SESSION_CLOSED]
    assert sink.closed
    assert await sink.emit(EventType.ERROR) is None


@pytest.mark.asyncio
async def test_emit_applies_backpressure():
    sink = EventSink("sess_1", maxsize=1)
    await sink.emit(EventType.SESSION_CREATED)
    blocked = asyncio.create_task(sink.emit(EventType.SPEECH_STARTED))
    await asyncio.sleep(0.01)
    assert not blocked.done()

    assert [e.type for e in drain_events(sink)] == [EventType.SESSION_CREATED]
    await asyncio.wait_for(blocked, timeout=1.0)
    assert [e.type for e in drain_events(sink)] == [EventType.SPEECH_STARTED]


@pytest.mark.asyncio
async def test_emit_nowait_evicts_when_full():
    sink = EventSink("sess_1", maxsize=2)
    await sink.emit(EventType.SESSION_CREATED)
    await sink.emit(EventType.SPEECH_STARTED)
    sink.emit_nowait(EventType.SESSION_CLOSED)
    assert [e.type for e in drain_events(sink)] == [EventType.SPEECH_STARTED, EventType.SESSION_CLOSED]


@pytest.mark.asyncio
async def test_close_never_blocks_on_full_queue():
    sink = EventSink("sess_1", maxsize=1)
    await sink.emit(EventType.SESSION_CREATED)
    sink.close()
    # The close marker replaced the unread event.
    assert [e async for e in sink.events()] == []
