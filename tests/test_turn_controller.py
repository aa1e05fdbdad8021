"""
Tests for turn handling: busy policies, provider failures and tool calls.
"""

import asyncio
import json

import pytest

from src.turnloop.errors import ProviderError, StateError
from src.turnloop.events import EventType
from src.turnloop.session import SessionState, create_session
from src.turnloop.tools import create_default_registry
from src.turnloop.turn import TurnState
from tests.fakes import (
    EventRecorder,
    FakeLLM,
    FakeSTT,
    FakeTTS,
    make_config,
    make_providers,
    speak,
    tool_call,
    wait_until,
)


async def start_session(config=None, *, stt=None, llm=None, tts=None):
    config = config or make_config()
    providers = make_providers(stt, llm, tts)
    session = await create_session(config, create_default_registry(config.tool_timeout_s), providers=providers)
    return session, EventRecorder(session.events())


def done_statuses(recorder):
    return [e.payload["status"] for e in recorder.of_type(EventType.RESPONSE_DONE)]


class TestBusyPolicy:
    """Text input while a turn is active."""

    @pytest.mark.asyncio
    async def test_interrupt_policy_replaces_active_turn(self):
        llm = FakeLLM(delay=0.2)
        session, recorder = await start_session(make_config(busy_policy="interrupt"), llm=llm)

        first = await session.process_text("first question")
        second = await session.process_text("second question")

        cancelled = await recorder.wait_for(EventType.RESPONSE_CANCELLED)
        assert cancelled[0].turn_id == first.turn_id
        assert cancelled[0].payload["reason"] == "new_input"
        assert cancelled[0].payload["state"] == "thinking"

        done = await recorder.wait_for(EventType.RESPONSE_DONE)
        assert done[0].turn_id == second.turn_id
        assert first.state is TurnState.INTERRUPTED

        # Nothing was spoken for the first turn, so no assistant message for it.
        roles = [(m["role"], m["content"]) for m in session.get_history()]
        assert roles[:2] == [("user", "first question"), ("user", "second question")]
        assert roles[2][0] == "assistant"
        await session.stop()

    @pytest.mark.asyncio
    async def test_queue_policy_runs_texts_in_order(self):
        session, recorder = await start_session(make_config(busy_policy="queue"), llm=FakeLLM(delay=0.05))

        first = await session.process_text("first question")
        assert await session.process_text("second question") is None
        assert session.controller.queued_texts == 1

        done = await recorder.wait_for(EventType.RESPONSE_DONE, count=2)
        assert [e.turn_id for e in done] == [first.turn_id, first.turn_id + 1]
        assert done_statuses(recorder) == ["completed", "completed"]
        assert recorder.of_type(EventType.RESPONSE_CANCELLED) == []

        roles = [m["role"] for m in session.get_history()]
        assert roles == ["user", "assistant", "user", "assistant"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_queue_policy_keeps_order_while_a_turn_is_finishing(self):
        session, recorder = await start_session(make_config(busy_policy="queue"), llm=FakeLLM(delay=0.02))

        # Hold turn 1 between releasing the turn and starting the next queued text.
        gate = asyncio.Event()
        emit = session.sink.emit

        async def gated_emit(event_type, **kwargs):
            if event_type is EventType.RESPONSE_DONE and kwargs.get("turn_id") == 1:
                await gate.wait()
            return await emit(event_type, **kwargs)

        session.sink.emit = gated_emit

        first = await session.process_text("first")
        assert await session.process_text("second") is None
        await wait_until(lambda: first.is_terminal and session.current_turn is None)

        assert await session.process_text("third") is None
        assert session.current_turn.input_transcript == "second"
        assert session.controller.queued_texts == 1
        gate.set()

        await recorder.wait_for(EventType.RESPONSE_DONE, count=3)
        users = [m["content"] for m in session.get_history() if m["role"] == "user"]
        assert users == ["first", "second", "third"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_new_text_while_speaking_starts_clean_turn(self):
        tts = FakeTTS(chunks_per_sentence=5, delay=0.03)
        session, recorder = await start_session(make_config(busy_policy="interrupt"), tts=tts)

        first = await session.process_text("tell me something")
        await recorder.wait_for(EventType.AUDIO_CHUNK)
        second = await session.process_text("never mind")

        await recorder.wait_until(
            lambda: any(e.turn_id == second.turn_id for e in recorder.of_type(EventType.RESPONSE_DONE))
        )

        cancelled = recorder.of_type(EventType.RESPONSE_CANCELLED)
        assert [e.turn_id for e in cancelled] == [first.turn_id]
        assert cancelled[0].payload["state"] == "speaking"

        assert recorder.for_turn(second.turn_id)[0].type is EventType.TRANSCRIPTION_DONE
        after_cancel = recorder.events[recorder.events.index(cancelled[0]) + 1:]
        assert not [e for e in after_cancel if e.turn_id == first.turn_id]
        await session.stop()

    @pytest.mark.asyncio
    async def test_reject_policy_raises(self):
        session, recorder = await start_session(make_config(busy_policy="reject"), llm=FakeLLM(delay=0.05))

        first = await session.process_text("first question")
        with pytest.raises(StateError):
            await session.process_text("second question")

        done = await recorder.wait_for(EventType.RESPONSE_DONE)
        assert done[0].turn_id == first.turn_id
        assert done[0].payload["status"] == "completed"
        assert len([m for m in session.get_history() if m["role"] == "user"]) == 1
        await session.stop()

    @pytest.mark.asyncio
    async def test_cancel_returns_to_idle(self):
        session, recorder = await start_session(make_config(busy_policy="queue"), llm=FakeLLM(hang=True))

        await session.process_text("first question")
        await session.process_text("queued question")
        assert await session.interrupt() is True

        cancelled = await recorder.wait_for(EventType.RESPONSE_CANCELLED)
        assert cancelled[0].payload["reason"] == "cancel"
        assert session.turn_state is TurnState.IDLE
        # Cancel drops queued texts too.
        assert session.controller.queued_texts == 0
        assert await session.interrupt() is False
        await session.stop()

    @pytest.mark.asyncio
    async def test_turn_ids_are_monotonic(self):
        session, recorder = await start_session()
        for count, text in enumerate(("one", "two", "three"), start=1):
            await session.process_text(text)
            await recorder.wait_for(EventType.RESPONSE_DONE, count=count)
        assert [e.turn_id for e in recorder.of_type(EventType.RESPONSE_DONE)] == [1, 2, 3]
        await session.stop()


class TestProviderFailures:
    """Provider errors fail the turn, not the session."""

    @pytest.mark.asyncio
    async def test_llm_error_fails_turn(self):
        llm = FakeLLM(error=RuntimeError("upstream returned 500"))
        session, recorder = await start_session(llm=llm)

        turn = await session.process_text("hello")
        done = await recorder.wait_for(EventType.RESPONSE_DONE)

        error = recorder.of_type(EventType.ERROR)[0]
        assert error.turn_id == turn.turn_id
        assert error.payload["code"] == "provider_error"
        assert error.payload["phase"] == "llm"
        assert error.payload["provider"] == "fake_llm"
        assert "upstream returned 500" in error.payload["message"]
        assert error.payload["fatal"] is False
        assert done[0].payload["status"] == "errored"
        assert turn.state is TurnState.ERRORED
        assert recorder.types.index("error") < recorder.types.index("response.done")

        # The session keeps going.
        llm.error = None
        await session.process_text("hello again")
        await recorder.wait_for(EventType.RESPONSE_DONE, count=2)
        assert done_statuses(recorder) == ["errored", "completed"]
        assert session.get_metrics()["consecutive_failures"] == 0
        await session.stop()

    @pytest.mark.asyncio
    async def test_stt_error(self):
        session, recorder = await start_session(stt=FakeSTT(error=ProviderError("socket closed", phase="stt", provider="fake_stt")))
        await speak(session)
        await recorder.wait_for(EventType.RESPONSE_DONE)

        error = recorder.of_type(EventType.ERROR)[0]
        assert error.payload["phase"] == "stt"
        assert error.payload["message"] == "socket closed"
        assert session.get_history() == []
        await session.stop()

    @pytest.mark.asyncio
    async def test_stt_timeout(self):
        config = make_config(provider_timeout_s=0.2)
        session, recorder = await start_session(config, stt=FakeSTT(hang=True))
        await speak(session)
        await recorder.wait_for(EventType.RESPONSE_DONE)

        error = recorder.of_type(EventType.ERROR)[0]
        assert error.payload["phase"] == "stt"
        assert "Timed out" in error.payload["message"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_llm_timeout(self):
        config = make_config(provider_timeout_s=0.2)
        session, recorder = await start_session(config, llm=FakeLLM(hang=True))
        await session.process_text("hello")
        await recorder.wait_for(EventType.RESPONSE_DONE)

        error = recorder.of_type(EventType.ERROR)[0]
        assert error.payload["phase"] == "llm"
        assert "Timed out" in error.payload["message"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_tts_error_after_first_sentence(self):
        tts = FakeTTS(error=RuntimeError("voice unavailable"), fail_on="noon")
        session, recorder = await start_session(tts=tts)
        turn = await session.process_text("What time is it?")
        done = await recorder.wait_for(EventType.RESPONSE_DONE)

        error = recorder.of_type(EventType.ERROR)[0]
        assert error.payload["phase"] == "tts"
        assert error.payload["provider"] == "fake_tts"
        assert done[0].payload["status"] == "errored"
        assert turn.spoken_text == "Sure thing."
        # The unfinished reply is not committed.
        assert [m["role"] for m in session.get_history()] == ["user"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_consecutive_failures_close_session(self):
        config = make_config(max_consecutive_failures=1)
        session, recorder = await start_session(config, llm=FakeLLM(error=RuntimeError("boom")))

        await session.process_text("one")
        await recorder.wait_for(EventType.RESPONSE_DONE)
        assert recorder.of_type(EventType.ERROR)[0].payload["fatal"] is False

        await session.process_text("two")
        await recorder.wait_closed()

        errors = recorder.of_type(EventType.ERROR)
        assert errors[-1].payload["fatal"] is True
        closed = recorder.of_type(EventType.SESSION_CLOSED)
        assert closed[0].payload["reason"] == "fatal"
        assert session.state is SessionState.CLOSED
        assert session.fatal_error is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        config = make_config(max_consecutive_failures=1)
        llm = FakeLLM(error=RuntimeError("boom"))
        session, recorder = await start_session(config, llm=llm)

        await session.process_text("one")
        await recorder.wait_for(EventType.RESPONSE_DONE)
        llm.error = None
        await session.process_text("two")
        await recorder.wait_for(EventType.RESPONSE_DONE, count=2)
        llm.error = RuntimeError("boom")
        await session.process_text("three")
        await recorder.wait_for(EventType.RESPONSE_DONE, count=3)

        assert session.is_active
        assert done_statuses(recorder) == ["errored", "completed", "errored"]
        await session.stop()


class TestToolCalls:
    """LLM tool calling within a turn."""

    @pytest.mark.asyncio
    async def test_tool_round_trip(self):
        llm = FakeLLM(
            [
                [tool_call("get_current_time", {"timezone": "UTC"})],
                ["It is noon in London."],
            ]
        )
        session, recorder = await start_session(llm=llm)
        await session.process_text("What time is it in London?")
        done = await recorder.wait_for(EventType.RESPONSE_DONE)
        assert done[0].payload["status"] == "completed"

        call = recorder.of_type(EventType.TOOL_CALL)[0]
        assert call.payload == {"call_id": "call_1", "name": "get_current_time", "arguments": {"timezone": "UTC"}}
        result = recorder.of_type(EventType.TOOL_RESULT)[0]
        assert result.payload["is_error"] is False
        assert result.payload["result"]["timezone"] == "UTC"

        # The second round sees the exchange.
        replay = llm.calls[1]["messages"]
        assert replay[-2]["tool_calls"][0]["id"] == "call_1"
        assert replay[-1]["role"] == "tool"
        assert replay[-1]["tool_call_id"] == "call_1"
        assert json.loads(replay[-1]["content"])["timezone"] == "UTC"

        history = session.get_history()
        assert [m["role"] for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[1]["tool_calls"][0]["name"] == "get_current_time"
        assert history[-1]["content"] == "It is noon in London."
        await session.stop()

    @pytest.mark.asyncio
    async def test_tool_error_is_returned_to_llm(self):
        llm = FakeLLM(
            [
                [tool_call("get_current_time", {"timezone": "Mars/Olympus"})],
                ["I could not find that timezone."],
            ]
        )
        session, recorder = await start_session(llm=llm)
        await session.process_text("What time is it on Mars?")
        done = await recorder.wait_for(EventType.RESPONSE_DONE)

        result = recorder.of_type(EventType.TOOL_RESULT)[0]
        assert result.payload["is_error"] is True
        assert "Unknown timezone" in result.payload["result"]["error"]
        assert done[0].payload["status"] == "completed"
        assert "error" in json.loads(llm.calls[1]["messages"][-1]["content"])
        await session.stop()

    @pytest.mark.asyncio
    async def test_unknown_tool_is_an_error_result(self):
        llm = FakeLLM([[tool_call("launch_rocket")], ["I can't do that."]])
        session, recorder = await start_session(llm=llm)
        await session.process_text("Launch it")
        await recorder.wait_for(EventType.RESPONSE_DONE)

        result = recorder.of_type(EventType.TOOL_RESULT)[0]
        assert result.payload["is_error"] is True
        assert done_statuses(recorder) == ["completed"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_tool_limit_stops_offering_tools(self):
        config = make_config(max_tool_calls=1)
        llm = FakeLLM(
            [
                [tool_call("get_current_time", call_id="call_1")],
                ["Checking again. ", tool_call("get_current_time", call_id="call_2")],
            ]
        )
        session, recorder = await start_session(config, llm=llm)
        await session.process_text("What time is it?")
        done = await recorder.wait_for(EventType.RESPONSE_DONE)

        assert done[0].payload["status"] == "completed"
        assert llm.calls[0]["tools"] is not None
        assert llm.calls[1]["tools"] is None
        assert len(llm.calls) == 2
        assert [e.payload["call_id"] for e in recorder.of_type(EventType.TOOL_CALL)] == ["call_1"]
        assert session.get_history()[-1]["content"] == "Checking again."
        await session.stop()

    @pytest.mark.asyncio
    async def test_extra_calls_in_one_round_are_dropped(self):
        config = make_config(max_tool_calls=2)
        llm = FakeLLM(
            [
                [
                    tool_call("get_current_time", call_id="call_1"),
                    tool_call("get_current_time", call_id="call_2"),
                    tool_call("get_current_time", call_id="call_3"),
                ],
                ["All done now."],
            ]
        )
        session, recorder = await start_session(config, llm=llm)
        await session.process_text("Check three times")
        await recorder.wait_for(EventType.RESPONSE_DONE)

        assert [e.payload["call_id"] for e in recorder.of_type(EventType.TOOL_CALL)] == ["call_1", "call_2"]
        assert llm.calls[1]["tools"] is None
        tool_ids = [m["tool_call_id"] for m in session.get_history() if m["role"] == "tool"]
        assert tool_ids == ["call_1", "call_2"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_interrupt_keeps_completed_tool_exchange(self):
        llm = FakeLLM(
            [
                [tool_call("get_current_time", {"timezone": "UTC"})],
                ["It is noon right now. ", "Would you like anything else today?"],
            ]
        )
        tts = FakeTTS(chunks_per_sentence=5, delay=0.05)
        session, recorder = await start_session(llm=llm, tts=tts)
        await session.process_text("What time is it?")
        await recorder.wait_for(EventType.AUDIO_CHUNK)

        assert await session.interrupt() is True
        history = session.get_history()
        assert [m["role"] for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[-1]["interrupted"] is True
        assert history[-1]["content"] == "It is noon right now."
        await session.stop()


class TestTextTurn:
    """Plain text turns."""

    @pytest.mark.asyncio
    async def test_event_order(self):
        session, recorder = await start_session()
        turn = await session.process_text("What time is it?")
        await recorder.wait_for(EventType.TURN_METRICS)

        types = [e.type for e in recorder.for_turn(turn.turn_id)]
        assert types[0] is EventType.TRANSCRIPTION_DONE
        assert types[-2:] == [EventType.RESPONSE_DONE, EventType.TURN_METRICS]
        first_text = types.index(EventType.RESPONSE_TEXT_DELTA)
        first_audio = types.index(EventType.AUDIO_CHUNK)
        assert first_text < first_audio
        assert types.index(EventType.RESPONSE_TEXT_DONE) < types.index(EventType.RESPONSE_DONE)

        text = "".join(e.payload["text"] for e in recorder.of_type(EventType.RESPONSE_TEXT_DELTA))
        assert text == "Sure thing. It is almost noon right now."
        assert recorder.of_type(EventType.RESPONSE_TEXT_DONE)[0].payload["text"] == text
        await session.stop()

    @pytest.mark.asyncio
    async def test_llm_sees_history(self):
        llm = FakeLLM()
        session, recorder = await start_session(llm=llm)
        await session.process_text("first")
        await recorder.wait_for(EventType.RESPONSE_DONE)
        await session.process_text("second")
        await recorder.wait_for(EventType.RESPONSE_DONE, count=2)

        messages = llm.calls[1]["messages"]
        assert messages[0] == {"role": "system", "content": "You are a test assistant."}
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "second"
        await session.stop()

    @pytest.mark.asyncio
    async def test_sentences_overlap_generation(self):
        # TTS for the first sentence starts before the LLM finishes.
        llm = FakeLLM([["First sentence here. ", "Second ", "sentence ", "here."]], delay=0.05)
        tts = FakeTTS()
        session, recorder = await start_session(llm=llm, tts=tts)
        await session.process_text("go")
        await recorder.wait_for(EventType.AUDIO_CHUNK)
        assert recorder.of_type(EventType.RESPONSE_TEXT_DONE) == []
        await recorder.wait_for(EventType.RESPONSE_DONE)
        assert tts.sentences == ["First sentence here.", "Second sentence here."]
        await session.stop()
