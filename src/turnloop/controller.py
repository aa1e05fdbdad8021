"""
Turn controller: the per-session turn state machine.

    idle -> listening -> thinking -> speaking -> completed (idle)
                 \\           \\          \\
                  +-----------+----------+--> interrupted | errored

Responsibilities:
- Create turns (at most one non-terminal turn at a time) and apply the busy policy
- Run STT -> LLM (+ tools) -> TTS for a turn as one task, with a single TTS
  worker fed through a bounded sentence queue so synthesis of sentence N
  overlaps generation of sentence N+1
- Bound every provider wait with a timeout
- Cancel in-flight work on interruption and retire the turn in the event sink
  before yielding, so no stale audio is emitted afterwards
- Commit history at phase boundaries and update metrics
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, List, Optional, Set, Tuple

import structlog

from src.turnloop.config import Config
from src.turnloop.errors import ProviderError, SessionFatalError, StateError, ToolExecutionError
from src.turnloop.events import EventSink, EventType
from src.turnloop.history import ConversationHistory, Message, ToolCallRecord
from src.turnloop.metrics import SessionMetrics
from src.turnloop.providers import ProviderSet
from src.turnloop.providers.types import LLMResult, TextDelta, ToolCallRequest
from src.turnloop.sentences import SentenceSegmenter
from src.turnloop.tools import ToolContext, ToolRegistry
from src.turnloop.turn import ToolCallResult, Turn, TurnError, TurnSource, TurnState

logger = structlog.get_logger(__name__)


@dataclass
class ActiveTurn:
    """Runtime state of the turn currently owned by the controller."""
    turn: Turn
    task: Optional[asyncio.Task] = None
    tts_task: Optional[asyncio.Task] = None
    tts_error: Optional[ProviderError] = None
    audio_queue: Optional[asyncio.Queue] = None
    audio_ended: asyncio.Event = field(default_factory=asyncio.Event)
    # Complete tool exchanges (assistant tool-call message + tool results) not yet in history.
    pending_messages: List[Message] = field(default_factory=list)
    # Assistant text produced after the last tool exchange.
    reply_text: str = ""


async def _anext(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


class TurnController:
    """Drives turns for one session."""

    def __init__(
        self,
        *,
        session_id: str,
        config: Config,
        providers: ProviderSet,
        history: ConversationHistory,
        metrics: SessionMetrics,
        sink: EventSink,
        tools: Optional[ToolRegistry] = None,
        on_fatal: Optional[Callable[[SessionFatalError], None]] = None,
    ):
        self.session_id = session_id
        self.config = config
        self.providers = providers
        self.history = history
        self.metrics = metrics
        self.sink = sink
        self.tools = tools
        self._on_fatal = on_fatal

        self._active: Optional[ActiveTurn] = None
        self._turn_counter = 0
        self._queued_texts: Deque[str] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        if self._active is None:
            return TurnState.IDLE
        return self._active.turn.state

    @property
    def current_turn(self) -> Optional[Turn]:
        return self._active.turn if self._active else None

    @property
    def is_active(self) -> bool:
        return self._active is not None

    @property
    def is_listening_audio(self) -> bool:
        return (
            self._active is not None
            and self._active.turn.source is TurnSource.AUDIO
            and self._active.turn.state is TurnState.LISTENING
            and not self._active.audio_ended.is_set()
        )

    @property
    def queued_texts(self) -> int:
        return len(self._queued_texts)

    # ------------------------------------------------------------------
    # Turn creation
    # ------------------------------------------------------------------

    def _new_turn(self, source: TurnSource) -> Turn:
        if self._active is not None:
            raise StateError(f"Turn {self._active.turn.turn_id} is still {self._active.turn.state.value}")
        self._turn_counter += 1
        return Turn(turn_id=self._turn_counter, source=source, state=TurnState.LISTENING)

    def _spawn(self, active: ActiveTurn) -> None:
        self._active = active
        task = asyncio.create_task(self._run_turn(active))
        active.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def begin_audio_turn(self, preroll: Optional[List[bytes]] = None) -> Turn:
        """Start a listening turn fed by audio frames (pre-roll first)."""
        if self._closed:
            raise StateError("Controller is shut down")
        turn = self._new_turn(TurnSource.AUDIO)
        active = ActiveTurn(turn=turn, audio_queue=asyncio.Queue())
        for frame in preroll or []:
            active.audio_queue.put_nowait(frame)
        self._spawn(active)
        logger.info("Turn started", session_id=self.session_id, turn_id=turn.turn_id, source="audio")
        return turn

    def feed_audio(self, frame: bytes) -> None:
        if self.is_listening_audio:
            self._active.audio_queue.put_nowait(frame)

    def end_audio_input(self) -> None:
        """Close the audio stream of the listening turn; STT finalizes from here."""
        if not self.is_listening_audio:
            return
        active = self._active
        active.audio_queue.put_nowait(None)
        active.audio_ended.set()
        active.turn.metrics.mark_stt_start()

    def _start_text_turn(self, text: str) -> Turn:
        turn = self._new_turn(TurnSource.TEXT)
        # No STT for text: the input is the final transcript.
        turn.input_transcript = text
        turn.state = TurnState.THINKING
        self.history.add_user_message(text, turn_id=turn.turn_id)
        self._spawn(ActiveTurn(turn=turn))
        logger.info("Turn started", session_id=self.session_id, turn_id=turn.turn_id, source="text")
        return turn

    async def submit_text(self, text: str) -> Optional[Turn]:
        """
        Start a text turn, applying the busy policy if a turn is active.

        Returns the new turn, or None if the text was queued.

        Raises:
            StateError: If a turn is active and the policy is "reject"
        """
        if self._closed:
            raise StateError("Controller is shut down")

        policy = self.config.busy_policy
        # Texts still waiting go first, even if no turn is active right now.
        if policy == "queue" and (self._active is not None or self._queued_texts):
            self._queued_texts.append(text)
            logger.info(
                "Text input queued",
                session_id=self.session_id,
                active_turn_id=self._active.turn.turn_id if self._active else None,
                queued=len(self._queued_texts),
            )
            self._on_turn_terminal()
            return None

        if self._active is not None:
            if policy == "reject":
                raise StateError(
                    f"Turn {self._active.turn.turn_id} is still {self._active.turn.state.value}"
                )
            await self.interrupt(reason="new_input", start_queued=False)
            if self._closed:
                raise StateError("Controller is shut down")

        return self._start_text_turn(text)

    def _on_turn_terminal(self) -> None:
        if self._closed or self._active is not None or not self._queued_texts:
            return
        self._start_text_turn(self._queued_texts.popleft())

    def _release(self, active: ActiveTurn) -> None:
        if self._active is active:
            self._active = None

    # ------------------------------------------------------------------
    # Interruption and shutdown
    # ------------------------------------------------------------------

    async def interrupt(self, *, reason: str, start_queued: bool = True) -> bool:
        """
        Interrupt the active turn.

        Args:
            reason: "barge_in", "new_input", "cancel" or "session_stop"
            start_queued: Start the next queued text turn afterwards

        Returns:
            True if a turn was interrupted
        """
        active = self._active
        if active is None or active.turn.is_terminal:
            return False

        turn = active.turn
        previous_state = turn.state
        # Retire before any await so nothing of this turn is emitted afterwards.
        self.sink.retire(turn.turn_id)
        turn.finish(TurnState.INTERRUPTED)
        self._release(active)
        self.providers.tts.cancel()

        await self._cancel_tasks(active.task, active.tts_task)

        # Keep complete tool exchanges and what the user actually heard.
        if active.pending_messages:
            self.history.add_messages(active.pending_messages)
            active.pending_messages = []
        if turn.spoken_text:
            self.history.add_assistant_message(turn.spoken_text, turn_id=turn.turn_id, interrupted=True)

        self.metrics.record_interrupted(turn.metrics)
        logger.info(
            "Turn interrupted",
            session_id=self.session_id,
            turn_id=turn.turn_id,
            reason=reason,
            state=previous_state.value,
            audio_chunks=turn.audio_chunks,
            spoken_chars=len(turn.spoken_text),
        )

        payload = {
            "reason": reason,
            "state": previous_state.value,
            "spoken_text": turn.spoken_text,
            "audio_chunks": turn.audio_chunks,
        }
        if self._closed:
            # Nobody may be reading any more; never wait for queue space on the way out.
            self.sink.emit_nowait(EventType.RESPONSE_CANCELLED, turn_id=turn.turn_id, payload=payload)
        else:
            await self.sink.emit(EventType.RESPONSE_CANCELLED, turn_id=turn.turn_id, payload=payload, force=True)

        if reason == "cancel":
            self._queued_texts.clear()
        if start_queued:
            self._on_turn_terminal()
        return True

    async def _cancel_tasks(self, *tasks: Optional[asyncio.Task]) -> None:
        current = asyncio.current_task()
        pending = [t for t in tasks if t is not None and t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel the active turn and any background turn work."""
        if self._closed:
            return
        self._closed = True
        self._queued_texts.clear()
        await self.interrupt(reason="session_stop", start_queued=False)
        await self._cancel_tasks(*list(self._tasks))

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _run_turn(self, active: ActiveTurn) -> None:
        turn = active.turn
        try:
            if turn.source is TurnSource.AUDIO:
                transcript = await self._transcribe(active)
                if not transcript:
                    await self._finish_empty(active)
                    return
                turn.state = TurnState.THINKING
                self.history.add_user_message(transcript, turn_id=turn.turn_id)
            else:
                await self.sink.emit(
                    EventType.TRANSCRIPTION_DONE,
                    turn_id=turn.turn_id,
                    payload={"text": turn.input_transcript},
                )

            await self._respond(active)
            await self._complete(active)
        except ProviderError as e:
            await self._fail(active, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Turn failed unexpectedly", session_id=self.session_id, turn_id=turn.turn_id)
            phase = "stt" if turn.state is TurnState.LISTENING else "llm"
            await self._fail(active, ProviderError(str(e) or type(e).__name__, phase=phase, provider="internal"))

    async def _guarded(
        self,
        stream: AsyncIterator[Any],
        *,
        phase: str,
        provider: str,
        ready: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Any]:
        """
        Iterate a provider stream with a per-item timeout.

        When `ready` is given the timeout only runs once it is set (STT waits
        for the end of audio input before its clock starts). Anything the
        provider raises other than cancellation becomes a ProviderError.
        """
        timeout = self.config.provider_timeout_s
        iterator = stream.__aiter__()
        try:
            while True:
                step = asyncio.ensure_future(_anext(iterator))
                try:
                    if ready is not None and not ready.is_set():
                        gate = asyncio.ensure_future(ready.wait())
                        try:
                            await asyncio.wait({step, gate}, return_when=asyncio.FIRST_COMPLETED)
                        finally:
                            gate.cancel()
                    if step.done():
                        item = step.result()
                    else:
                        item = await asyncio.wait_for(step, timeout=timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    raise ProviderError(
                        f"Timed out after {timeout}s", phase=phase, provider=provider
                    ) from e
                except asyncio.CancelledError:
                    step.cancel()
                    await asyncio.gather(step, return_exceptions=True)
                    raise
                except ProviderError:
                    raise
                except Exception as e:
                    raise ProviderError(str(e) or type(e).__name__, phase=phase, provider=provider) from e
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _audio_source(self, active: ActiveTurn) -> AsyncIterator[bytes]:
        while True:
            frame = await active.audio_queue.get()
            if frame is None:
                return
            yield frame

    async def _transcribe(self, active: ActiveTurn) -> str:
        turn = active.turn
        stt = self.providers.stt
        final: Optional[str] = None

        stream = self._guarded(
            stt.transcribe(self._audio_source(active)),
            phase="stt",
            provider=stt.name,
            ready=active.audio_ended,
        )
        async with aclosing(stream):
            async for delta in stream:
                if delta.is_final:
                    final = (delta.text or "").strip()
                    break
                turn.input_transcript = delta.text
                await self.sink.emit(
                    EventType.TRANSCRIPTION_DELTA,
                    turn_id=turn.turn_id,
                    payload={"text": delta.text},
                )

        if final is None:
            raise ProviderError("Transcription ended without a final transcript", phase="stt", provider=stt.name)

        turn.input_transcript = final
        turn.metrics.mark_stt_end()
        await self.sink.emit(EventType.TRANSCRIPTION_DONE, turn_id=turn.turn_id, payload={"text": final})
        return final

    def _tool_definitions(self, tool_calls_used: int) -> Optional[List[dict]]:
        if self.tools is None or len(self.tools) == 0:
            return None
        if tool_calls_used >= self.config.max_tool_calls:
            return None
        return self.tools.definitions()

    async def _dispatch_sentence(self, active: ActiveTurn, queue: asyncio.Queue, sentence: str) -> None:
        if active.tts_error is not None:
            raise active.tts_error
        turn = active.turn
        if turn.state is TurnState.THINKING:
            turn.state = TurnState.SPEAKING
            turn.metrics.mark_tts_start()
        await queue.put(sentence)

    async def _respond(self, active: ActiveTurn) -> None:
        """LLM phase (with tool rounds) feeding the TTS worker; returns when all audio is out."""
        turn = active.turn
        segmenter = SentenceSegmenter(max_chars=self.config.sentence_max_chars)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.tts_queue_size)
        active.tts_task = asyncio.create_task(self._tts_worker(active, queue))

        messages = self.history.get_messages()
        tool_calls_used = 0
        turn.metrics.mark_llm_start()

        try:
            while True:
                tools = self._tool_definitions(tool_calls_used)
                round_text, calls = await self._generate_round(active, messages, tools, segmenter, queue)

                if not calls:
                    active.reply_text += round_text
                    break

                if tools is None:
                    logger.warning(
                        "Ignoring tool calls beyond the per-turn limit",
                        session_id=self.session_id,
                        turn_id=turn.turn_id,
                        tools=[c.name for c in calls],
                    )
                    active.reply_text += round_text
                    break

                # Text said before the tool call is spoken now, not after the tool returns.
                tail = segmenter.flush()
                if tail:
                    await self._dispatch_sentence(active, queue, tail)

                remaining = self.config.max_tool_calls - tool_calls_used
                if len(calls) > remaining:
                    logger.warning(
                        "Dropping tool calls beyond the per-turn limit",
                        session_id=self.session_id,
                        turn_id=turn.turn_id,
                        dropped=[c.name for c in calls[remaining:]],
                    )
                    calls = calls[:remaining]

                exchange = await self._run_tools(active, calls, round_text)
                tool_calls_used += len(calls)
                active.pending_messages.extend(exchange)
                messages = messages + [m.to_openai() for m in exchange]

            tail = segmenter.flush()
            if tail:
                await self._dispatch_sentence(active, queue, tail)

            turn.metrics.mark_llm_end()
            if active.pending_messages:
                self.history.add_messages(active.pending_messages)
                active.pending_messages = []
            await self.sink.emit(
                EventType.RESPONSE_TEXT_DONE,
                turn_id=turn.turn_id,
                payload={"text": turn.output_text},
            )

            await queue.put(None)
            await active.tts_task
            if active.tts_error is not None:
                raise active.tts_error
            turn.metrics.mark_tts_end()
        finally:
            if not active.tts_task.done():
                active.tts_task.cancel()

    async def _generate_round(
        self,
        active: ActiveTurn,
        messages: List[dict],
        tools: Optional[List[dict]],
        segmenter: SentenceSegmenter,
        queue: asyncio.Queue,
    ) -> Tuple[str, List[ToolCallRequest]]:
        """Stream one LLM round; text goes out as it arrives, tool calls are collected."""
        turn = active.turn
        llm = self.providers.llm
        round_text = ""
        calls: List[ToolCallRequest] = []

        stream = self._guarded(llm.generate(messages, tools), phase="llm", provider=llm.name)
        async with aclosing(stream):
            async for item in stream:
                if isinstance(item, TextDelta):
                    if not item.text:
                        continue
                    turn.metrics.mark_llm_first_token()
                    round_text += item.text
                    turn.output_text += item.text
                    await self.sink.emit(
                        EventType.RESPONSE_TEXT_DELTA,
                        turn_id=turn.turn_id,
                        payload={"text": item.text},
                    )
                    for sentence in segmenter.feed(item.text):
                        await self._dispatch_sentence(active, queue, sentence)
                elif isinstance(item, ToolCallRequest):
                    calls.append(item)
                elif isinstance(item, LLMResult):
                    turn.metrics.prompt_tokens += item.usage.prompt_tokens
                    turn.metrics.completion_tokens += item.usage.completion_tokens

        return round_text, calls

    async def _run_tools(
        self,
        active: ActiveTurn,
        calls: List[ToolCallRequest],
        round_text: str,
    ) -> List[Message]:
        """Execute one round of tool calls; returns the exchange to replay to the LLM."""
        turn = active.turn
        assistant = Message(
            role="assistant",
            content=round_text,
            turn_id=turn.turn_id,
            tool_calls=[ToolCallRecord(id=c.id, name=c.name, arguments=c.arguments) for c in calls],
        )
        results: List[Message] = []

        for call in calls:
            await self.sink.emit(
                EventType.TOOL_CALL,
                turn_id=turn.turn_id,
                payload={"call_id": call.id, "name": call.name, "arguments": call.arguments},
            )
            result, is_error = await self._execute_tool(turn, call)
            turn.tool_calls.append(
                ToolCallResult(id=call.id, name=call.name, arguments=call.arguments, result=result, is_error=is_error)
            )
            turn.metrics.tool_calls += 1
            await self.sink.emit(
                EventType.TOOL_RESULT,
                turn_id=turn.turn_id,
                payload={"call_id": call.id, "name": call.name, "result": result, "is_error": is_error},
            )
            results.append(
                Message(
                    role="tool",
                    content=json.dumps(result, default=str),
                    turn_id=turn.turn_id,
                    tool_call_id=call.id,
                    name=call.name,
                )
            )

        return [assistant, *results]

    async def _execute_tool(self, turn: Turn, call: ToolCallRequest) -> Tuple[Any, bool]:
        if self.tools is None:
            return {"error": f"Unknown tool '{call.name}'"}, True
        try:
            result = await self.tools.execute(
                call.name,
                call.raw_arguments or call.arguments,
                ToolContext(session_id=self.session_id, turn_id=turn.turn_id),
            )
            return result, False
        except ToolExecutionError as e:
            logger.warning(
                "Tool call failed",
                session_id=self.session_id,
                turn_id=turn.turn_id,
                tool=call.name,
                error=e.message,
            )
            return {"error": e.message}, True

    async def _tts_worker(self, active: ActiveTurn, queue: asyncio.Queue) -> None:
        """Synthesize queued sentences one at a time, in dispatch order."""
        while True:
            sentence = await queue.get()
            if sentence is None:
                return
            if active.tts_error is not None:
                # Keep draining so the producer never blocks on a dead worker.
                continue
            try:
                await self._speak(active, sentence)
            except ProviderError as e:
                active.tts_error = e

    async def _speak(self, active: ActiveTurn, sentence: str) -> None:
        turn = active.turn
        tts = self.providers.tts
        started = False
        stream = self._guarded(tts.synthesize(sentence), phase="tts", provider=tts.name)
        async with aclosing(stream):
            async for chunk in stream:
                if not chunk.audio_bytes:
                    continue
                if not started:
                    turn.append_spoken(sentence)
                    started = True
                turn.metrics.mark_tts_first_audio()
                turn.audio_chunks += 1
                await self.sink.emit(
                    EventType.AUDIO_CHUNK,
                    turn_id=turn.turn_id,
                    payload={"sample_rate": chunk.sample_rate},
                    audio=chunk.audio_bytes,
                )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _finish_empty(self, active: ActiveTurn) -> None:
        turn = active.turn
        turn.metrics.mark_stt_end()
        turn.finish(TurnState.COMPLETED)
        self._release(active)
        self.metrics.record_empty(turn.metrics)
        logger.info("Empty transcript, turn ended", session_id=self.session_id, turn_id=turn.turn_id)
        await self.sink.emit(EventType.RESPONSE_DONE, turn_id=turn.turn_id, payload={"status": "empty"})
        self._on_turn_terminal()

    async def _complete(self, active: ActiveTurn) -> None:
        turn = active.turn
        reply = active.reply_text.strip()
        if reply:
            self.history.add_assistant_message(reply, turn_id=turn.turn_id)
        turn.finish(TurnState.COMPLETED)
        self._release(active)
        self.metrics.record_completed(turn.metrics)

        logger.info(
            "Turn completed",
            session_id=self.session_id,
            turn_id=turn.turn_id,
            stt_ms=round(turn.metrics.stt_ms, 2),
            llm_first_token_ms=round(turn.metrics.llm_first_token_ms, 2),
            llm_total_ms=round(turn.metrics.llm_total_ms, 2),
            tts_first_audio_ms=round(turn.metrics.tts_first_audio_ms, 2),
            tts_total_ms=round(turn.metrics.tts_total_ms, 2),
            total_turn_ms=round(turn.metrics.total_turn_ms, 2),
            tool_calls=turn.metrics.tool_calls,
        )

        await self.sink.emit(
            EventType.RESPONSE_DONE,
            turn_id=turn.turn_id,
            payload={
                "status": "completed",
                "text": turn.output_text,
                "audio_chunks": turn.audio_chunks,
                "tool_calls": len(turn.tool_calls),
            },
        )
        await self.sink.emit(EventType.TURN_METRICS, turn_id=turn.turn_id, payload=turn.metrics.to_dict())
        self._on_turn_terminal()

    async def _fail(self, active: ActiveTurn, error: ProviderError) -> None:
        turn = active.turn
        if turn.is_terminal:
            return

        turn.error = TurnError(phase=error.phase, provider=error.provider, message=error.message)
        turn.finish(TurnState.ERRORED)
        self._release(active)
        # The failing phase's output never reaches history.
        active.pending_messages = []
        failures = self.metrics.record_errored(turn.metrics)
        fatal = failures > self.config.max_consecutive_failures

        self.providers.tts.cancel()
        await self._cancel_tasks(active.tts_task)

        logger.error(
            "Turn failed",
            session_id=self.session_id,
            turn_id=turn.turn_id,
            phase=error.phase,
            provider=error.provider,
            error=error.message,
            consecutive_failures=failures,
            fatal=fatal,
        )

        payload = error.to_payload()
        payload["fatal"] = fatal
        await self.sink.emit(EventType.ERROR, turn_id=turn.turn_id, payload=payload)
        await self.sink.emit(EventType.RESPONSE_DONE, turn_id=turn.turn_id, payload={"status": "errored"})

        if fatal:
            fatal_error = SessionFatalError(
                f"{failures} consecutive turn failures (limit {self.config.max_consecutive_failures})",
                cause=error,
            )
            if self._on_fatal is not None:
                self._on_fatal(fatal_error)
            return

        self._on_turn_terminal()
