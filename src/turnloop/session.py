"""
Voice session: one conversation over one transport connection.

Owns the turn controller, conversation history, metrics, VAD, provider
adapters and event sink. All input handling is serialized by one asyncio.Lock,
so transitions never interleave; the turn itself runs as a background task.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

import structlog

from src.turnloop.audio import frame_size_bytes, is_valid_pcm16
from src.turnloop.config import Config, get_config
from src.turnloop.controller import TurnController
from src.turnloop.errors import InputError, SessionFatalError, StateError, TurnloopError
from src.turnloop.events import Event, EventSink, EventType
from src.turnloop.history import ConversationHistory
from src.turnloop.metrics import SessionMetrics
from src.turnloop.providers import ProviderSet, build_providers
from src.turnloop.tools import ToolRegistry
from src.turnloop.turn import Turn, TurnState
from src.turnloop.vad import EnergyVAD, VADEvent

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class VoiceSession:
    """
    A realtime voice conversation.

    Usage:
        session = await create_session(config, tools)
        asyncio.create_task(forward(session.events()))
        await session.process_audio(frame)
        await session.process_text("What time is it?")
        await session.stop()
    """

    def __init__(
        self,
        config: Config,
        providers: ProviderSet,
        tools: Optional[ToolRegistry] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config
        self.providers = providers
        self.tools = tools
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self.created_at = time.time()

        self.sink = EventSink(self.session_id, maxsize=config.event_queue_size)
        self.history = ConversationHistory(
            max_messages=config.max_history_messages,
            system_prompt=config.system_prompt,
        )
        self.metrics = SessionMetrics(session_id=self.session_id)
        self.vad = EnergyVAD.from_config(config)
        self.controller = TurnController(
            session_id=self.session_id,
            config=config,
            providers=providers,
            history=self.history,
            metrics=self.metrics,
            sink=self.sink,
            tools=tools,
            on_fatal=self._on_fatal,
        )

        # Frames seen before speech start is confirmed, so the onset reaches STT.
        # Sized in bytes so it covers the same duration whatever frame size the client sends.
        self._preroll: Deque[bytes] = deque()
        self._preroll_bytes = 0
        self._preroll_max_bytes = frame_size_bytes(
            config.sample_rate, config.preroll_ms + config.vad_min_speech_ms
        )

        self._lock = asyncio.Lock()
        self._state = SessionState.ACTIVE
        self._started = False
        self._closed_event = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None
        self.fatal_error: Optional[SessionFatalError] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def turn_state(self) -> TurnState:
        return self.controller.state

    @property
    def current_turn(self) -> Optional[Turn]:
        return self.controller.current_turn

    def _remember(self, frame: bytes) -> None:
        self._preroll.append(frame)
        self._preroll_bytes += len(frame)
        while len(self._preroll) > 1 and self._preroll_bytes - len(self._preroll[0]) >= self._preroll_max_bytes:
            self._preroll_bytes -= len(self._preroll.popleft())

    def _ensure_active(self) -> None:
        if self._state is not SessionState.ACTIVE:
            raise StateError(f"Session {self.session_id} is {self._state.value}")

    async def start(self) -> None:
        """Announce the session. Safe to call more than once."""
        if self._started:
            return
        self._started = True
        await self.sink.emit(
            EventType.SESSION_CREATED,
            payload={
                "sample_rate": self.config.sample_rate,
                "stt_provider": self.config.stt_provider,
                "llm_provider": self.config.llm_provider,
                "tts_provider": self.config.tts_provider,
                "busy_policy": self.config.busy_policy,
                "tools": self.tools.names if self.tools else [],
            },
        )
        logger.info(
            "Session started",
            session_id=self.session_id,
            stt=self.providers.stt.name,
            llm=self.providers.llm.name,
            tts=self.providers.tts.name,
        )

    async def report_error(self, error: TurnloopError, *, phase: str = "input") -> None:
        """Report a rejected or dropped input; the session carries on."""
        logger.warning("Input dropped", session_id=self.session_id, code=error.code, error=error.message)
        payload = error.to_payload()
        payload.update({"phase": phase, "fatal": False})
        await self.sink.emit(EventType.ERROR, payload=payload)

    async def process_audio(self, frame: bytes) -> None:
        """
        Feed one inbound PCM16 frame.

        Invalid frames are dropped and reported as an `error` event. Speech
        onset starts a listening turn (interrupting any response in progress);
        speech end closes the turn's audio input.
        """
        self._ensure_active()
        if not is_valid_pcm16(frame):
            await self.report_error(InputError("Audio frame must be non-empty 16-bit PCM"))
            return

        frame = bytes(frame)
        async with self._lock:
            if not self.is_active:
                return

            vad_event = self.vad.observe(frame)

            if vad_event is VADEvent.SPEECH_STARTED:
                await self.sink.emit(
                    EventType.SPEECH_STARTED,
                    payload={"score": round(self.vad.last_score, 4)},
                )
                if self.controller.is_active:
                    await self.controller.interrupt(reason="barge_in", start_queued=False)
                preroll = list(self._preroll)
                self._preroll.clear()
                self._preroll_bytes = 0
                self.controller.begin_audio_turn(preroll + [frame])
                return

            if self.controller.is_listening_audio:
                self.controller.feed_audio(frame)
            else:
                self._remember(frame)

            if vad_event is VADEvent.SPEECH_ENDED:
                await self.sink.emit(EventType.SPEECH_STOPPED)
                self.controller.end_audio_input()

    async def commit_audio(self) -> None:
        """End audio input now instead of waiting for trailing silence."""
        self._ensure_active()
        async with self._lock:
            if self.controller.is_listening_audio:
                self.vad.reset()
                await self.sink.emit(EventType.SPEECH_STOPPED, payload={"committed": True})
                self.controller.end_audio_input()

    async def process_text(self, text: str) -> Optional[Turn]:
        """
        Start a text turn.

        Returns the new turn, or None if the text was queued or dropped.

        Raises:
            StateError: If a turn is active and the busy policy is "reject",
                or the session is closed
        """
        self._ensure_active()
        if not isinstance(text, str) or not text.strip():
            await self.report_error(InputError("Text input must be a non-empty string"))
            return None

        async with self._lock:
            self._ensure_active()
            return await self.controller.submit_text(text.strip())

    async def interrupt(self) -> bool:
        """Cancel the active turn and return to idle."""
        self._ensure_active()
        async with self._lock:
            return await self.controller.interrupt(reason="cancel", start_queued=False)

    def get_history(self) -> List[Dict[str, Any]]:
        return self.history.snapshot()

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.metrics.to_dict()
        metrics.update(
            {
                "state": self._state.value,
                "turn_state": self.controller.state.value,
                "current_turn": self.current_turn.to_dict() if self.current_turn else None,
                "dropped_audio_chunks": self.sink.dropped_audio,
            }
        )
        return metrics

    def events(self) -> AsyncIterator[Event]:
        """Outbound events in emission order; ends after the session stops."""
        return self.sink.events()

    def _on_fatal(self, error: SessionFatalError) -> None:
        self.fatal_error = error
        logger.error(
            "Session fatal error",
            session_id=self.session_id,
            error=error.message,
            cause=str(error.cause) if error.cause else None,
        )
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop(reason="fatal"))

    async def stop(self, reason: str = "client") -> None:
        """
        Tear the session down. Idempotent and safe mid-turn.

        Cancels the active turn, closes the provider adapters, emits
        `session.closed` exactly once and closes the event sink.
        """
        if self._state is not SessionState.ACTIVE:
            await self._closed_event.wait()
            return

        self._state = SessionState.CLOSING
        logger.info("Stopping session", session_id=self.session_id, reason=reason)

        try:
            await self.controller.shutdown()
            await self.providers.close()
        finally:
            self.metrics.end_time = time.time()
            self.sink.emit_nowait(
                EventType.SESSION_CLOSED,
                payload={"reason": reason, "metrics": self.metrics.to_dict()},
            )
            self.sink.close()
            self._state = SessionState.CLOSED
            self._closed_event.set()

        logger.info("Session stopped", session_id=self.session_id, metrics=self.metrics.to_dict())


async def create_session(
    config: Optional[Config] = None,
    tools: Optional[ToolRegistry] = None,
    *,
    providers: Optional[ProviderSet] = None,
    session_id: Optional[str] = None,
) -> VoiceSession:
    """
    Create and start a new voice session.

    Args:
        config: Configuration (defaults to the process config)
        tools: Tool registry shared by the server
        providers: Adapters to use instead of the configured vendors

    Returns:
        Started VoiceSession
    """
    config = config or get_config()
    session = VoiceSession(
        config=config,
        providers=providers or build_providers(config),
        tools=tools,
        session_id=session_id,
    )
    await session.start()
    return session
