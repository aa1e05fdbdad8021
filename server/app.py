"""
FastAPI server for the turnloop voice agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics (server-wide and per live session)
- WS /v1/realtime: One voice session per connection.
  Binary frames are raw PCM16 audio; text frames are JSON client messages.
  Every session event is sent back as a JSON text frame.
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.turnloop.config import get_config, init_config, ConfigError
from src.turnloop.errors import InputError, StateError
from src.turnloop.protocol import ClientMessageType, parse_client_message
from src.turnloop.providers import build_providers
from src.turnloop.session import VoiceSession, create_session
from src.turnloop.tools import create_default_registry


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_sessions: int = 0
    errors: int = 0
    sessions: Dict[str, VoiceSession] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_sessions": self.total_sessions,
            "active_sessions": len(self.sessions),
            "errors": self.errors,
            "sessions": {sid: s.get_metrics() for sid, s in self.sessions.items()},
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting turnloop server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        app.state.tools = create_default_registry(timeout_s=config.tool_timeout_s)

        if config.validate_models:
            from src.turnloop.providers.openai_llm import OpenAICompatibleLLM

            llm = OpenAICompatibleLLM(config, provider=config.llm_provider)
            try:
                await llm.validate_model()
            finally:
                await llm.close()

        logger.info(
            "Server ready",
            port=config.port,
            ws_path=config.ws_path,
            tools=app.state.tools.names,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    for session in list(metrics.sessions.values()):
        await session.stop(reason="server_shutdown")
    await app.state.tools.close()


app = FastAPI(
    title="Turnloop Voice Agent",
    description="Realtime voice agent: STT, LLM with tools and streaming TTS over WebSocket",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": len(metrics.sessions),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


async def forward_events(websocket: WebSocket, session: VoiceSession) -> None:
    """Send session events to the client until the session closes, then close the socket."""
    try:
        async for event in session.events():
            await websocket.send_text(event.to_json())
    except WebSocketDisconnect:
        logger.info("Client gone while sending events", session_id=session.session_id)
        return

    # The session ended on its own (fatal error or session.close): hang up.
    try:
        await websocket.close()
    except RuntimeError as e:
        logger.debug("WebSocket already closed", session_id=session.session_id, error=str(e))


async def handle_client_message(session: VoiceSession, raw_message: str) -> bool:
    """
    Dispatch one JSON client message.

    Returns:
        False if the client asked to close the session
    """
    try:
        message = parse_client_message(raw_message)
    except InputError as e:
        await session.report_error(e)
        return True

    if message.type is ClientMessageType.AUDIO_APPEND:
        await session.process_audio(message.audio)
    elif message.type is ClientMessageType.AUDIO_COMMIT:
        await session.commit_audio()
    elif message.type in (ClientMessageType.INPUT_TEXT, ClientMessageType.ITEM_CREATE):
        try:
            await session.process_text(message.text)
        except StateError as e:
            await session.report_error(e, phase="turn")
    elif message.type is ClientMessageType.RESPONSE_CANCEL:
        await session.interrupt()
    elif message.type is ClientMessageType.SESSION_CLOSE:
        await session.stop(reason="client")
        return False
    return True


@app.websocket("/v1/realtime")
async def realtime_endpoint(websocket: WebSocket) -> None:
    """
    Realtime voice WebSocket endpoint.

    Handles incoming audio and text, and streams back session events.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    config = get_config()
    provider_factory = getattr(websocket.app.state, "provider_factory", None) or build_providers
    session = None
    sender = None

    try:
        session = await create_session(
            config,
            getattr(websocket.app.state, "tools", None),
            providers=provider_factory(config),
        )
        metrics.total_sessions += 1
        metrics.sessions[session.session_id] = session
        sender = asyncio.create_task(forward_events(websocket, session))

        logger.info(
            "WebSocket connected",
            session_id=session.session_id,
            active_sessions=len(metrics.sessions),
        )

        while session.is_active:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("WebSocket disconnected", session_id=session.session_id)
                break

            try:
                if message.get("bytes") is not None:
                    await session.process_audio(message["bytes"])
                elif message.get("text") is not None:
                    if not await handle_client_message(session, message["text"]):
                        break
            except StateError:
                # Input raced with session teardown.
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session.session_id,
                    error=str(e),
                )
                metrics.errors += 1
                # Continue processing - don't crash on single message error
                continue

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", session_id=session.session_id if session else None)
    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if session is not None:
            await session.stop(reason="disconnect")
            metrics.sessions.pop(session.session_id, None)
        if sender is not None:
            try:
                await asyncio.wait_for(sender, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Event sender did not finish", session_id=session.session_id)

        metrics.active_connections -= 1

        logger.info(
            "Session ended",
            session_id=session.session_id if session else None,
            active_sessions=len(metrics.sessions),
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    # uvloop is faster where available (not on Windows).
    try:
        import uvloop  # noqa: F401
        loop = "uvloop"
    except ImportError:
        loop = "asyncio"

    logger.info("Starting server", host=config.host, port=config.port, loop=loop)

    uvicorn.run(
        "server.app:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        loop=loop,
        reload=False,
    )


if __name__ == "__main__":
    main()
