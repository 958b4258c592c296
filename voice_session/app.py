"""
Voice Session Service FastAPI Application

One WebSocket per conversation. Binary frames carry PCM audio from the
microphone, text frames carry JSON control messages; the server answers
with transcripts, sentence audio and text fallbacks, in order.

Endpoints:
    WS  /websocket - Voice session (alias: /ws)
    GET /health    - Health check
    GET /          - Service info

Run:
    python -m voice_session.app
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import SessionConfig
from .inference import InferenceInvocation
from .models import HealthResponse
from .providers import Providers, TranscriptionParams, build_providers
from .session_controller import SessionController
from .structured_logger import StructuredLogger
from .transcription_link import TranscriptionLink

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

config: Optional[SessionConfig] = None
providers: Optional[Providers] = None
active_sessions: Dict[str, SessionController] = {}
event_log = StructuredLogger()
app_start_time = time.time()


class WebSocketSink:
    """Outbound sink writing JSON frames to a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_json(message)


def build_session(
    session_id: str,
    sink,
    cfg: SessionConfig,
    capability: Providers,
) -> SessionController:
    """Wire a SessionController from config and the shared providers."""
    params = TranscriptionParams(
        sample_rate=cfg.stt_sample_rate,
        channels=cfg.stt_channels,
        encoding=cfg.stt_encoding,
        language=cfg.stt_language,
        model=cfg.stt_model,
    )
    link = TranscriptionLink(
        capability.transcription,
        params,
        session_id=session_id,
        connect_timeout=cfg.stt_connect_timeout,
        reconnect_delay=cfg.stt_reconnect_delay,
        max_reconnect_attempts=cfg.stt_max_reconnect_attempts,
        audio_backlog_chunks=cfg.stt_audio_backlog_chunks,
        event_log=event_log,
    )
    inference = InferenceInvocation(
        capability.inference,
        model=cfg.llm_model,
        system_prompt=cfg.system_prompt,
        event_log=event_log,
    )
    return SessionController(
        session_id=session_id,
        sink=sink,
        link=link,
        synthesis=capability.synthesis,
        inference=inference,
        config=cfg,
        event_log=event_log,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for application startup/shutdown"""
    global config, providers, app_start_time

    logger.info("=" * 70)
    logger.info("🚀 Starting Voice Session Service")
    logger.info("=" * 70)

    config = SessionConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())
    providers = build_providers(config)
    app_start_time = time.time()
    logger.info(f"✅ Providers ready: {providers.names()}")

    yield

    logger.info("🛑 Shutting down Voice Session Service")
    for controller in list(active_sessions.values()):
        await controller.close()
    active_sessions.clear()
    await providers.close()


app = FastAPI(
    title="Voice Session Service",
    description="Real-time STT -> LLM -> TTS voice conversation over WebSocket",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {
        "service": "voice-session",
        "version": "1.0.0",
        "endpoints": {
            "websocket": "/websocket",
            "health": "/health",
        },
    }


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy" if providers is not None else "starting",
        active_sessions=len(active_sessions),
        providers=providers.names() if providers else {},
        mock_mode=bool(config and config.mock_providers),
        uptime_seconds=time.time() - app_start_time,
    )


@app.websocket("/websocket")
@app.websocket("/ws")
async def voice_session(websocket: WebSocket):
    """
    Voice session.

    Inbound:
        bytes: PCM audio (16kHz mono linear16 by default)
        text:  {"type": "cmd", "data": "clear"}

    Outbound:
        {"type": "text", "text": ..., "interim": bool}  transcripts
        {"type": "audio", "text": ..., "audio": base64}  sentence audio
        {"type": "text", "text": "[TTS Error] ..."}      synthesis fallback
    """
    await websocket.accept()

    session_id = f"session_{uuid.uuid4().hex[:12]}"
    controller = build_session(session_id, WebSocketSink(websocket), config, providers)
    active_sessions[session_id] = controller
    logger.info(f"[{session_id}] 🔌 Client connected ({len(active_sessions)} active)")

    client_gone = False
    try:
        await controller.start()

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive(), timeout=config.session_idle_timeout)
            except asyncio.TimeoutError:
                logger.info(f"[{session_id}] ⏱️ Idle for {config.session_idle_timeout:.0f}s, closing")
                break

            if data.get("type") == "websocket.disconnect":
                client_gone = True
                break

            if data.get("bytes") is not None:
                await controller.handle_audio(data["bytes"])
            elif data.get("text") is not None:
                await controller.handle_text(data["text"])

    except WebSocketDisconnect:
        client_gone = True
    except Exception as e:
        logger.error(f"[{session_id}] Session error: {e}", exc_info=True)
    finally:
        await controller.close()
        active_sessions.pop(session_id, None)
        if not client_gone:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"[{session_id}] WebSocket already closed: {e}")
        logger.info(f"[{session_id}] Client disconnected ({len(active_sessions)} active)")


if __name__ == "__main__":
    import uvicorn

    settings = SessionConfig.from_env()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
