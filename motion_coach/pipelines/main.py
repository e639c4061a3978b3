"""
FastAPI entry point for the Motion Coach backend.

Endpoints:
    GET /health
        Liveness check; reports whether the advisory service is configured.

    WS /ws/session
        One live coaching session per connection.  The client streams
        ``motion`` readings and ``pose`` snapshots and reports speech
        playback results; the server pushes session events (state changes,
        tips, window summaries, narrations) and ``speak`` requests.

Run:
    cd <project_root>
    uvicorn motion_coach.pipelines.main:app --host 0.0.0.0 --port 8000 --reload
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from motion_coach.agents.advisory_service import build_advisory_service
from motion_coach.agents.coaching_agent import CoachingAgent
from motion_coach.agents.state import Keypoint, PoseSummary
from motion_coach.agents.tip_generator import AdvisoryTipGenerator
from motion_coach.audio.dispatcher import (
    AudioDispatcher,
    SpeechCallbacks,
    SpeechEngine,
    SpeechOptions,
)
from motion_coach.pipelines.config import SessionSettings, load_session_settings
from motion_coach.pipelines.sampler import QueueMotionSource
from motion_coach.pipelines.session import CoachingSession, SessionScheduler
from motion_coach.pipelines.utils import make_rng

logger = logging.getLogger("motion_coach")
logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(name)s | %(message)s")


# ============================================================================
# Pydantic message models
# ============================================================================

class MotionMessage(BaseModel):
    type: Literal["motion"]
    x: float
    y: float
    z: float


class PoseMessage(BaseModel):
    type: Literal["pose"]
    keypoints: list[Keypoint] = Field(default_factory=list)
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class SpeechMessage(BaseModel):
    type: Literal["speech"]
    event: Literal["start", "done", "stopped", "error"]
    error: Optional[str] = None


class StopMessage(BaseModel):
    type: Literal["stop"]


CLIENT_MESSAGES = {
    "motion": MotionMessage,
    "pose": PoseMessage,
    "speech": SpeechMessage,
    "stop": StopMessage,
}


# ============================================================================
# Speech over the socket
# ============================================================================

class WebSocketSpeechEngine(SpeechEngine):
    """Asks the client to speak; the client reports playback events back."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connected = True
        self._callbacks: Optional[SpeechCallbacks] = None

    async def speak(self, text: str, options: SpeechOptions, callbacks: SpeechCallbacks) -> None:
        if not self.connected:
            raise RuntimeError("client disconnected")
        self._callbacks = callbacks
        await self.websocket.send_json({
            "type": "speak",
            "text": text,
            "options": options.model_dump(),
        })

    async def stop(self) -> None:
        callbacks, self._callbacks = self._callbacks, None
        try:
            if self.connected:
                await self.websocket.send_json({"type": "stop_speaking"})
        finally:
            if callbacks is not None:
                callbacks.on_stopped()

    def handle_client_event(self, message: SpeechMessage) -> None:
        callbacks = self._callbacks
        if callbacks is None:
            return
        if message.event == "start":
            callbacks.on_start()
            return
        self._callbacks = None
        if message.event == "done":
            callbacks.on_done()
        elif message.event == "stopped":
            callbacks.on_stopped()
        else:
            callbacks.on_error(RuntimeError(message.error or "client speech error"))


# ============================================================================
# App lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load session settings and the advisory service at startup."""
    logger.info("Starting Motion Coach backend …")
    app.state.settings = load_session_settings()
    app.state.advisory_service = build_advisory_service()
    logger.info(
        "Server is ready (advisory service: %s).",
        "configured" if app.state.advisory_service else "fallback only",
    )
    yield
    logger.info("Shutting down.")


app = FastAPI(
    title="Motion Coach API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS for browser-based clients
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Health-check
# ============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "advisory_service": getattr(app.state, "advisory_service", None) is not None,
    }


# ============================================================================
# Live session
# ============================================================================

def parse_client_message(data: object) -> BaseModel:
    """
    Validate a client message against its model.

    Raises:
        ValueError: If the message is not a JSON object or its type is unknown.
        pydantic.ValidationError: If the payload is malformed.
    """
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    model = CLIENT_MESSAGES.get(data.get("type"))
    if model is None:
        raise ValueError(f"unknown message type: {data.get('type')!r}")
    return model(**data)


async def _forward_events(websocket: WebSocket, session: CoachingSession) -> None:
    while True:
        event = await session.events.get()
        await websocket.send_json(event.model_dump(mode="json"))


async def _flush_events(websocket: WebSocket, session: CoachingSession) -> None:
    while not session.events.empty():
        event = session.events.get_nowait()
        await websocket.send_json(event.model_dump(mode="json"))


@app.websocket("/ws/session")
async def session_socket(websocket: WebSocket):
    await websocket.accept()

    settings: SessionSettings = getattr(app.state, "settings", None) or SessionSettings()
    service = getattr(app.state, "advisory_service", None)
    source = QueueMotionSource()
    engine = WebSocketSpeechEngine(websocket)
    session = CoachingSession(
        source=source,
        generator=AdvisoryTipGenerator(service, rng=make_rng(settings.random_seed)),
        dispatcher=AudioDispatcher(engine, settings.min_speak_interval_ms),
        agent=CoachingAgent(service),
        settings=settings,
    )
    scheduler = SessionScheduler(session)
    await scheduler.start()
    forwarder = asyncio.create_task(_forward_events(websocket, session))
    logger.info("Session socket opened")

    stopped_by_client = False
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_client_message(json.loads(raw))
            except (ValueError, ValidationError) as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})
                continue

            if isinstance(message, MotionMessage):
                source.push(message.x, message.y, message.z)
            elif isinstance(message, PoseMessage):
                session.pose_feed.update(PoseSummary.from_keypoints(
                    message.keypoints,
                    timestamp=session.clock(),
                    confidence_threshold=message.confidence_threshold,
                ))
            elif isinstance(message, SpeechMessage):
                engine.handle_client_event(message)
            else:
                stopped_by_client = True
                break
    except WebSocketDisconnect:
        logger.info("Session socket disconnected")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        if stopped_by_client:
            await scheduler.stop()
            await _flush_events(websocket, session)
            await websocket.close()
        else:
            # Client is gone; nothing can be sent any more
            engine.connected = False
            await scheduler.stop()
        logger.info("Session stats: %s", session.get_stats())

