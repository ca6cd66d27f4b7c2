"""
server.py — Speaking Drill · FastAPI Control Plane
==================================================
Hosts drill sessions for browser clients.  The browser owns speech
recognition, speech synthesis and rendering; this process owns the turn
state machine and scoring.

Endpoints
---------
  GET  /health        Service liveness
  GET  /config        Current runtime config
  PUT  /config        Partial config patch (persisted to DRILL_CONFIG_PATH)
  GET  /lessons       Lessons served to new sessions
  GET  /sessions      Live drill connections
  WS   /ws/drill      One SessionController per connection

Concurrency model
-----------------
Every connection runs on the server's event loop with its own controller,
collaborator adapters and outbound queue.  Connections share no mutable
state besides the read-only config / lexicon snapshot taken when they open.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .config import DrillConfig
from .lexicon import LessonEntry, Lexicon
from .session import SessionController
from .speech import CapabilityUnavailable
from .transport import WebSocketDisplay, WebSocketRecognizer, WebSocketSynthesizer

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DRILL_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("speaking_drill.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("DRILL_CONFIG_PATH", "drill_config.json")


def _load_lexicon(config: DrillConfig) -> Lexicon:
    if not config.lessons_path:
        return Lexicon.default()
    try:
        return Lexicon.from_json(config.lessons_path)
    except (OSError, ValueError) as exc:
        log.warning("event=lexicon_load_error path=%s error=%s — using built-in lessons", config.lessons_path, exc)
        return Lexicon.default()


# ---------------------------------------------------------------------------
# Client messages
# ---------------------------------------------------------------------------

class ClientMessage(BaseModel):
    """Inbound WebSocket message.  Which fields matter depends on `type`."""
    type: Literal["hello", "start", "restart", "spoken", "result", "error", "end"]
    speech_recognition: bool = True
    utterance: Optional[int] = None
    session: Optional[int] = None
    transcript: str = ""
    is_final: bool = False


# ---------------------------------------------------------------------------
# Active session registry
# ---------------------------------------------------------------------------

@dataclass
class DrillConnection:
    """Per-WebSocket bundle: outbound queue, collaborators and controller."""
    config:       DrillConfig
    lexicon:      Lexicon
    id:           str     = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at:   float   = field(default_factory=time.monotonic)
    outbox:       asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    recognizer:   Optional[WebSocketRecognizer] = field(default=None, repr=False)
    synthesizer:  Optional[WebSocketSynthesizer] = field(default=None, repr=False)
    controller:   Optional[SessionController] = field(default=None, repr=False)
    greeted:      bool    = False
    unavailable:  Optional[str] = None

    def send(self, payload: dict[str, Any]) -> None:
        self.outbox.put_nowait(payload)

    def hello(self, speech_recognition: bool) -> None:
        self.greeted = True
        self.recognizer = WebSocketRecognizer(self.send) if speech_recognition else None
        self.synthesizer = WebSocketSynthesizer(self.send, self.config.speech)
        try:
            self.controller = SessionController(
                self.lexicon,
                self.recognizer,
                self.synthesizer,
                WebSocketDisplay(self.send),
                config=self.config,
            )
        except CapabilityUnavailable as exc:
            self.unavailable = str(exc)
            log.warning("event=capability_unavailable session=%s reason=%s", self.id, exc)
            self.send({"type": "unavailable", "message": self.unavailable})

    def handle(self, msg: ClientMessage) -> None:
        if msg.type == "hello":
            if self.greeted:
                self.protocol_error("hello already received")
                return
            self.hello(msg.speech_recognition)
            return

        if not self.greeted:
            self.protocol_error(f"'{msg.type}' before hello")
            return

        if msg.type in ("start", "restart"):
            if self.controller is None:
                self.send({"type": "unavailable", "message": self.unavailable})
                return
            self.controller.start()
            return

        if self.controller is None:
            log.debug("event=event_while_unavailable session=%s type=%s", self.id, msg.type)
            return

        if msg.type == "spoken":
            self.synthesizer.dispatch_finished(msg.utterance)
        elif msg.type == "result":
            self.recognizer.dispatch_result(msg.session, msg.transcript, msg.is_final)
        elif msg.type == "error":
            self.recognizer.dispatch_error(msg.session)
        elif msg.type == "end":
            self.recognizer.dispatch_end(msg.session)

    def protocol_error(self, detail: str) -> None:
        log.warning("event=protocol_error session=%s detail=%s", self.id, detail)
        self.send({"type": "protocol_error", "detail": detail})

    @property
    def phase_name(self) -> str:
        if self.controller is not None:
            return self.controller.phase.name
        return "UNAVAILABLE" if self.unavailable else "CONNECTING"

    def close(self) -> None:
        if self.controller is not None:
            self.controller.stop()


class SessionInfo(BaseModel):
    session_id:    str
    phase:         str
    current_index: int
    lesson_count:  int
    uptime_sec:    float


# session id → DrillConnection
active_sessions: dict[str, DrillConnection] = {}


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    config = DrillConfig.load(CONFIG_PATH)
    app.state.config = config
    app.state.lexicon = _load_lexicon(config)
    log.info("event=server_start lessons=%d limit=%d", len(app.state.lexicon), config.timer.limit_units)
    yield
    log.info("event=server_shutdown closing %d active sessions", len(active_sessions))
    for conn in list(active_sessions.values()):
        conn.close()
    log.info("event=server_stopped")


app = FastAPI(
    title="Speaking Drill",
    version="1.0.0",
    description="Timed spoken-answer drill engine",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":          "ok",
        "active_sessions": len(active_sessions),
        "lessons":         len(app.state.lexicon),
    })


@app.get("/config")
async def get_config() -> JSONResponse:
    return JSONResponse(app.state.config.model_dump())


@app.put("/config")
async def put_config(request: Request) -> JSONResponse:
    """
    Merge a partial patch over the current config, e.g.
        { "timer": { "limit_units": 8 } }
    Applies to sessions opened after the change.
    """
    try:
        patch = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")

    try:
        config = app.state.config.merge_patch(patch)
    except ValidationError as exc:
        log.warning("event=config_patch_rejected errors=%d", exc.error_count())
        return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False, include_context=False)})

    if config.lessons_path != app.state.config.lessons_path:
        app.state.lexicon = _load_lexicon(config)
    app.state.config = config
    config.save(CONFIG_PATH)
    log.info("event=config_updated keys=%s", sorted(patch))
    return JSONResponse(config.model_dump())


@app.get("/lessons", response_model=list[LessonEntry])
async def list_lessons() -> list[LessonEntry]:
    return list(app.state.lexicon)


@app.get("/sessions", response_model=list[SessionInfo])
async def list_sessions() -> list[SessionInfo]:
    """Returns a snapshot of all live drill connections."""
    now = time.monotonic()
    return [
        SessionInfo(
            session_id=c.id,
            phase=c.phase_name,
            current_index=c.controller.current_index if c.controller else 0,
            lesson_count=len(c.lexicon),
            uptime_sec=round(now - c.started_at, 1),
        )
        for c in active_sessions.values()
    ]


async def _drain_outbox(ws: WebSocket, conn: DrillConnection) -> None:
    while True:
        payload = await conn.outbox.get()
        await ws.send_json(payload)


@app.websocket("/ws/drill")
async def ws_drill(ws: WebSocket) -> None:
    """
    Drill session for one learner.  The client must open with
        {"type": "hello", "speech_recognition": true|false}
    and then send {"type": "start"}.
    """
    await ws.accept()
    conn = DrillConnection(config=ws.app.state.config, lexicon=ws.app.state.lexicon)
    active_sessions[conn.id] = conn
    writer = asyncio.create_task(_drain_outbox(ws, conn), name=f"drill_writer_{conn.id}")
    log.info("event=drill_connected session=%s remote=%s", conn.id, ws.client)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = ClientMessage.model_validate_json(raw)
            except ValidationError as exc:
                conn.protocol_error(f"invalid message: {exc.error_count()} error(s)")
                continue
            conn.handle(msg)
    except WebSocketDisconnect:
        pass
    finally:
        conn.close()
        writer.cancel()
        try:
            await writer
        except (asyncio.CancelledError, Exception):
            pass
        active_sessions.pop(conn.id, None)
        log.info("event=drill_disconnected session=%s", conn.id)


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("DRILL_HOST", "127.0.0.1"),
        port=int(os.getenv("DRILL_PORT", "8000")),
    )
