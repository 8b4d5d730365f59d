"""
server.py — Stella Voice Client · FastAPI Control Plane
=======================================================
Local control surface for a UI.  Owns the single ConversationOrchestrator of
the process (created in the lifespan, closed on shutdown) and exposes it over
HTTP and a WebSocket event stream.

Endpoints
---------
  GET  /health        Service liveness + capabilities
  GET  /state         Conversation snapshot
  GET  /chat          Conversation log
  POST /activate      Touch / manual activation
  POST /deactivate    Stop the conversation (flushes pending speech)
  GET  /config        Current runtime config
  PUT  /config        Deep-merge a patch, persist it (applies on restart)
  WS   /ws/events     Conversation events + server log records

Usage
-----
    uvicorn server:app --port 8765
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from typing import Callable, Deque, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import AssistantConfig
from apps.conversation.models import ActivationOrigin, ConversationEvent, ConversationState
from apps.conversation.orchestrator import ConversationOrchestrator

load_dotenv()

HISTORY_LIMIT = 500


# ---------------------------------------------------------------------------
# WebSocket event broadcaster (defined early, referenced by the logging handler)
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fans conversation events and log lines out to every /ws/events client.

    Events are encoded once and kept in a bounded history, so a UI that
    connects mid-conversation first receives the recent state, hotword and
    chat events.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: Deque[str] = deque(maxlen=history_limit)
        self._pending: Set[asyncio.Task] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        replay = list(self._history)
        self._clients.add(ws)
        for text in replay:
            try:
                await ws.send_text(text)
            except Exception as exc:
                log.debug("event=ws_replay_aborted remote=%s error=%s", ws.client, exc)
                self._clients.discard(ws)
                return

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        text = json.dumps(event)
        self._history.append(text)
        for ws in list(self._clients):
            try:
                await ws.send_text(text)
            except Exception:
                self._clients.discard(ws)

    def publish(self, event: dict) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop yet during startup
        task = loop.create_task(self.broadcast(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


class _WsBroadcastHandler(logging.Handler):
    """Forwards stella.* log records to the event stream.

    Records can come from the microphone and speaker callback threads, so the
    handler is bound to the server loop and hops onto it.
    """

    def __init__(self, broadcaster: EventBroadcaster, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._broadcaster = broadcaster
        self._loop = loop

    def emit(self, record: logging.LogRecord) -> None:
        if self._loop.is_closed():
            return
        event = {
            "source": "log",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        self._loop.call_soon_threadsafe(self._broadcaster.publish, event)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("stella.server")

CONFIG_PATH = os.getenv("STELLA_CONFIG", "stella_config.json")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ActivateRequest(BaseModel):
    origin: ActivationOrigin = ActivationOrigin.MANUAL


class StateResponse(BaseModel):
    state: ConversationState
    session_id: Optional[str]
    hotword_armed: bool
    voice_loading: bool
    transcript: str
    is_recording: bool
    can_listen: bool


def _state_response(orchestrator: ConversationOrchestrator) -> StateResponse:
    state = orchestrator.state
    return StateResponse(
        state=state,
        session_id=orchestrator.session.session_id if orchestrator.session else None,
        hotword_armed=orchestrator.hotword_armed,
        voice_loading=orchestrator.voice_loading,
        transcript=orchestrator.transcript,
        is_recording=state is ConversationState.ACTIVE_LISTENING,
        can_listen=state in (ConversationState.ACTIVE_LISTENING, ConversationState.WAKE_LISTENING),
    )


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

OrchestratorFactory = Callable[[AssistantConfig], ConversationOrchestrator]


def _default_factory(config: AssistantConfig) -> ConversationOrchestrator:
    from assistant import build_orchestrator
    return build_orchestrator(config)


def create_app(
    factory: OrchestratorFactory = _default_factory,
    config_path: str = CONFIG_PATH,
) -> FastAPI:
    broadcaster = EventBroadcaster()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        config = AssistantConfig.load(config_path)
        orchestrator = factory(config)
        app.state.config = config
        app.state.orchestrator = orchestrator
        app.state.broadcaster = broadcaster

        ws_handler = _WsBroadcastHandler(broadcaster, asyncio.get_running_loop())
        ws_handler.setFormatter(logging.Formatter(
            "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
            datefmt="%H:%M:%S",
        ))
        stella_logger = logging.getLogger("stella")
        stella_logger.addHandler(ws_handler)

        def _forward(event: ConversationEvent) -> None:
            broadcaster.publish({"source": "conversation", **event.model_dump(mode="json")})

        unsubscribe = orchestrator.subscribe(_forward)
        await orchestrator.start()
        log.info("event=server_start hotword=%s", orchestrator.capabilities.hotword)
        try:
            yield
        finally:
            log.info("event=server_shutdown state=%s", orchestrator.state.value)
            unsubscribe()
            await orchestrator.close()
            stella_logger.removeHandler(ws_handler)
            log.info("event=server_stopped")

    app = FastAPI(
        title="Stella Voice Client",
        version="0.1.0",
        description="Control plane for the Stella conversation orchestrator",
        lifespan=_lifespan,
    )

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _orchestrator(request: Request) -> ConversationOrchestrator:
        return request.app.state.orchestrator

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness check."""
        orchestrator = _orchestrator(request)
        caps = orchestrator.capabilities
        return JSONResponse({
            "status":        "ok",
            "state":         orchestrator.state.value,
            "recognition":   caps.recognition,
            "microphone":    caps.microphone,
            "hotword":       caps.hotword,
            "reason":        caps.reason,
            "ws_clients":    broadcaster.client_count,
        })

    @app.get("/state", response_model=StateResponse)
    async def get_state(request: Request) -> StateResponse:
        return _state_response(_orchestrator(request))

    @app.get("/chat")
    async def get_chat(request: Request) -> list[dict]:
        return [m.model_dump(mode="json") for m in _orchestrator(request).chat]

    @app.post("/activate", status_code=status.HTTP_202_ACCEPTED)
    async def activate(request: Request, body: Optional[ActivateRequest] = None) -> JSONResponse:
        """
        Touch / manual activation.  The hotword path never goes through here.

            { "origin": "touch" }
        """
        orchestrator = _orchestrator(request)
        origin = (body or ActivateRequest()).origin
        if origin is ActivationOrigin.HOTWORD:
            raise HTTPException(status_code=400, detail="Hotword activation is internal to the client.")
        if not orchestrator.capabilities.hotword:
            orchestrator.activate(origin)  # publishes the capability notice
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Speech recognition unavailable: {orchestrator.capabilities.reason}",
            )
        if not orchestrator.activate(origin):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Conversation already {orchestrator.state.value}.",
            )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "waking", "origin": origin.value, "state": orchestrator.state.value},
        )

    @app.post("/deactivate", status_code=status.HTTP_202_ACCEPTED)
    async def deactivate(request: Request) -> JSONResponse:
        """Stop the conversation; any pending utterance is sent first."""
        orchestrator = _orchestrator(request)
        await orchestrator.deactivate()
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "idle", "state": orchestrator.state.value},
        )

    @app.get("/config")
    async def get_config(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.config.model_dump(mode="json"))

    @app.put("/config")
    async def put_config(request: Request) -> JSONResponse:
        """Deep-merge a partial config.  Takes effect on the next start."""
        try:
            patch = await request.json()
            config = request.app.state.config.merge_patch(patch)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid config patch: {exc}") from exc
        config.save(config_path)
        request.app.state.config = config
        return JSONResponse(config.model_dump(mode="json"))

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket) -> None:
        """
        Real-time event stream for the UI.
        {
          "source":  "conversation" | "log",
          "kind":    "state" | "chat" | "transcript" | "hotword" | "voice_loading" | "notice",
          "payload": {...},            # conversation only
          "level":   "INFO" | ...,     # log only
          "msg":     "<line>",         # log only
          "ts":      <unix float>
        }
        """
        await broadcaster.connect(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)

    return app


app = create_app()
