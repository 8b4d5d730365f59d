"""Shared fakes and fixtures for the conversation core test suite."""

import asyncio
import inspect
import json
from collections.abc import Callable
from typing import Any, Optional

import httpx
import pytest

from apps.conversation.errors import PlaybackFailure, RecognizerFailure, SynthesisFailure, TransportFailure
from apps.conversation.orchestrator import ConversationOrchestrator
from apps.conversation.playback import AudioPlayer, PlaybackHandle, Synthesizer
from apps.conversation.pusher import Channel, RealtimeClient
from apps.conversation.recognizer import RecognitionEngine, RecognitionSession
from apps.conversation.transport import SessionTransport
from config import AssistantConfig

PASSIVE_ALTERNATIVES = 3
ACTIVE_ALTERNATIVES = 5


# =============================================================================
# Recognition
# =============================================================================


class FakeRecognitionSession(RecognitionSession):
    """Scriptable recognition session; the test plays the microphone."""

    def __init__(self, engine: "FakeRecognitionEngine", alternatives: int) -> None:
        super().__init__()
        self.engine = engine
        self.alternatives = alternatives
        self.running = False
        self.stopped = False

    def start(self) -> None:
        if self.engine.fail_starts > 0:
            self.engine.fail_starts -= 1
            raise RecognizerFailure("microphone busy")
        self.running = True
        self.engine.started.append(self)
        self.engine.live.add(self)
        self.engine.max_concurrent = max(self.engine.max_concurrent, len(self.engine.live))

    def stop(self) -> None:
        self.running = False
        self.stopped = True
        self.engine.live.discard(self)

    def say(self, text: str) -> None:
        self._emit_fragment(text)

    def end(self) -> None:
        """Simulate the platform ending the session on its own."""
        self.running = False
        self.engine.live.discard(self)
        self._emit_ended()


class FakeRecognitionEngine(RecognitionEngine):
    name = "fake"

    def __init__(self, *, available: bool = True, microphone: bool = True) -> None:
        self.available = available
        self.microphone = microphone
        self.fail_starts = 0
        self.started: list[FakeRecognitionSession] = []
        self.live: set[FakeRecognitionSession] = set()
        self.max_concurrent = 0

    def is_available(self) -> bool:
        return self.available

    def has_microphone(self) -> bool:
        return self.microphone

    def create_session(self, *, alternatives: int) -> FakeRecognitionSession:
        return FakeRecognitionSession(self, alternatives)

    def _latest(self, alternatives: int) -> Optional[FakeRecognitionSession]:
        for session in reversed(self.started):
            if session.alternatives == alternatives and session.running:
                return session
        return None

    @property
    def passive(self) -> Optional[FakeRecognitionSession]:
        return self._latest(PASSIVE_ALTERNATIVES)

    @property
    def active(self) -> Optional[FakeRecognitionSession]:
        return self._latest(ACTIVE_ALTERNATIVES)


# =============================================================================
# Transport
# =============================================================================


class FakeRealtimeClient(RealtimeClient):
    def __init__(
        self,
        session_id: str,
        *,
        fail_connect: bool = False,
        fail_subscribe: Optional[Exception] = None,
    ) -> None:
        self.session_id = session_id
        self.fail_connect = fail_connect
        self.fail_subscribe = fail_subscribe
        self.channels: dict[str, Channel] = {}
        self.connected = False
        self.disconnected = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportFailure("realtime service unreachable")
        self.connected = True

    async def subscribe(self, channel: str) -> Channel:
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        subscribed = Channel(channel)
        self.channels[channel] = subscribed
        return subscribed

    async def unsubscribe(self, channel: str) -> None:
        self.channels.pop(channel, None)

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnected = True

    def drop(self) -> None:
        """Simulate the realtime service closing the socket."""
        self.connected = False
        if self.on_connection_lost is not None:
            self.on_connection_lost()

    async def deliver(self, channel: str, event: str, data: Any) -> None:
        subscribed = self.channels.get(channel)
        if subscribed is None:
            return
        for handler in subscribed.handlers(event):
            result = handler(data)
            if inspect.isawaitable(result):
                await result


class FakeRealtime:
    """RealtimeFactory that records every client it creates."""

    def __init__(self) -> None:
        self.clients: list[FakeRealtimeClient] = []
        self.fail_connect = False
        self.fail_subscribe: Optional[Exception] = None

    def __call__(self, session_id: str) -> FakeRealtimeClient:
        client = FakeRealtimeClient(
            session_id, fail_connect=self.fail_connect, fail_subscribe=self.fail_subscribe,
        )
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeRealtimeClient:
        return self.clients[-1]

    async def deliver(
        self,
        data: Any,
        *,
        channel: str = "private-agent-123",
        event: str = "server-speech-output",
    ) -> None:
        await self.latest.deliver(channel, event, data)


class FakeBackend:
    """httpx.MockTransport standing in for POST /speech/process."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.paths: list[str] = []
        self.status_code = 200
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"status": "accepted"})

    @property
    def texts(self) -> list[str]:
        return [r["data"]["text"] for r in self.requests]


def speech_output(session_id: Optional[str], response: str = "Pedido confirmado", **extra: Any) -> dict:
    return {
        "session_id": session_id,
        "correlation_id": "corr-1",
        "timestamp": "2026-01-01T12:00:00+00:00",
        "data": {"response": response, "intention": "order", **extra},
    }


# =============================================================================
# Synthesis / playback
# =============================================================================


class FakeSynthesizer(Synthesizer):
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise SynthesisFailure("synthesis service unavailable")
        return f"audio:{text}".encode()

    async def aclose(self) -> None:
        self.closed = True


class FakePlaybackHandle(PlaybackHandle):
    def __init__(self, audio: bytes, *, fail_start: bool = False) -> None:
        self.audio = audio
        self.fail_start = fail_start
        self.started = False
        self.released = False
        self._done = asyncio.Event()

    async def start(self) -> None:
        if self.fail_start:
            raise PlaybackFailure("output device unavailable")
        self.started = True

    async def wait(self) -> None:
        await self._done.wait()

    def finish(self) -> None:
        self._done.set()

    def release(self) -> None:
        self.released = True


class FakePlayer(AudioPlayer):
    def __init__(self) -> None:
        self.handles: list[FakePlaybackHandle] = []
        self.fail_load = False
        self.fail_start = False

    def load(self, audio: bytes) -> FakePlaybackHandle:
        if self.fail_load:
            raise PlaybackFailure("could not decode audio")
        handle = FakePlaybackHandle(audio, fail_start=self.fail_start)
        self.handles.append(handle)
        return handle

    @property
    def latest(self) -> FakePlaybackHandle:
        return self.handles[-1]


# =============================================================================
# Helpers
# =============================================================================


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll *predicate* on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


def fast_config() -> AssistantConfig:
    return AssistantConfig().merge_patch({
        "timing": {
            "wake_transition_ms": 10,
            "inactivity_timeout_ms": 60,
            "passive_restart_ms": 5,
            "active_restart_ms": 5,
            "max_recognizer_restarts": 3,
        }
    })


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config() -> AssistantConfig:
    return fast_config()


@pytest.fixture
def engine() -> FakeRecognitionEngine:
    return FakeRecognitionEngine()


@pytest.fixture
def realtime() -> FakeRealtime:
    return FakeRealtime()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()


@pytest.fixture
def make_orchestrator(config, realtime, backend, synthesizer, player):
    """Factory fixture building an orchestrator over the fakes."""

    def _make(engine: Optional[RecognitionEngine]) -> ConversationOrchestrator:
        transport = SessionTransport(config.transport, realtime, http_transport=backend.transport)
        return ConversationOrchestrator(
            config,
            engine=engine,
            transport=transport,
            synthesizer=synthesizer,
            player=player,
        )

    return _make


@pytest.fixture
async def orchestrator(make_orchestrator, engine):
    """A started orchestrator in Idle with the hotword armed."""
    orch = make_orchestrator(engine)
    await orch.start()
    yield orch
    await orch.close()


@pytest.fixture
def events(orchestrator) -> list:
    recorded: list = []
    orchestrator.subscribe(recorded.append)
    return recorded
