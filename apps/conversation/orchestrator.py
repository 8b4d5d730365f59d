"""
orchestrator.py — Stella Voice Client · Conversation Orchestrator
==================================================================
Single source of truth for the conversation.  Owns the state variable, both
recognizer handles, the inactivity finalizer, the transport binding and the
playback coordinator, and reconciles their asynchronous events.

State machine
-------------
    IDLE ──activate()──▶ WAKE_LISTENING ──400 ms──▶ ACTIVE_LISTENING
      ▲                                                 │   ▲
      │                                       speak()   ▼   │ playback end
      └──── deactivate() / playback end ◀── SPEAKING ◀── PAUSED
                (no resume)

Exclusivity
-----------
The passive (hotword) recognizer runs only in IDLE, the active recognizer
only in ACTIVE_LISTENING.  The losing recognizer is always stopped *before*
the state variable changes.

Freshness
---------
Every activation and every deactivation bumps `generation`.  Deferred work
(wake transition, speak continuation, playback end) captures the generation
and does nothing if it is no longer current.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from apps.conversation.errors import TransportFailure
from apps.conversation.finalizer import InactivityFinalizer
from apps.conversation.hotword import HotwordMatcher
from apps.conversation.models import (
    ActivationOrigin,
    Capabilities,
    ChatMessage,
    ConversationEvent,
    ConversationState,
    FlushReason,
    Session,
    Speaker,
    StateSnapshot,
)
from apps.conversation.playback import AudioPlayer, PlaybackCoordinator, Synthesizer
from apps.conversation.recognizer import RecognitionEngine, RecognizerHandle, detect_capabilities
from apps.conversation.transport import SessionTransport

log = logging.getLogger("stella.orchestrator")

EventCallback = Callable[[ConversationEvent], None]


class ConversationOrchestrator:
    def __init__(
        self,
        config,
        *,
        engine: Optional[RecognitionEngine],
        transport: SessionTransport,
        synthesizer: Synthesizer,
        player: AudioPlayer,
    ) -> None:
        self._config = config
        timing = config.timing

        self._engine = engine
        self._matcher = HotwordMatcher.from_config(config.hotword)
        self._transport = transport
        self._transport.set_response_handler(self.on_final_response_received)
        self._transport.set_connection_lost_handler(self._on_transport_lost)
        self._playback = PlaybackCoordinator(synthesizer, player, self)
        self._finalizer = InactivityFinalizer(
            timing.inactivity_timeout_ms / 1000.0,
            self._send_utterance,
            on_utterance=self._on_utterance,
            on_transcript=self._on_transcript,
            on_send_failed=self._on_send_failed,
        )
        self._passive = RecognizerHandle(
            "passive",
            engine,
            alternatives=config.recognizer.passive_alternatives,
            restart_delay=timing.passive_restart_ms / 1000.0,
            max_restarts=timing.max_recognizer_restarts,
            on_fragment=self._on_passive_fragment,
            on_running_changed=self._on_hotword_armed,
            on_gave_up=self._on_recognizer_gave_up,
        )
        self._active = RecognizerHandle(
            "active",
            engine,
            alternatives=config.recognizer.active_alternatives,
            restart_delay=timing.active_restart_ms / 1000.0,
            max_restarts=timing.max_recognizer_restarts,
            on_fragment=self._on_active_fragment,
            on_gave_up=self._on_recognizer_gave_up,
        )
        self._wake_delay = timing.wake_transition_ms / 1000.0

        self._state = ConversationState.IDLE
        self._session: Optional[Session] = None
        self._generation = 0
        self._closing = False
        self._closed = False
        self._started = False
        self._wake_task: Optional[asyncio.Task] = None
        self._give_up_task: Optional[asyncio.Task] = None
        self._capabilities = Capabilities(recognition=False, microphone=False, reason="not started")

        self._chat: list[ChatMessage] = []
        self._transcript = ""
        self._hotword_armed = False
        self._voice_loading = False
        self._observers: list[EventCallback] = []

    # -- read-only views -----------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    @property
    def chat(self) -> list[ChatMessage]:
        return list(self._chat)

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def hotword_armed(self) -> bool:
        return self._hotword_armed

    @property
    def voice_loading(self) -> bool:
        return self._voice_loading

    @property
    def passive_recognizer(self) -> RecognizerHandle:
        return self._passive

    @property
    def active_recognizer(self) -> RecognizerHandle:
        return self._active

    @property
    def finalizer(self) -> InactivityFinalizer:
        return self._finalizer

    @property
    def playback(self) -> PlaybackCoordinator:
        return self._playback

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            state=self._state,
            generation=self._generation,
            session_id=self._session.session_id if self._session else None,
        )

    def is_current(self, generation: int) -> bool:
        return (
            generation == self._generation
            and not self._closing
            and not self._closed
            and self._state is not ConversationState.IDLE
        )

    # -- observers -----------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an observer.  Returns the matching unsubscribe function."""
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def _publish(self, kind: str, **payload) -> None:
        event = ConversationEvent(kind=kind, payload=payload)
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:
                log.exception("event=observer_error kind=%s", kind)

    def _notice(self, code: str, message: str) -> None:
        log.info("event=notice code=%s", code)
        self._publish("notice", code=code, message=message)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Detect capabilities and arm the hotword listener."""
        if self._started:
            return
        self._started = True
        self._capabilities = detect_capabilities(self._engine)
        if not self._capabilities.hotword:
            self._notice(
                "capability_unavailable",
                f"Speech recognition unavailable ({self._capabilities.reason}); hotword disabled.",
            )
        self._enter_idle()

    async def close(self) -> None:
        """Tear everything down.  No callbacks fire afterwards."""
        if self._closed:
            return
        log.info("event=orchestrator_close state=%s", self._state.value)
        self._closed = True
        await self.deactivate()
        self._passive.stop()
        self._active.stop()
        self._finalizer.cancel()
        await self._playback.aclose()
        await self._transport.aclose()
        self._observers.clear()

    # -- transitions ---------------------------------------------------------

    def _set_state(self, new_state: ConversationState) -> None:
        prev = self._state
        if prev is new_state:
            return
        self._state = new_state
        log.info(
            "event=state_change from=%s to=%s generation=%d",
            prev.value, new_state.value, self._generation,
        )
        self._publish("state", state=new_state.value, previous=prev.value)

    def activate(self, origin: ActivationOrigin) -> bool:
        """Begin a conversation.  Returns False (and changes nothing) unless Idle."""
        origin = ActivationOrigin(origin)
        if self._closed:
            return False
        if not self._capabilities.hotword:
            log.warning("event=activation_refused origin=%s reason=capability_unavailable", origin.value)
            self._notice(
                "capability_unavailable",
                "This device does not support speech recognition.",
            )
            return False
        if self._state is not ConversationState.IDLE or self._closing:
            log.info("event=activation_ignored origin=%s state=%s", origin.value, self._state.value)
            return False

        self._generation += 1
        generation = self._generation
        log.info("event=activate origin=%s generation=%d", origin.value, generation)

        self._passive.stop()
        self._set_state(ConversationState.WAKE_LISTENING)
        self._cancel_wake_transition()
        self._wake_task = asyncio.get_running_loop().create_task(
            self._complete_wake(generation, origin), name="wake_transition",
        )
        return True

    async def _complete_wake(self, generation: int, origin: ActivationOrigin) -> None:
        try:
            await asyncio.sleep(self._wake_delay)
            if generation != self._generation or self._state is not ConversationState.WAKE_LISTENING:
                log.debug("event=wake_transition_skipped reason=stale")
                return

            session = self._ensure_session()
            try:
                await self._transport.open(session.session_id)
            except TransportFailure as exc:
                log.warning("event=transport_open_failed session=%s error=%s", session.session_id, exc)
                self._notice("transport_failed", "Realtime channel unavailable; responses may not arrive.")
            except Exception:
                log.exception("event=transport_open_error session=%s", session.session_id)
                self._notice("transport_failed", "Realtime channel unavailable; responses may not arrive.")

            if generation != self._generation or self._state is not ConversationState.WAKE_LISTENING:
                log.debug("event=wake_transition_skipped reason=stale_after_open")
                return

            self._set_state(ConversationState.ACTIVE_LISTENING)
            self._start_active(generation)
            log.info("event=conversation_active origin=%s session=%s", origin.value, session.session_id)
        except asyncio.CancelledError:
            log.debug("event=wake_transition_cancelled")
        finally:
            if self._wake_task is asyncio.current_task():
                self._wake_task = None

    def _cancel_wake_transition(self) -> None:
        if self._wake_task and not self._wake_task.done():
            self._wake_task.cancel()
            log.debug("event=wake_transition_cancel")
        self._wake_task = None

    def _ensure_session(self) -> Session:
        if self._session is None:
            self._session = Session()
            log.info("event=session_created session=%s", self._session.session_id)
        return self._session

    def _start_active(self, generation: int) -> None:
        self._active.start(
            keep_alive=lambda: (
                self._state is ConversationState.ACTIVE_LISTENING
                and generation == self._generation
                and not self._closing
            )
        )

    def _enter_idle(self) -> None:
        self._active.stop()
        self._set_state(ConversationState.IDLE)
        if self._closed or not self._capabilities.hotword:
            return
        self._passive.start(
            keep_alive=lambda: self._state is ConversationState.IDLE and not self._closed
        )

    async def deactivate(self) -> None:
        """End the conversation from any state.  Idempotent."""
        log.info("event=deactivate state=%s", self._state.value)
        self._generation += 1
        self._closing = True
        try:
            self._cancel_wake_transition()
            self._active.stop()
            await self._finalizer.flush(FlushReason.MANUAL)
            await self._transport.close()
            self._playback.cancel()
            if self._session is not None:
                log.info("event=session_closed session=%s", self._session.session_id)
            self._session = None
            self._set_voice_loading(False)
        finally:
            self._closing = False
        self._enter_idle()

    # -- recognizer callbacks ------------------------------------------------

    def _on_passive_fragment(self, text: str) -> None:
        if self._state is not ConversationState.IDLE:
            return
        log.debug("event=hotword_candidate text=%.60r", text)
        if self._matcher.matches(text):
            log.info("event=hotword_detected text=%.60r", text)
            self._passive.stop()
            self.activate(ActivationOrigin.HOTWORD)

    def _on_active_fragment(self, text: str) -> None:
        if self._state is not ConversationState.ACTIVE_LISTENING:
            log.debug("event=fragment_dropped state=%s", self._state.value)
            return
        self._finalizer.add_fragment(text)

    def _on_hotword_armed(self, armed: bool) -> None:
        if armed == self._hotword_armed:
            return
        self._hotword_armed = armed
        self._publish("hotword", armed=armed)

    def _on_recognizer_gave_up(self, role: str) -> None:
        self._notice(
            "recognizer_unavailable",
            f"The {role} speech recognizer keeps failing and was stopped.",
        )
        if role != "active" or self._state is not ConversationState.ACTIVE_LISTENING:
            return
        if self._closing or self._closed or self._give_up_task is not None:
            return
        log.warning("event=conversation_abandoned reason=active_recognizer_gave_up")
        self._give_up_task = asyncio.get_running_loop().create_task(
            self._end_after_give_up(), name="recognizer_give_up",
        )

    async def _end_after_give_up(self) -> None:
        try:
            await self.deactivate()
        finally:
            self._give_up_task = None

    # -- finalizer callbacks -------------------------------------------------

    async def _send_utterance(self, text: str) -> None:
        self._set_voice_loading(True)
        await self._transport.send(text)

    def _on_utterance(self, text: str) -> None:
        self._append_chat(Speaker.USER, text)

    def _on_transcript(self, text: str) -> None:
        if text == self._transcript:
            return
        self._transcript = text
        self._publish("transcript", text=text)

    def _on_send_failed(self, text: str, error: TransportFailure) -> None:
        self._set_voice_loading(False)
        self._notice("send_failed", f"Could not send your message: {error}")

    def _append_chat(self, speaker: Speaker, text: str) -> None:
        message = ChatMessage(speaker=speaker, text=text)
        self._chat.append(message)
        self._publish("chat", speaker=speaker.value, text=text)

    def _set_voice_loading(self, loading: bool) -> None:
        if loading == self._voice_loading:
            return
        self._voice_loading = loading
        self._publish("voice_loading", loading=loading)

    # -- transport / playback callbacks ---------------------------------------

    async def on_final_response_received(self, text: str) -> None:
        if self._closing or self._closed or self._session is None:
            log.debug("event=response_dropped reason=no_live_session")
            return
        log.info("event=response_received chars=%d", len(text))
        self._append_chat(Speaker.ASSISTANT, text)
        await self._playback.speak(text)

    def _on_transport_lost(self) -> None:
        if self._closing or self._closed or self._session is None:
            return
        self._notice("transport_failed", "Realtime channel lost; responses may not arrive.")

    def suspend_listening(self) -> None:
        """Stop the active recognizer without flushing and pause."""
        self._active.stop()
        self._finalizer.discard()
        self._set_state(ConversationState.PAUSED)

    def enter_speaking(self) -> None:
        self._active.stop()
        self._finalizer.discard()
        self._set_voice_loading(False)
        self._set_state(ConversationState.SPEAKING)

    def playback_failed(self, error: Exception) -> None:
        self._set_voice_loading(False)
        log.warning("event=playback_failed error=%s", error)

    async def on_playback_finished(self, resume: bool) -> None:
        if self._closing or self._closed:
            return
        if resume and self._session is not None:
            log.info("event=resume_listening session=%s", self._session.session_id)
            self._set_state(ConversationState.ACTIVE_LISTENING)
            self._start_active(self._generation)
            return
        log.info("event=conversation_finished resume=%s", resume)
        await self.deactivate()
