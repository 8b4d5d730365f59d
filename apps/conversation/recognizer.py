"""Recognizer handle — lifecycle wrapper over an opaque recognition engine.

Engine contract
---------------
A RecognitionEngine creates RecognitionSessions.  A session is one
continuous recognition run:

    session.listener = listener     # bind before start
    session.start()                 # synchronous; may raise RecognizerFailure
    ...                             # listener.on_final_fragment(text)
                                    # listener.on_error(exc)
                                    # listener.on_ended()
    session.listener = None         # unbind before stop
    session.stop()                  # best effort, never raises

Events are always delivered on the event loop thread.

Handle policy
-------------
The orchestrator owns two RecognizerHandles (passive and active).  A handle
never runs two sessions at once.  When a session ends on its own while the
owner's keep_alive() predicate still holds, the handle restarts it after a
fixed backoff.  A restart is skipped if the handle was explicitly stopped or
started again in the meantime (epoch check) or if keep_alive() no longer holds
when the backoff expires.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Protocol

from apps.conversation.errors import RecognizerFailure
from apps.conversation.models import Capabilities

log = logging.getLogger("stella.recognizer")


class RecognitionListener(Protocol):
    def on_final_fragment(self, text: str) -> None: ...
    def on_error(self, error: Exception) -> None: ...
    def on_ended(self) -> None: ...


class RecognitionSession(ABC):
    """One continuous recognition run.  See module docstring."""

    def __init__(self) -> None:
        self.listener: Optional[RecognitionListener] = None

    @abstractmethod
    def start(self) -> None:
        """Claim the microphone and begin recognizing."""

    @abstractmethod
    def stop(self) -> None:
        """Release the microphone.  Must not raise."""

    # -- helpers for subclasses -------------------------------------------

    def _emit_fragment(self, text: str) -> None:
        if self.listener is not None:
            self.listener.on_final_fragment(text)

    def _emit_error(self, error: Exception) -> None:
        if self.listener is not None:
            self.listener.on_error(error)

    def _emit_ended(self) -> None:
        if self.listener is not None:
            self.listener.on_ended()


class RecognitionEngine(ABC):
    """Factory for recognition sessions on this host."""

    name: str = "engine"

    @abstractmethod
    def is_available(self) -> bool:
        """True when continuous recognition can run here."""

    def has_microphone(self) -> bool:
        return True

    @abstractmethod
    def create_session(self, *, alternatives: int) -> RecognitionSession:
        ...


def detect_capabilities(engine: Optional[RecognitionEngine]) -> Capabilities:
    """Check the host once.  Never raises: absence is reported, not thrown."""
    if engine is None:
        return Capabilities(recognition=False, microphone=False, reason="no recognition engine configured")
    try:
        recognition = engine.is_available()
        microphone = engine.has_microphone()
    except Exception as exc:
        log.warning("event=capability_check_failed engine=%s error=%s", engine.name, exc)
        return Capabilities(recognition=False, microphone=False, reason=str(exc))

    reason = None
    if not recognition:
        reason = f"{engine.name} recognition unavailable"
    elif not microphone:
        reason = "no microphone input device"
    log.info(
        "event=capabilities engine=%s recognition=%s microphone=%s",
        engine.name, recognition, microphone,
    )
    return Capabilities(recognition=recognition, microphone=microphone, reason=reason)


class _HandleListener:
    """Binds one session to its handle so late events from a replaced session are ignored."""

    def __init__(self, handle: "RecognizerHandle", session: RecognitionSession) -> None:
        self._handle = handle
        self._session = session

    def on_final_fragment(self, text: str) -> None:
        self._handle._session_fragment(self._session, text)

    def on_error(self, error: Exception) -> None:
        self._handle._session_error(self._session, error)

    def on_ended(self) -> None:
        self._handle._session_ended(self._session)


class RecognizerHandle:
    """Start/stop wrapper with auto-restart policy for one recognizer role."""

    def __init__(
        self,
        role: str,
        engine: Optional[RecognitionEngine],
        *,
        alternatives: int,
        restart_delay: float,
        max_restarts: int,
        on_fragment: Callable[[str], None],
        on_running_changed: Optional[Callable[[bool], None]] = None,
        on_gave_up: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.role = role
        self._engine = engine
        self._alternatives = alternatives
        self._restart_delay = restart_delay
        self._max_restarts = max_restarts
        self._on_fragment = on_fragment
        self._on_running_changed = on_running_changed
        self._on_gave_up = on_gave_up

        self._session: Optional[RecognitionSession] = None
        self._keep_alive: Callable[[], bool] = lambda: False
        self._restart_task: Optional[asyncio.Task] = None
        self._epoch = 0
        self._restarts = 0

    @property
    def running(self) -> bool:
        return self._session is not None

    @property
    def available(self) -> bool:
        return self._engine is not None

    # -- public lifecycle ---------------------------------------------------

    def start(self, keep_alive: Callable[[], bool]) -> bool:
        """Start recognizing.  No-op if already running.

        keep_alive is consulted whenever the session ends on its own; while it
        returns True the handle keeps the recognizer alive.
        """
        if self._engine is None:
            log.debug("event=recognizer_start_skipped role=%s reason=no_engine", self.role)
            return False
        if self._session is not None:
            return True
        self._epoch += 1
        self._cancel_restart()
        self._keep_alive = keep_alive
        self._restarts = 0
        return self._start_session()

    def stop(self) -> None:
        """Stop recognizing and forget any pending restart.  Idempotent."""
        self._epoch += 1
        self._cancel_restart()
        session = self._session
        self._session = None
        self._keep_alive = lambda: False
        if session is None:
            return
        session.listener = None
        try:
            session.stop()
        except Exception as exc:
            log.debug("event=recognizer_stop_error role=%s error=%s", self.role, exc)
        log.info("event=recognizer_stopped role=%s", self.role)
        self._notify_running(False)

    # -- internals -----------------------------------------------------------

    def _start_session(self) -> bool:
        session = self._engine.create_session(alternatives=self._alternatives)
        session.listener = _HandleListener(self, session)
        try:
            session.start()
        except RecognizerFailure as exc:
            session.listener = None
            log.warning("event=recognizer_start_failed role=%s error=%s", self.role, exc)
            self._schedule_restart()
            return False
        self._session = session
        log.info("event=recognizer_started role=%s restarts=%d", self.role, self._restarts)
        self._notify_running(True)
        return True

    def _session_fragment(self, session: RecognitionSession, text: str) -> None:
        if session is not self._session:
            return
        self._restarts = 0
        self._on_fragment(text)

    def _session_error(self, session: RecognitionSession, error: Exception) -> None:
        if session is not self._session:
            return
        log.warning("event=recognizer_error role=%s error=%s", self.role, error)

    def _session_ended(self, session: RecognitionSession) -> None:
        if session is not self._session:
            return
        session.listener = None
        self._session = None
        self._notify_running(False)
        log.info("event=recognizer_ended role=%s unexpected=True", self.role)
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if not self._keep_alive():
            return
        if self._restarts >= self._max_restarts:
            log.error(
                "event=recognizer_gave_up role=%s consecutive_restarts=%d",
                self.role, self._restarts,
            )
            self._keep_alive = lambda: False
            if self._on_gave_up is not None:
                self._on_gave_up(self.role)
            return

        self._cancel_restart()
        epoch = self._epoch

        async def _restart(delay: float = self._restart_delay) -> None:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                return
            self._restart_task = None
            if epoch != self._epoch or self._session is not None:
                return
            if not self._keep_alive():
                log.debug("event=recognizer_restart_skipped role=%s reason=not_alive", self.role)
                return
            self._restarts += 1
            log.info("event=recognizer_restart role=%s attempt=%d", self.role, self._restarts)
            self._start_session()

        self._restart_task = asyncio.get_running_loop().create_task(
            _restart(), name=f"restart_{self.role}_recognizer",
        )

    def _cancel_restart(self) -> None:
        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()
            log.debug("event=restart_task_cancel role=%s", self.role)
        self._restart_task = None

    def _notify_running(self, running: bool) -> None:
        if self._on_running_changed is not None:
            self._on_running_changed(running)
