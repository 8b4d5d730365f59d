"""Speech synthesis and playback coordinator.

speak(text) pauses active listening, fetches synthesized audio, plays it and,
when the audio ends, tells the host whether to resume listening.  Failures
are fail-open: the host is always told playback finished, so the conversation
never stays in Speaking.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Protocol

import httpx

from apps.conversation.errors import PlaybackFailure, SynthesisFailure
from apps.conversation.models import ConversationState, StateSnapshot

log = logging.getLogger("stella.playback")


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------

class Synthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return encoded audio for *text*.  Raises SynthesisFailure."""

    async def aclose(self) -> None:
        return None


class ElevenLabsSynthesizer(Synthesizer):
    """ElevenLabs text-to-speech over its REST API."""

    def __init__(self, api_key: Optional[str], config, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._api_key = api_key
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers={
                    "xi-api-key": self._api_key or "",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self._config.timeout_sec),
                transport=self._transport,
            )
        return self._client

    async def synthesize(self, text: str) -> bytes:
        if not self._api_key:
            raise SynthesisFailure("ElevenLabs API key is not configured")
        body = {
            "text": text,
            "model_id": self._config.model,
            "voice_settings": {"speed": self._config.speed},
        }
        try:
            response = await self._get_client().post(
                f"/text-to-speech/{self._config.voice_id}",
                json=body,
                params={"output_format": self._config.output_format},
            )
        except httpx.TimeoutException as exc:
            raise SynthesisFailure(f"ElevenLabs request timed out after {self._config.timeout_sec}s") from exc
        except httpx.HTTPError as exc:
            raise SynthesisFailure(f"ElevenLabs request failed: {exc}") from exc

        if response.status_code != 200:
            raise SynthesisFailure(f"ElevenLabs API error: {response.status_code} - {response.text[:200]}")
        if not response.content:
            raise SynthesisFailure("ElevenLabs returned no audio")
        return response.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------

class PlaybackHandle(ABC):
    """One live audio playback.  At most one exists at a time."""

    @abstractmethod
    async def start(self) -> None:
        """Begin playback.  Raises PlaybackFailure."""

    @abstractmethod
    async def wait(self) -> None:
        """Return when the audio has played to the end."""

    @abstractmethod
    def release(self) -> None:
        """Stop and free resources.  Idempotent, never raises."""


class AudioPlayer(ABC):
    @abstractmethod
    def load(self, audio: bytes) -> PlaybackHandle:
        """Prepare *audio* for playback.  Raises PlaybackFailure."""


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class PlaybackHost(Protocol):
    """What the coordinator needs from the orchestrator."""

    def snapshot(self) -> StateSnapshot: ...
    def is_current(self, generation: int) -> bool: ...
    def suspend_listening(self) -> None: ...
    def enter_speaking(self) -> None: ...
    def playback_failed(self, error: Exception) -> None: ...
    async def on_playback_finished(self, resume: bool) -> None: ...


class PlaybackCoordinator:
    def __init__(self, synthesizer: Synthesizer, player: AudioPlayer, host: PlaybackHost) -> None:
        self._synthesizer = synthesizer
        self._player = player
        self._host = host
        self._handle: Optional[PlaybackHandle] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._resume = False

    @property
    def handle(self) -> Optional[PlaybackHandle]:
        return self._handle

    @property
    def resume_after_speaking(self) -> bool:
        return self._resume

    async def speak(self, text: str) -> None:
        if not text:
            return

        snap = self._host.snapshot()
        resume = snap.state in (ConversationState.ACTIVE_LISTENING, ConversationState.PAUSED) or (
            snap.state is ConversationState.SPEAKING and self._resume
        )
        self._resume = resume
        if snap.state is ConversationState.ACTIVE_LISTENING:
            self._host.suspend_listening()

        log.info("event=speak_start state=%s resume=%s chars=%d", snap.state.value, resume, len(text))

        try:
            audio = await self._synthesizer.synthesize(text)
        except SynthesisFailure as exc:
            log.error("event=synthesis_failed error=%s", exc)
            await self._fail(snap.generation, resume, exc)
            return

        if not self._host.is_current(snap.generation):
            log.info("event=speak_discarded reason=stale_generation")
            return

        # an earlier playback may have ended while we were synthesizing
        if self._host.snapshot().state is ConversationState.ACTIVE_LISTENING:
            log.info("event=speak_resuspend reason=resumed_during_synthesis")
            self._host.suspend_listening()
            resume = True
            self._resume = True

        try:
            handle = self._player.load(audio)
        except PlaybackFailure as exc:
            log.error("event=playback_load_failed error=%s", exc)
            await self._fail(snap.generation, resume, exc)
            return

        self.release()
        self._handle = handle
        self._host.enter_speaking()
        try:
            await handle.start()
        except PlaybackFailure as exc:
            log.error("event=playback_start_failed error=%s", exc)
            if self._handle is handle:
                self.release()
            await self._fail(snap.generation, resume, exc)
            return

        if self._handle is not handle:
            # superseded or cancelled while starting
            handle.release()
            return

        log.info("event=playback_start bytes=%d", len(audio))
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch(handle, snap.generation), name="playback_watch",
        )

    async def _watch(self, handle: PlaybackHandle, generation: int) -> None:
        try:
            await handle.wait()
        except asyncio.CancelledError:
            return
        if self._handle is not handle:
            return
        # detach first so the host's teardown cannot cancel this task
        self._watch_task = None
        self.release()
        log.info("event=playback_end resume=%s", self._resume)
        await self._finish(generation, self._resume)

    async def _fail(self, generation: int, resume: bool, error: Exception) -> None:
        self._host.playback_failed(error)
        if self._handle is not None:
            # an earlier playback is still audible; its watcher reports the end
            log.info("event=playback_failure_deferred reason=playback_live")
            return
        await self._finish(generation, resume)

    async def _finish(self, generation: int, resume: bool) -> None:
        if not self._host.is_current(generation):
            log.debug("event=playback_finish_skipped reason=stale_generation")
            return
        self._resume = False
        await self._host.on_playback_finished(resume)

    def release(self) -> None:
        """Stop the live playback, if any, without signalling the host."""
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
        self._watch_task = None
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.release()

    def cancel(self) -> None:
        """Abort everything in flight (used on deactivate)."""
        self.release()
        self._resume = False

    async def aclose(self) -> None:
        self.cancel()
        await self._synthesizer.aclose()
