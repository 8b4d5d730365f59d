"""Utterance buffer and inactivity finalizer.

The active recognizer emits final fragments one at a time.  They accumulate
in an UtteranceBuffer; every accepted fragment re-arms a single inactivity
timer.  When the timer fires (or when the user stops the conversation) the
buffer is flushed: the utterance is taken, reported, and handed to the
transport.  Flushing is the only way a finished utterance leaves the client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from apps.conversation.errors import TransportFailure
from apps.conversation.models import FlushReason

log = logging.getLogger("stella.finalizer")


class UtteranceBuffer:
    """Fragments since the last flush, with repeat suppression."""

    def __init__(self) -> None:
        self._fragments: list[str] = []
        self._last_fragment = ""

    def append(self, fragment: str) -> bool:
        """Accept *fragment* unless it is empty or repeats the last accepted one."""
        snippet = fragment.strip()
        if not snippet or snippet == self._last_fragment:
            return False
        self._last_fragment = snippet
        self._fragments.append(snippet)
        return True

    @property
    def text(self) -> str:
        return " ".join(self._fragments).strip()

    def take(self) -> str:
        """Return the trimmed utterance and clear the buffer."""
        text = self.text
        self.clear()
        return text

    def clear(self) -> None:
        self._fragments.clear()
        self._last_fragment = ""

    def __bool__(self) -> bool:
        return bool(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)


class InactivityFinalizer:
    """Owns the buffer and the single inactivity timer."""

    def __init__(
        self,
        timeout: float,
        send: Callable[[str], Awaitable[None]],
        *,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_send_failed: Optional[Callable[[str, TransportFailure], None]] = None,
    ) -> None:
        self.timeout = timeout
        self.buffer = UtteranceBuffer()
        self._send = send
        self._on_utterance = on_utterance
        self._on_transcript = on_transcript
        self._on_send_failed = on_send_failed
        self._timer_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def add_fragment(self, fragment: str) -> bool:
        """Append a fragment and re-arm the timer.  Returns False for duplicates."""
        if not self.buffer.append(fragment):
            log.debug("event=fragment_skipped reason=empty_or_repeat text=%.40r", fragment)
            return False
        if self._on_transcript is not None:
            self._on_transcript(self.buffer.text)
        self.reset()
        return True

    def reset(self) -> None:
        """Cancel and restart the inactivity delay."""
        self.cancel()

        async def _expire(delay: float = self.timeout) -> None:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                return
            # detach first so cancel() during the flush cannot cancel this task
            self._timer_task = None
            log.info("event=inactivity_timer_fired delay_ms=%d", int(delay * 1000))
            await self.flush(FlushReason.TIMEOUT)

        self._timer_task = asyncio.get_running_loop().create_task(
            _expire(), name="inactivity_timer",
        )

    def cancel(self) -> None:
        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
            log.debug("event=inactivity_timer_cancel")
        self._timer_task = None

    def discard(self) -> None:
        """Drop buffered text without sending it."""
        self.cancel()
        if self.buffer:
            log.info("event=utterance_discarded fragments=%d", len(self.buffer))
        self.buffer.clear()
        self._clear_transcript()

    async def flush(self, reason: FlushReason = FlushReason.TIMEOUT) -> bool:
        """Send the buffered utterance.  Returns True when something was sent."""
        self.cancel()
        # take synchronously: a concurrent flush sees an empty buffer
        text = self.buffer.take()
        self._clear_transcript()
        if not text:
            return False

        log.info("event=utterance_finalized reason=%s chars=%d", reason.value, len(text))
        if self._on_utterance is not None:
            self._on_utterance(text)
        try:
            await self._send(text)
        except TransportFailure as exc:
            log.warning("event=utterance_send_failed reason=%s error=%s", reason.value, exc)
            if self._on_send_failed is not None:
                self._on_send_failed(text, exc)
            return False
        return True

    def _clear_transcript(self) -> None:
        if self._on_transcript is not None:
            self._on_transcript("")
