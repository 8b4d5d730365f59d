"""Failure taxonomy of the conversation core.

Nothing here is fatal to the host process: every failure degrades the
conversation to a consistent state (usually Idle).  A session mismatch on an
inbound message is not an error and has no exception type; it is dropped.
"""

from __future__ import annotations


class ConversationError(Exception):
    """Base class for every failure raised by the conversation core."""


class CapabilityUnavailable(ConversationError):
    """No speech recognition engine (or no microphone) on this host."""


class RecognizerFailure(ConversationError):
    """A recognition session failed to start or died unexpectedly."""


class TransportFailure(ConversationError):
    """Utterance submission or realtime subscription failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SynthesisFailure(ConversationError):
    """The text-to-speech request failed."""


class PlaybackFailure(ConversationError):
    """Synthesized audio could not be decoded or played."""
