"""Conversation core: state machine, recognizers, finalizer, playback and transport."""

from apps.conversation.errors import (
    CapabilityUnavailable,
    ConversationError,
    PlaybackFailure,
    RecognizerFailure,
    SynthesisFailure,
    TransportFailure,
)
from apps.conversation.models import (
    ActivationOrigin,
    ChatMessage,
    ConversationEvent,
    ConversationState,
    Session,
    Speaker,
)
from apps.conversation.orchestrator import ConversationOrchestrator

__all__ = [
    "ActivationOrigin",
    "CapabilityUnavailable",
    "ChatMessage",
    "ConversationError",
    "ConversationEvent",
    "ConversationOrchestrator",
    "ConversationState",
    "PlaybackFailure",
    "RecognizerFailure",
    "Session",
    "Speaker",
    "SynthesisFailure",
    "TransportFailure",
]
