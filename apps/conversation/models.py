"""Shared data model of the conversation core."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ConversationState(Enum):
    IDLE = "idle"
    WAKE_LISTENING = "wake-listening"
    ACTIVE_LISTENING = "active-listening"
    SPEAKING = "speaking"
    PAUSED = "paused"


class ActivationOrigin(Enum):
    HOTWORD = "hotword"
    TOUCH = "touch"
    MANUAL = "manual"


class FlushReason(Enum):
    TIMEOUT = "timeout"
    MANUAL = "manual"


class Speaker(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """One line of the conversation log."""
    speaker: Speaker
    text: str


@dataclass
class Session:
    """One logical conversation, scoped by an opaque id."""
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time view of the orchestrator handed to deferred continuations."""
    state: ConversationState
    generation: int
    session_id: Optional[str]


@dataclass(frozen=True)
class Capabilities:
    """What the host platform offers, detected once at start."""
    recognition: bool
    microphone: bool
    reason: Optional[str] = None

    @property
    def hotword(self) -> bool:
        return self.recognition and self.microphone


class ConversationEvent(BaseModel):
    """Observer notification published by the orchestrator.

    kind is one of: state, chat, transcript, hotword, voice_loading, notice.
    """
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ts: float = Field(default_factory=time.time)
