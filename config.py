"""
config.py — Stella Voice Client · Runtime Configuration
========================================================
Pydantic models for every tunable parameter of the conversation core.
Serialises to / deserialises from JSON.  Used by:
  • server.py     — GET/PUT /config endpoints
  • assistant.py  — builds the orchestrator and its collaborators from it
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

log = logging.getLogger("stella.config")


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class HotwordConfig(BaseModel):
    """Wake phrase matching (passive recognizer)."""
    variants: list[str] = Field(
        default_factory=lambda: ["stella", "estela", "tela", "stelar", "stel"],
        description="Phonetic variants of the wake word, matched as substrings",
    )
    leading_tokens: list[str] = Field(
        default_factory=lambda: ["ste", "este"],
        description="Leading-syllable tokens for the misrecognition fallback",
    )
    trailing_tokens: list[str] = Field(
        default_factory=lambda: ["la"],
        description="Trailing-syllable tokens for the misrecognition fallback",
    )


class TimingConfig(BaseModel):
    """Timers owned by the orchestrator and its companions (milliseconds)."""
    wake_transition_ms: int = Field(default=400, ge=0, le=10000, description="WakeListening → ActiveListening delay")
    inactivity_timeout_ms: int = Field(default=1600, ge=0, le=30000, description="Silence before an utterance is flushed")
    passive_restart_ms: int = Field(default=350, ge=0, le=10000, description="Hotword recognizer restart backoff")
    active_restart_ms: int = Field(default=300, ge=0, le=10000, description="Active recognizer restart backoff")
    max_recognizer_restarts: int = Field(
        default=10, ge=1, le=1000,
        description="Consecutive restarts without a fragment before a recognizer gives up",
    )

    @model_validator(mode="after")
    def _silence_outlasts_restart(self) -> "TimingConfig":
        # a routine active-recognizer restart must not flush half an utterance
        if self.inactivity_timeout_ms <= self.active_restart_ms:
            raise ValueError(
                f"inactivity_timeout_ms ({self.inactivity_timeout_ms}) must exceed "
                f"active_restart_ms ({self.active_restart_ms})"
            )
        return self


class RecognizerConfig(BaseModel):
    """Deepgram live transcription parameters."""
    model: str = Field(default="nova-3", description="Deepgram model")
    language: str = Field(default="pt-BR", description="Recognition language")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Microphone sample rate (Hz)")
    blocksize: int = Field(default=1280, ge=128, description="Microphone frames per block")
    passive_alternatives: int = Field(default=3, ge=1, le=10, description="Alternatives for the hotword recognizer")
    active_alternatives: int = Field(default=5, ge=1, le=10, description="Alternatives for the active recognizer")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Silence endpointing (ms)")


class SynthesisConfig(BaseModel):
    """ElevenLabs text-to-speech parameters."""
    voice_id: str = Field(default="mPDAoQyGzxBSkE0OAOKw", description="ElevenLabs voice ID")
    model: str = Field(default="eleven_multilingual_v2", description="TTS model")
    output_format: str = Field(default="mp3_44100_128", description="Audio output format")
    speed: float = Field(default=1.15, ge=0.7, le=1.2, description="Speaking-rate multiplier")
    base_url: str = Field(default="https://api.elevenlabs.io/v1", description="API base URL")
    timeout_sec: float = Field(default=15.0, gt=0, description="Request timeout (seconds)")


class TransportConfig(BaseModel):
    """Backend HTTP endpoint and realtime channel."""
    backend_url: str = Field(default="http://localhost:8000", description="Backend base URL")
    process_path: str = Field(default="/speech/process", description="Utterance submission path")
    user_id: str = Field(default="user123", description="User identifier sent with every utterance")
    request_timeout_sec: float = Field(default=10.0, gt=0, description="HTTP timeout (seconds)")
    pusher_cluster: str = Field(default="us2", description="Pusher cluster")
    pusher_auth_endpoint: str = Field(
        default="http://localhost:8000/auth/pusher",
        description="Private channel authorisation endpoint",
    )
    channel: str = Field(default="private-agent-123", description="Realtime channel name")
    event: str = Field(default="server-speech-output", description="Inbound speech event name")
    subscribe_timeout_sec: float = Field(default=5.0, gt=0, description="Connect + subscribe timeout (seconds)")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class AssistantConfig(BaseModel):
    """Complete runtime configuration for the voice client."""
    hotword: HotwordConfig = Field(default_factory=HotwordConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    recognizer: RecognizerConfig = Field(default_factory=RecognizerConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "AssistantConfig":
        """Read the saved config, falling back to defaults.

        A missing file is normal on first run.  An unreadable or invalid one is
        logged and ignored so the client still starts.
        """
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_unreadable path=%s error=%s", p, exc)
            return cls()
        try:
            config = cls.model_validate(data)
        except ValidationError as exc:
            fields = ",".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            log.warning("event=config_invalid path=%s fields=%s", p, fields)
            return cls()
        log.info("event=config_loaded path=%s", p)
        return config

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON, replacing the old file in one step."""
        p = Path(path)
        tmp = p.with_name(p.name + ".tmp")
        tmp.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        tmp.replace(p)
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "AssistantConfig":
        """Return a new config with `patch` laid over this one.

            {"timing": {"inactivity_timeout_ms": 2000}}

        changes only that timer.  Unknown keys raise ValueError instead of
        being dropped, so a typo in a section name cannot pass as a no-op.
        """
        if not isinstance(patch, dict):
            raise ValueError("config patch must be a JSON object")
        merged = self.model_dump()
        _apply_patch(merged, patch, ())
        return AssistantConfig.model_validate(merged)


def _apply_patch(target: dict, patch: dict, path: tuple[str, ...]) -> None:
    for key, value in patch.items():
        where = path + (key,)
        if key not in target:
            raise ValueError(f"unknown config key: {'.'.join(where)}")
        if isinstance(target[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"config section {'.'.join(where)} must be an object")
            _apply_patch(target[key], value, where)
        else:
            target[key] = value
