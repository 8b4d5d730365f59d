"""
assistant.py — Stella Voice Client · Headless Runner
=====================================================
Composition root: builds the conversation orchestrator and its concrete
collaborators from config + environment, and runs it until interrupted.

Usage
-----
    python assistant.py [config.json]

Stack
-----
Microphone (sounddevice)
    → Deepgram live transcription (passive hotword / active conversation)
    → ConversationOrchestrator
    → POST {backend}/speech/process            (utterance out)
    ← Pusher private channel server-speech-output (response in)
    → ElevenLabs TTS → sounddevice playback
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from config import AssistantConfig
from apps.conversation.audio_output import SoundDevicePlayer
from apps.conversation.deepgram_engine import DeepgramRecognitionEngine
from apps.conversation.models import ConversationEvent
from apps.conversation.orchestrator import ConversationOrchestrator
from apps.conversation.playback import ElevenLabsSynthesizer
from apps.conversation.transport import SessionTransport, pusher_factory

log = logging.getLogger("stella.assistant")

CONFIG_PATH = os.getenv("STELLA_CONFIG", "stella_config.json")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )


def build_orchestrator(config: AssistantConfig) -> ConversationOrchestrator:
    """Wire the orchestrator to the real engines.  Secrets come from the environment."""
    deepgram_key = os.getenv("DEEPGRAM_API_KEY")
    elevenlabs_key = os.getenv("ELEVENLABS_API_KEY")
    pusher_key = os.getenv("PUSHER_APP_KEY")

    if not deepgram_key:
        log.warning("event=missing_secret name=DEEPGRAM_API_KEY effect=hotword_disabled")
    if not elevenlabs_key:
        log.warning("event=missing_secret name=ELEVENLABS_API_KEY effect=silent_responses")
    if not pusher_key:
        log.warning("event=missing_secret name=PUSHER_APP_KEY effect=no_realtime_responses")

    return ConversationOrchestrator(
        config,
        engine=DeepgramRecognitionEngine(deepgram_key, config.recognizer),
        transport=SessionTransport(config.transport, pusher_factory(pusher_key, config.transport)),
        synthesizer=ElevenLabsSynthesizer(elevenlabs_key, config.synthesis),
        player=SoundDevicePlayer(),
    )


def _log_event(event: ConversationEvent) -> None:
    if event.kind == "chat":
        log.info("[%s] %s", event.payload["speaker"], event.payload["text"])
    elif event.kind == "notice":
        log.warning("notice: %s", event.payload["message"])


async def main(config_path: Optional[str] = None) -> None:
    config = AssistantConfig.load(config_path or CONFIG_PATH)
    orchestrator = build_orchestrator(config)
    orchestrator.subscribe(_log_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows

    await orchestrator.start()
    log.info("event=assistant_ready hotword=%s", orchestrator.capabilities.hotword)
    try:
        await stop.wait()
    finally:
        log.info("event=assistant_shutdown")
        await orchestrator.close()


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
    except KeyboardInterrupt:
        log.info("event=assistant_interrupted")
