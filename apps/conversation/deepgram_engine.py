"""Deepgram live-transcription engine.

Microphone (sounddevice, int16 mono) → websocket → Deepgram /v1/listen.
Only final results are surfaced.  Each RecognitionSession owns its own
InputStream and websocket; the handle guarantees that at most one session
per role runs, and the orchestrator guarantees at most one role runs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional
from urllib.parse import urlencode

import sounddevice as sd
import websockets

from apps.conversation.errors import RecognizerFailure
from apps.conversation.recognizer import RecognitionEngine, RecognitionSession

log = logging.getLogger("stella.deepgram")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
AUDIO_QUEUE_MAX = 200   # ~16 s of 80 ms blocks


class DeepgramRecognitionSession(RecognitionSession):
    def __init__(self, api_key: str, config, alternatives: int) -> None:
        super().__init__()
        self._api_key = api_key
        self._config = config
        self._alternatives = alternatives
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._audio: asyncio.Queue[bytes] = asyncio.Queue(maxsize=AUDIO_QUEUE_MAX)
        self._mic: Optional[sd.InputStream] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def url(self) -> str:
        params = {
            "model": self._config.model,
            "language": self._config.language,
            "encoding": "linear16",
            "sample_rate": self._config.sample_rate,
            "channels": 1,
            "interim_results": "false",
            "punctuate": "true",
            "smart_format": "true",
            "alternatives": self._alternatives,
            "endpointing": self._config.endpointing,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._mic = sd.InputStream(
                samplerate=self._config.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self._config.blocksize,
                callback=self._audio_callback,
            )
            self._mic.start()
        except Exception as exc:
            self._close_mic()
            raise RecognizerFailure(f"microphone unavailable: {exc}") from exc
        self._task = self._loop.create_task(self._run(), name="deepgram_session")
        log.debug("event=mic_started sample_rate=%d", self._config.sample_rate)

    def stop(self) -> None:
        self._stopping = True
        self._close_mic()
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    # -- audio thread ---------------------------------------------------------

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        if self._loop is None or self._stopping:
            return
        chunk = bytes(indata)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, chunk)
        except RuntimeError:
            pass  # loop closed during shutdown

    def _enqueue(self, chunk: bytes) -> None:
        try:
            self._audio.put_nowait(chunk)
        except asyncio.QueueFull:
            log.debug("event=mic_frame_dropped reason=queue_full")

    def _close_mic(self) -> None:
        if self._mic is None:
            return
        try:
            self._mic.stop()
            self._mic.close()
        except Exception:
            pass
        self._mic = None

    # -- event loop -----------------------------------------------------------

    async def _run(self) -> None:
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            async with websockets.connect(self.url, additional_headers=headers) as ws:
                log.info("event=ws_connected provider=deepgram")
                sender = asyncio.create_task(self._sender(ws), name="deepgram_sender")
                try:
                    async for message in ws:
                        self._handle_message(message)
                finally:
                    sender.cancel()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            if not self._stopping:
                self._emit_error(RecognizerFailure(f"deepgram stream failed: {exc}"))
        finally:
            self._close_mic()
        if not self._stopping:
            self._emit_ended()

    async def _sender(self, ws) -> None:
        try:
            while True:
                chunk = await self._audio.get()
                await ws.send(chunk)
        except asyncio.CancelledError:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
            except Exception:
                pass
            raise

    def _handle_message(self, message) -> None:
        try:
            msg = json.loads(message)
        except (TypeError, ValueError):
            log.debug("event=ws_non_json_message")
            return
        if msg.get("type") != "Results" or not msg.get("is_final"):
            return
        alternatives = msg.get("channel", {}).get("alternatives") or [{}]
        transcript = (alternatives[0].get("transcript") or "").strip()
        if transcript:
            log.debug("event=stt_final transcript_len=%d", len(transcript))
            self._emit_fragment(transcript)


class DeepgramRecognitionEngine(RecognitionEngine):
    name = "deepgram"

    def __init__(self, api_key: Optional[str], config) -> None:
        self._api_key = api_key
        self._config = config

    def is_available(self) -> bool:
        return bool(self._api_key)

    def has_microphone(self) -> bool:
        try:
            sd.query_devices(kind="input")
        except Exception as exc:
            log.warning("event=no_input_device error=%s", exc)
            return False
        return True

    def create_session(self, *, alternatives: int) -> DeepgramRecognitionSession:
        return DeepgramRecognitionSession(self._api_key or "", self._config, alternatives)
