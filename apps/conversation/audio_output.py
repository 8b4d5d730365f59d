"""Local audio output: decode synthesized audio and play it on the default device."""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from typing import Optional

import numpy as np
import sounddevice as sd
import soundfile as sf

from apps.conversation.errors import PlaybackFailure
from apps.conversation.playback import AudioPlayer, PlaybackHandle

log = logging.getLogger("stella.playback")


class SoundDevicePlayback(PlaybackHandle):
    """In-memory playback through an sd.OutputStream.

    The sounddevice callback drains the decoded samples on the audio thread
    and stops the stream when they run out; finished_callback then signals
    the event loop.
    """

    BLOCKSIZE = 1024

    def __init__(self, samples: np.ndarray, samplerate: int) -> None:
        self._samples = samples
        self._samplerate = samplerate
        self._pos = 0
        self._lock = threading.Lock()
        self._stream: Optional[sd.OutputStream] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done = asyncio.Event()

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._stream = sd.OutputStream(
                samplerate=self._samplerate,
                channels=1,
                dtype="float32",
                callback=self._callback,
                blocksize=self.BLOCKSIZE,
                finished_callback=self._on_finished,
            )
            self._stream.start()
        except Exception as exc:
            self.release()
            raise PlaybackFailure(f"output stream failed: {exc}") from exc

    async def wait(self) -> None:
        await self._done.wait()

    def release(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except Exception:
                pass
        with self._lock:
            self._pos = len(self._samples)

    # -- sounddevice audio-thread callbacks --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status) -> None:
        if status:
            log.warning("event=playback_status status=%s", status)
        with self._lock:
            chunk = self._samples[self._pos:self._pos + frames]
            self._pos += len(chunk)
        outdata[:len(chunk), 0] = chunk
        if len(chunk) < frames:
            outdata[len(chunk):, 0] = 0.0
            raise sd.CallbackStop

    def _on_finished(self) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._done.set)
        except RuntimeError:
            pass  # loop closed during shutdown


class SoundDevicePlayer(AudioPlayer):
    def load(self, audio: bytes) -> SoundDevicePlayback:
        try:
            data, samplerate = sf.read(io.BytesIO(audio), dtype="float32")
        except Exception as exc:
            raise PlaybackFailure(f"could not decode audio: {exc}") from exc
        if data.ndim == 2:
            data = data[:, 0]  # mono
        return SoundDevicePlayback(np.ascontiguousarray(data), samplerate)

