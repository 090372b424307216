"""
Audio Capture Service — one bounded recording from the microphone.

    handle = await capture.start_capture()     # owns the mic, 8 s auto-stop armed
    ...
    wav = capture.stop_capture(handle)          # idempotent, releases the mic
    wav = await handle.wait()                   # same bytes, also after auto-stop

Captured PCM is wrapped into a WAV (LINEAR16) container, which Google
speech:recognize accepts directly. No samples → b"".
"""
from __future__ import annotations

import asyncio
import io
import time
import uuid
import structlog
from typing import Optional

import numpy as np
import soundfile as sf

from voice.devices import MicrophoneDevice

logger = structlog.get_logger()

DEFAULT_CAPTURE_TIMEOUT_MS = 8000


def encode_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw little-endian int16 PCM into a WAV container."""
    if not pcm:
        return b""
    samples = np.frombuffer(pcm, dtype=np.int16)
    if channels > 1:
        samples = samples[: len(samples) - len(samples) % channels].reshape(-1, channels)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


class CaptureHandle:
    """A single in-progress (or finished) recording."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.id = uuid.uuid4().hex[:12]
        self.started_at = time.monotonic()
        self.auto_stopped = False
        self.discarded = False
        self._chunks: list[bytes] = []
        self._done: asyncio.Future = loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self._done.done()

    @property
    def captured_bytes(self) -> int:
        return sum(len(c) for c in self._chunks)

    def _on_chunk(self, data: bytes) -> None:
        # Late callbacks from the audio thread can land after close
        if not self.closed:
            self._chunks.append(data)

    async def wait(self) -> bytes:
        """Resolve with the WAV bytes once capture stops (manually, by timeout or discard)."""
        return await asyncio.shield(self._done)


class AudioCaptureService:

    def __init__(self, microphone: MicrophoneDevice, max_duration_ms: int = DEFAULT_CAPTURE_TIMEOUT_MS):
        self.microphone = microphone
        self.max_duration_ms = max_duration_ms

    async def start_capture(self) -> CaptureHandle:
        loop = asyncio.get_running_loop()
        handle = CaptureHandle(loop)
        self.microphone.acquire(handle._on_chunk)
        handle._timer = loop.call_later(self.max_duration_ms / 1000, self._auto_stop, handle)
        logger.info("capture_started", capture_id=handle.id, max_duration_ms=self.max_duration_ms)
        return handle

    def _auto_stop(self, handle: CaptureHandle) -> None:
        if handle.closed:
            return
        handle.auto_stopped = True
        logger.info("capture_auto_stopped", capture_id=handle.id)
        self.stop_capture(handle)

    def stop_capture(self, handle: Optional[CaptureHandle]) -> bytes:
        """Finish the recording and release the microphone. Safe to call repeatedly."""
        if handle is None:
            return b""
        if handle.closed:
            return handle._done.result()

        pcm = b"".join(handle._chunks)
        handle._chunks.clear()
        try:
            self._close(handle)
        finally:
            audio = encode_wav(pcm, self.microphone.sample_rate, self.microphone.channels)
            handle._done.set_result(audio)
        logger.info("capture_stopped", capture_id=handle.id, pcm_bytes=len(pcm),
                    elapsed_ms=int((time.monotonic() - handle.started_at) * 1000))
        return audio

    def discard(self, handle: Optional[CaptureHandle]) -> None:
        """Stop without producing audio; buffered chunks are dropped."""
        if handle is None or handle.closed:
            return
        handle.discarded = True
        handle._chunks.clear()
        try:
            self._close(handle)
        finally:
            handle._done.set_result(b"")
        logger.info("capture_discarded", capture_id=handle.id)

    def _close(self, handle: CaptureHandle) -> None:
        if handle._timer is not None:
            handle._timer.cancel()
            handle._timer = None
        self.microphone.release()
