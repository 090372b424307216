"""
Playback & Visualization Engine.

PlaybackEngine.play() decodes TTS audio (MP3 or WAV) with soundfile and
streams it to the speaker in fixed 20 ms blocks. Before each block the
engine updates `amplitude`, an exponentially smoothed RMS level in
[0, 1] that a visual indicator can poll.

AmplitudeSampler is that poller: a periodic task (30 Hz by default)
reading the engine and forwarding the level to a sink callable. It only
reads, so the orchestrator never has to coordinate with it.
"""
from __future__ import annotations

import asyncio
import io
import structlog
from enum import Enum
from typing import Callable, Optional

import numpy as np
import soundfile as sf

from core.errors import PlaybackError
from voice.devices import SpeakerDevice, SpeakerStream

logger = structlog.get_logger()

AmplitudeSink = Callable[[float], None]


class PlaybackResult(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"


def decode_audio(audio: bytes) -> tuple[np.ndarray, int]:
    """Decode compressed audio into int16 frames shaped (n, channels)."""
    if not audio:
        raise PlaybackError("No audio to play")
    try:
        frames, sample_rate = sf.read(io.BytesIO(audio), dtype="int16", always_2d=True)
    except (RuntimeError, ValueError, TypeError) as e:
        raise PlaybackError(f"Could not decode audio: {e}") from e
    return frames, sample_rate


def block_rms(block: np.ndarray) -> float:
    if block.size == 0:
        return 0.0
    samples = block.astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(samples * samples)))


class PlaybackEngine:

    def __init__(self, speaker: SpeakerDevice, block_ms: int = 20, smoothing: float = 0.3):
        self.speaker = speaker
        self.block_ms = block_ms
        self.smoothing = smoothing
        self._amplitude = 0.0
        self._stream: Optional[SpeakerStream] = None
        self._playing = False
        self._stop_requested = False

    @property
    def amplitude(self) -> float:
        return self._amplitude

    @property
    def is_playing(self) -> bool:
        return self._playing

    async def play(self, audio: bytes) -> PlaybackResult:
        if self._playing:
            raise PlaybackError("Playback already in progress")

        frames, sample_rate = decode_audio(audio)
        block = max(1, sample_rate * self.block_ms // 1000)

        self._playing = True
        self._stop_requested = False
        result = PlaybackResult.COMPLETED
        try:
            self._stream = self.speaker.open(sample_rate, frames.shape[1])
            logger.debug("playback_started", frames=len(frames), sample_rate=sample_rate)

            for offset in range(0, len(frames), block):
                if self._stop_requested:
                    result = PlaybackResult.STOPPED
                    break
                chunk = frames[offset:offset + block]
                self._update_amplitude(chunk)
                try:
                    await self._stream.write(chunk.tobytes())
                except PlaybackError:
                    # abort() from stop() makes the pending write fail
                    if self._stop_requested:
                        result = PlaybackResult.STOPPED
                        break
                    raise
        except asyncio.CancelledError:
            self._abort_stream()
            raise
        finally:
            self._release()

        logger.info("playback_finished", result=result.value)
        return result

    def stop(self) -> None:
        """Abort the current stream immediately. No-op when nothing plays."""
        if not self._playing:
            return
        self._stop_requested = True
        self._abort_stream()
        self._amplitude = 0.0

    def _update_amplitude(self, chunk: np.ndarray) -> None:
        level = block_rms(chunk)
        self._amplitude += (level - self._amplitude) * self.smoothing
        self._amplitude = min(1.0, max(0.0, self._amplitude))

    def _abort_stream(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.abort()
        except Exception as e:
            logger.warning("playback_abort_failed", error=str(e))

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        self._playing = False
        self._amplitude = 0.0
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.warning("playback_close_failed", error=str(e))


class AmplitudeSampler:
    """Polls a PlaybackEngine's amplitude at a fixed rate and feeds a sink."""

    def __init__(self, source: PlaybackEngine, sink: AmplitudeSink, hz: int = 30):
        self.source = source
        self.sink = sink
        self.interval = 1.0 / max(1, hz)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.sink(0.0)

    async def _run(self) -> None:
        while True:
            try:
                self.sink(self.source.amplitude)
            except Exception as e:
                logger.warning("amplitude_sink_failed", error=str(e))
            await asyncio.sleep(self.interval)
