"""
Audio devices — microphone and speaker behind small abstractions.

The sounddevice implementations run PortAudio callbacks on an audio
thread; every chunk is marshalled back onto the asyncio loop with
call_soon_threadsafe so capture state is only ever touched from the loop.

sounddevice is imported lazily: a host without PortAudio can still run
the HTTP pass-through endpoints and the test suite.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Any, Callable, Optional

from core.errors import DeviceError, PlaybackError

logger = structlog.get_logger()

ChunkCallback = Callable[[bytes], None]


def _import_sounddevice():
    try:
        import sounddevice
    except (ImportError, OSError) as e:
        raise DeviceError(
            "sounddevice / PortAudio is not available on this host. "
            "Install it with: pip install sounddevice"
        ) from e
    return sounddevice


# ══════════════════════════════════════════════════════════════
#  MICROPHONE
# ══════════════════════════════════════════════════════════════

class MicrophoneDevice(abc.ABC):
    """
    An exclusively-owned audio input.

    acquire() starts delivering raw int16 PCM chunks to `on_chunk` on the
    event loop thread; release() stops them. A second acquire() while the
    device is owned raises DeviceError.
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1, block_ms: int = 20):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_ms = block_ms
        self._owned = False

    @property
    def in_use(self) -> bool:
        return self._owned

    def acquire(self, on_chunk: ChunkCallback) -> None:
        if self._owned:
            raise DeviceError("Microphone is already in use by another capture")
        self._start(on_chunk)
        self._owned = True
        logger.debug("microphone_acquired", device=type(self).__name__)

    def release(self) -> None:
        if not self._owned:
            return
        try:
            self._stop()
        finally:
            self._owned = False
            logger.debug("microphone_released", device=type(self).__name__)

    @abc.abstractmethod
    def _start(self, on_chunk: ChunkCallback) -> None:
        ...

    @abc.abstractmethod
    def _stop(self) -> None:
        ...


class SoundDeviceMicrophone(MicrophoneDevice):

    def __init__(self, sample_rate: int = 16000, channels: int = 1, block_ms: int = 20,
                 device: Optional[Any] = None):
        super().__init__(sample_rate, channels, block_ms)
        self.device = device
        self._stream = None

    def _start(self, on_chunk: ChunkCallback) -> None:
        sd = _import_sounddevice()
        loop = asyncio.get_running_loop()

        def _callback(indata, frames, time_info, status):
            if status:
                logger.debug("microphone_status", status=str(status))
            loop.call_soon_threadsafe(on_chunk, bytes(indata))

        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.block_ms / 1000),
                device=self.device,
                callback=_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            logger.error("microphone_open_failed", device=self.device, error=str(e))
            raise DeviceError(f"Could not open microphone: {e}") from e

    def _stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


# ══════════════════════════════════════════════════════════════
#  SPEAKER
# ══════════════════════════════════════════════════════════════

class SpeakerStream(abc.ABC):
    """One open output stream, scoped to a single play() call."""

    @abc.abstractmethod
    async def write(self, frames: bytes) -> None:
        ...

    @abc.abstractmethod
    def abort(self) -> None:
        """Drop whatever is queued and stop producing sound now."""
        ...

    @abc.abstractmethod
    def close(self) -> None:
        ...


class SpeakerDevice(abc.ABC):

    @abc.abstractmethod
    def open(self, sample_rate: int, channels: int) -> SpeakerStream:
        ...


class _SoundDeviceStream(SpeakerStream):

    def __init__(self, stream):
        self._stream = stream

    async def write(self, frames: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._stream.write, frames)
        except Exception as e:
            raise PlaybackError(f"Speaker write failed: {e}") from e

    def abort(self) -> None:
        self._stream.abort()

    def close(self) -> None:
        self._stream.close()


class SoundDeviceSpeaker(SpeakerDevice):

    def __init__(self, device: Optional[Any] = None):
        self.device = device

    def open(self, sample_rate: int, channels: int) -> SpeakerStream:
        try:
            sd = _import_sounddevice()
        except DeviceError as e:
            raise PlaybackError(str(e)) from e
        try:
            stream = sd.RawOutputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="int16",
                device=self.device,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            logger.error("speaker_open_failed", device=self.device, error=str(e))
            raise PlaybackError(f"Could not open speaker: {e}") from e
        return _SoundDeviceStream(stream)
