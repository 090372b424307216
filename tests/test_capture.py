"""Tests for the audio capture service."""
import asyncio
import io
import time

import numpy as np
import pytest
import soundfile as sf

from conftest import SPEECH_CHUNK, FakeMicrophone
from core.errors import DeviceError
from voice.capture import DEFAULT_CAPTURE_TIMEOUT_MS, AudioCaptureService, encode_wav


@pytest.fixture
def microphone():
    return FakeMicrophone()


@pytest.fixture
def capture(microphone):
    return AudioCaptureService(microphone, max_duration_ms=5000)


class TestStopCapture:
    @pytest.mark.asyncio
    async def test_stop_returns_wav_of_captured_pcm(self, capture, microphone):
        handle = await capture.start_capture()
        microphone.feed(SPEECH_CHUNK)
        microphone.feed(SPEECH_CHUNK)

        audio = capture.stop_capture(handle)
        samples, rate = sf.read(io.BytesIO(audio), dtype="int16")
        assert rate == 16000
        assert samples.tobytes() == SPEECH_CHUNK * 2
        assert not microphone.in_use

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, capture, microphone):
        handle = await capture.start_capture()
        microphone.feed(SPEECH_CHUNK)

        first = capture.stop_capture(handle)
        second = capture.stop_capture(handle)
        assert first == second
        assert await handle.wait() == first

    @pytest.mark.asyncio
    async def test_stop_none_is_noop(self, capture):
        assert capture.stop_capture(None) == b""
        capture.discard(None)

    @pytest.mark.asyncio
    async def test_zero_bytes_gives_empty_result(self, capture):
        handle = await capture.start_capture()
        assert capture.stop_capture(handle) == b""

    @pytest.mark.asyncio
    async def test_chunks_after_stop_ignored(self, capture, microphone):
        handle = await capture.start_capture()
        on_chunk = microphone.on_chunk
        microphone.feed(SPEECH_CHUNK)
        audio = capture.stop_capture(handle)

        on_chunk(SPEECH_CHUNK)
        assert handle.captured_bytes == 0
        assert capture.stop_capture(handle) == audio


class TestAutoStop:
    def test_default_timeout_is_eight_seconds(self, microphone):
        assert DEFAULT_CAPTURE_TIMEOUT_MS == 8000
        assert AudioCaptureService(microphone).max_duration_ms == 8000

    @pytest.mark.asyncio
    async def test_auto_stop_fires_without_manual_stop(self, microphone):
        capture = AudioCaptureService(microphone, max_duration_ms=50)
        started = time.monotonic()
        handle = await capture.start_capture()
        microphone.feed(SPEECH_CHUNK)

        audio = await asyncio.wait_for(handle.wait(), 1.0)
        elapsed = time.monotonic() - started
        assert handle.auto_stopped
        assert elapsed >= 0.045
        assert len(audio) > 0
        assert not microphone.in_use

    @pytest.mark.asyncio
    async def test_manual_stop_cancels_timer(self, microphone):
        capture = AudioCaptureService(microphone, max_duration_ms=50)
        handle = await capture.start_capture()
        capture.stop_capture(handle)
        await asyncio.sleep(0.08)
        assert not handle.auto_stopped


class TestOwnership:
    @pytest.mark.asyncio
    async def test_second_capture_while_owned_fails(self, capture):
        handle = await capture.start_capture()
        with pytest.raises(DeviceError):
            await capture.start_capture()
        capture.stop_capture(handle)

        handle = await capture.start_capture()
        capture.stop_capture(handle)

    @pytest.mark.asyncio
    async def test_permission_failure_is_device_error(self):
        capture = AudioCaptureService(FakeMicrophone(fail=True))
        with pytest.raises(DeviceError):
            await capture.start_capture()

    @pytest.mark.asyncio
    async def test_discard_drops_buffer_and_releases(self, capture, microphone):
        handle = await capture.start_capture()
        microphone.feed(SPEECH_CHUNK)
        capture.discard(handle)

        assert await handle.wait() == b""
        assert handle.discarded
        assert not microphone.in_use
        assert capture.stop_capture(handle) == b""


class TestEncodeWav:
    def test_empty_pcm(self):
        assert encode_wav(b"", 16000) == b""

    def test_stereo_frames(self):
        pcm = np.array([1, -1, 2, -2], dtype=np.int16).tobytes()
        samples, rate = sf.read(io.BytesIO(encode_wav(pcm, 8000, channels=2)), dtype="int16")
        assert rate == 8000
        assert samples.shape == (2, 2)
