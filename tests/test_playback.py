"""Tests for playback and the amplitude sampler."""
import asyncio

import numpy as np
import pytest

from conftest import FakeSpeaker, make_wav
from core.errors import PlaybackError
from voice.playback import AmplitudeSampler, PlaybackEngine, PlaybackResult, block_rms, decode_audio


class TestPlay:
    @pytest.mark.asyncio
    async def test_plays_all_frames_in_blocks(self):
        speaker = FakeSpeaker()
        engine = PlaybackEngine(speaker, block_ms=20)

        result = await engine.play(make_wav(0.1))
        assert result == PlaybackResult.COMPLETED

        stream = speaker.streams[0]
        assert sum(len(b) for b in stream.written) == 1600 * 2
        assert len(stream.written) == 5
        assert stream.closed
        assert not engine.is_playing
        assert engine.amplitude == 0.0

    @pytest.mark.asyncio
    async def test_amplitude_tracks_smoothed_rms(self):
        levels = []
        engine = None
        speaker = FakeSpeaker(on_write=lambda: levels.append(engine.amplitude))
        engine = PlaybackEngine(speaker, block_ms=20, smoothing=0.3)

        await engine.play(make_wav(0.5, level=0.5))
        # sine at half scale → RMS ≈ 0.354
        assert levels[0] < levels[5] < levels[-1]
        assert levels[-1] == pytest.approx(0.354, abs=0.02)
        assert all(0.0 <= v <= 1.0 for v in levels)

    @pytest.mark.asyncio
    async def test_stop_aborts_stream(self):
        speaker = FakeSpeaker(realtime=True)
        engine = PlaybackEngine(speaker)

        task = asyncio.create_task(engine.play(make_wav(1.0)))
        await asyncio.sleep(0.1)
        assert engine.is_playing
        engine.stop()

        assert await asyncio.wait_for(task, 0.5) == PlaybackResult.STOPPED
        stream = speaker.streams[0]
        assert stream.aborted
        assert stream.closed
        assert sum(len(b) for b in stream.written) < 16000 * 2
        assert engine.amplitude == 0.0

    @pytest.mark.asyncio
    async def test_cancel_releases_stream(self):
        speaker = FakeSpeaker(realtime=True)
        engine = PlaybackEngine(speaker)

        task = asyncio.create_task(engine.play(make_wav(1.0)))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert speaker.streams[0].closed
        assert not engine.is_playing

    def test_stop_when_idle_is_noop(self):
        PlaybackEngine(FakeSpeaker()).stop()


class TestPlaybackErrors:
    @pytest.mark.asyncio
    async def test_undecodable_audio(self):
        engine = PlaybackEngine(FakeSpeaker())
        with pytest.raises(PlaybackError):
            await engine.play(b"definitely not audio")
        assert not engine.is_playing

    @pytest.mark.asyncio
    async def test_empty_audio(self):
        with pytest.raises(PlaybackError):
            await PlaybackEngine(FakeSpeaker()).play(b"")

    @pytest.mark.asyncio
    async def test_speaker_failure(self):
        engine = PlaybackEngine(FakeSpeaker(fail=True))
        with pytest.raises(PlaybackError):
            await engine.play(make_wav(0.05))
        assert not engine.is_playing
        assert engine.amplitude == 0.0


class TestHelpers:
    def test_decode_shape(self):
        frames, rate = decode_audio(make_wav(0.05, sample_rate=24000))
        assert rate == 24000
        assert frames.shape == (1200, 1)
        assert frames.dtype == np.int16

    def test_block_rms(self):
        assert block_rms(np.zeros((10, 1), dtype=np.int16)) == 0.0
        full = np.full((10, 1), -32768, dtype=np.int16)
        assert block_rms(full) == pytest.approx(1.0)
        assert block_rms(np.zeros((0, 1), dtype=np.int16)) == 0.0


class TestAmplitudeSampler:
    @pytest.mark.asyncio
    async def test_forwards_levels_while_playing(self):
        engine = PlaybackEngine(FakeSpeaker(realtime=True))
        levels = []
        sampler = AmplitudeSampler(engine, levels.append, hz=100)

        sampler.start()
        assert sampler.running
        await engine.play(make_wav(0.3, level=0.8))
        await sampler.stop()

        assert not sampler.running
        assert max(levels) > 0.2
        assert levels[-1] == 0.0

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_sampling(self):
        engine = PlaybackEngine(FakeSpeaker())
        calls = []

        def sink(level):
            calls.append(level)
            if len(calls) == 1:
                raise RuntimeError("canvas gone")

        sampler = AmplitudeSampler(engine, sink, hz=200)
        sampler.start()
        await asyncio.sleep(0.05)
        await sampler.stop()
        assert len(calls) > 2
