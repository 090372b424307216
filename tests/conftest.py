"""Shared test fixtures for VoicePreview."""
import asyncio
import io
from typing import Callable, Optional

import numpy as np
import pytest
import soundfile as sf

from config.settings import VoiceConfig
from core.errors import DeviceError, PlaybackError
from models.schemas import AgentConfig, OrchestratorState, SessionEvent, SessionEventType, WorkingHours
from voice.capture import AudioCaptureService
from voice.devices import MicrophoneDevice, SpeakerDevice, SpeakerStream
from voice.playback import PlaybackEngine
from voice.providers import LanguageModel, SpeechPipeline, SpeechToText, TextToSpeech
from voice.session import SessionContext


def make_wav(duration_s: float = 0.1, sample_rate: int = 16000, level: float = 0.5,
             freq: float = 440.0) -> bytes:
    """A mono sine tone as WAV bytes."""
    t = np.arange(int(duration_s * sample_rate)) / sample_rate
    samples = (np.sin(2 * np.pi * freq * t) * level * 32767).astype(np.int16)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


# 20 ms of low-level noise at 16 kHz
SPEECH_CHUNK = (np.arange(320, dtype=np.int16) % 64 - 32).astype(np.int16).tobytes()


# ──────────────────────────────────────────────────────────────
#  Fake adapters
# ──────────────────────────────────────────────────────────────

class _Scripted:
    """Hands out scripted results in order; Exceptions in the script are raised."""

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls = []

    def _next(self):
        if not self.script:
            return self.default
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeSTT(_Scripted, SpeechToText):
    def __init__(self, script=None, default=""):
        super().__init__(script, default)

    async def transcribe(self, audio, language):
        self.calls.append({"audio": audio, "language": language})
        return self._next()


class FakeLLM(_Scripted, LanguageModel):
    def __init__(self, script=None, default="Хорошо."):
        super().__init__(script, default)

    async def generate(self, context, system_prompt, model, temperature, max_tokens):
        self.calls.append({
            "context": context, "system_prompt": system_prompt, "model": model,
            "temperature": temperature, "max_tokens": max_tokens,
        })
        return self._next()


class FakeTTS(_Scripted, TextToSpeech):
    def __init__(self, script=None, default=None):
        super().__init__(script, default if default is not None else make_wav(0.06))

    async def synthesize(self, text, voice_name, language, speaking_rate=1.0, pitch=0.0):
        self.calls.append({
            "text": text, "voice_name": voice_name, "language": language,
            "speaking_rate": speaking_rate, "pitch": pitch,
        })
        return self._next()


# ──────────────────────────────────────────────────────────────
#  Fake devices
# ──────────────────────────────────────────────────────────────

class FakeMicrophone(MicrophoneDevice):
    """Delivers `chunks` right after every acquire; can be told to fail."""

    def __init__(self, chunks: Optional[list[bytes]] = None, fail: bool = False, sample_rate: int = 16000):
        super().__init__(sample_rate=sample_rate)
        self.chunks = list(chunks or [])
        self.fail = fail
        self.on_chunk = None
        self.opened = 0

    def _start(self, on_chunk):
        if self.fail:
            raise DeviceError("Permission denied")
        self.opened += 1
        self.on_chunk = on_chunk
        loop = asyncio.get_running_loop()
        for chunk in self.chunks:
            loop.call_soon(on_chunk, chunk)

    def _stop(self):
        self.on_chunk = None

    def feed(self, chunk: bytes):
        self.on_chunk(chunk)


class FakeSpeakerStream(SpeakerStream):
    def __init__(self, realtime: bool, block_seconds: Callable[[int], float], on_write=None):
        self.realtime = realtime
        self.block_seconds = block_seconds
        self.on_write = on_write
        self.written: list[bytes] = []
        self.aborted = False
        self.closed = False

    async def write(self, frames: bytes) -> None:
        if self.aborted:
            raise PlaybackError("stream aborted")
        self.written.append(frames)
        if self.on_write is not None:
            self.on_write()
        await asyncio.sleep(self.block_seconds(len(frames)) if self.realtime else 0)

    def abort(self) -> None:
        self.aborted = True

    def close(self) -> None:
        self.closed = True


class FakeSpeaker(SpeakerDevice):
    def __init__(self, realtime: bool = False, fail: bool = False, on_write=None):
        self.realtime = realtime
        self.fail = fail
        self.on_write = on_write
        self.streams: list[FakeSpeakerStream] = []

    def open(self, sample_rate, channels):
        if self.fail:
            raise PlaybackError("No output device")
        stream = FakeSpeakerStream(
            self.realtime, lambda n: n / 2 / channels / sample_rate, on_write=self.on_write,
        )
        self.streams.append(stream)
        return stream


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def agent() -> AgentConfig:
    return AgentConfig(
        id="agent_test",
        name="Тестовый агент",
        fallback_message="Извините, я вас не расслышал.",
        working_hours=WorkingHours(enabled=False),
    )


@pytest.fixture
def almaty_agent() -> AgentConfig:
    return AgentConfig(
        id="agent_almaty",
        name="Алматы",
        working_hours=WorkingHours(
            enabled=True, timezone="Asia/Almaty", start="09:00", end="18:00",
            work_days=[1, 2, 3, 4, 5],
        ),
    )


@pytest.fixture
def voice_config() -> VoiceConfig:
    return VoiceConfig(capture_timeout_ms=30, visualizer_hz=50)


@pytest.fixture
def make_orchestrator(agent, voice_config):
    """Build a TurnOrchestrator around fakes; every part can be overridden."""
    from voice.orchestrator import TurnOrchestrator

    def _make(stt=None, llm=None, tts=None, microphone=None, speaker=None,
              config: AgentConfig = None, voice: VoiceConfig = None, amplitude_sink=None):
        voice = voice or voice_config
        pipeline = SpeechPipeline(stt=stt or FakeSTT(), llm=llm or FakeLLM(), tts=tts or FakeTTS())
        ctx = SessionContext(config or agent, actor_id="tester", amplitude_sink=amplitude_sink)
        capture = AudioCaptureService(
            microphone or FakeMicrophone(chunks=[SPEECH_CHUNK] * 3),
            max_duration_ms=voice.capture_timeout_ms,
        )
        playback = PlaybackEngine(speaker or FakeSpeaker(), block_ms=voice.playback_block_ms)
        return TurnOrchestrator(ctx, pipeline, capture, playback, voice=voice)

    return _make


async def wait_for_event(ctx: SessionContext, predicate: Callable[[SessionEvent], bool],
                         timeout: float = 3.0, seen: Optional[list] = None) -> SessionEvent:
    """Drain events until one matches; everything drained is appended to `seen`."""
    async def _drain():
        while True:
            event = await ctx.next_event()
            if seen is not None:
                seen.append(event)
            if predicate(event):
                return event

    return await asyncio.wait_for(_drain(), timeout)


def entered(state: OrchestratorState) -> Callable[[SessionEvent], bool]:
    return lambda e: e.type == SessionEventType.STATE_CHANGED and e.state == state


def drain(ctx: SessionContext) -> list[SessionEvent]:
    events = []
    while not ctx.events.empty():
        events.append(ctx.events.get_nowait())
    return events
