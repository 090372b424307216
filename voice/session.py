"""
Session context and registry.

A SessionContext is everything one test conversation owns: the frozen
agent snapshot, the history ledger, the single-in-flight lock and the
event queue the UI drains. It is created when a session starts and torn
down when the session ends; nothing in it is shared between sessions.

SessionManager keys live orchestrators by session id and wires each one
to the speech pipeline and the local audio devices.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from config.settings import VoiceConfig, get_settings
from core.errors import SessionNotFoundError, StageInFlightError
from models.schemas import (
    AgentConfig, ConversationTurn, OrchestratorState, SessionEvent, SessionEventType,
)
from voice.history import ConversationLedger

logger = structlog.get_logger()

# Undelivered events kept per session; the oldest is dropped beyond this
MAX_PENDING_EVENTS = 256

# Ended sessions kept addressable (save, final snapshot) after teardown
RETAINED_ENDED_SESSIONS = 32


class SessionContext:

    def __init__(
        self,
        agent: AgentConfig,
        session_id: str = "",
        actor_id: str = "",
        amplitude_sink: Optional[Callable[[float], None]] = None,
    ):
        self.agent = agent
        self.actor_id = actor_id
        self.ledger = ConversationLedger(session_id=session_id, agent_id=agent.id)
        self.session_id = self.ledger.session_id
        self.amplitude_sink = amplitude_sink
        self.in_flight = asyncio.Lock()
        self.current_stage: Optional[str] = None
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        self.state = OrchestratorState.IDLE
        self.created_at = datetime.now(timezone.utc)

    @asynccontextmanager
    async def stage(self, name: str) -> AsyncIterator[None]:
        """Hold the session's single in-flight slot for one adapter call."""
        if self.in_flight.locked():
            logger.warning("stage_rejected", session_id=self.session_id,
                           stage=name, busy_with=self.current_stage)
            raise StageInFlightError(self.session_id, name)
        async with self.in_flight:
            self.current_stage = name
            try:
                yield
            finally:
                self.current_stage = None

    def emit(self, event_type: SessionEventType, message: str = "",
             turn: Optional[ConversationTurn] = None) -> SessionEvent:
        event = SessionEvent(
            type=event_type,
            session_id=self.session_id,
            state=self.state,
            message=message,
            turn=turn,
        )
        if self.events.full():
            dropped = self.events.get_nowait()
            logger.debug("session_event_dropped", session_id=self.session_id, type=dropped.type.value)
        self.events.put_nowait(event)
        return event

    async def next_event(self, timeout: Optional[float] = None) -> SessionEvent:
        if timeout is None:
            return await self.events.get()
        return await asyncio.wait_for(self.events.get(), timeout)

    def snapshot(self) -> dict:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent.id,
            "state": self.state.value,
            "stage": self.current_stage,
            "turns": [t.model_dump(mode="json") for t in self.ledger.turns()],
            "finalized": self.ledger.finalized,
            "created_at": self.created_at.isoformat(),
        }


# ══════════════════════════════════════════════════════════════
#  SESSION REGISTRY
# ══════════════════════════════════════════════════════════════

class SessionManager:
    """
    Creates, tracks and tears down orchestrated sessions.

    `device_factory` returns a fresh (AudioCaptureService, PlaybackEngine)
    pair per session; the default one uses sounddevice. A session leaves
    the live registry when it ends. The last few ended sessions stay
    reachable through get()/find() so they can still be saved.
    """

    def __init__(self, loader, pipeline, device_factory: Callable = None, voice: VoiceConfig = None,
                 retain_ended: int = RETAINED_ENDED_SESSIONS):
        self.loader = loader
        self.pipeline = pipeline
        self.voice = voice or get_settings().voice
        self.device_factory = device_factory or default_device_factory(self.voice)
        self.retain_ended = retain_ended
        self._sessions: dict = {}
        self._ended: OrderedDict = OrderedDict()

    def __len__(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    async def create(self, agent_id: str, actor_id: str = "",
                     amplitude_sink: Optional[Callable[[float], None]] = None):
        from voice.orchestrator import TurnOrchestrator

        agent = await self.loader.load(agent_id)
        ctx = SessionContext(agent, actor_id=actor_id, amplitude_sink=amplitude_sink)
        capture, playback = self.device_factory()
        orchestrator = TurnOrchestrator(ctx, self.pipeline, capture, playback,
                                        voice=self.voice, on_ended=self._retire)
        self._sessions[ctx.session_id] = orchestrator
        logger.info("session_created", session_id=ctx.session_id, agent_id=agent_id)
        return orchestrator

    def get(self, session_id: str):
        orchestrator = self.find(session_id)
        if orchestrator is None:
            raise SessionNotFoundError(session_id)
        return orchestrator

    def find(self, session_id: str):
        return self._sessions.get(session_id) or self._ended.get(session_id)

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._ended.pop(session_id, None)

    def _retire(self, orchestrator) -> None:
        if self._sessions.pop(orchestrator.session_id, None) is None:
            return
        self._ended[orchestrator.session_id] = orchestrator
        while len(self._ended) > self.retain_ended:
            self._ended.popitem(last=False)
        logger.info("session_retired", session_id=orchestrator.session_id, live=len(self._sessions))

    async def end_all(self) -> None:
        count = len(self._sessions)
        for orchestrator in list(self._sessions.values()):
            await orchestrator.end_call()
        logger.info("sessions_ended", count=count)


def default_device_factory(voice: VoiceConfig) -> Callable:
    from voice.capture import AudioCaptureService
    from voice.devices import SoundDeviceMicrophone, SoundDeviceSpeaker
    from voice.playback import PlaybackEngine

    # One physical microphone shared by all sessions; ownership is exclusive
    microphone = SoundDeviceMicrophone(
        sample_rate=voice.sample_rate,
        channels=voice.channels,
        block_ms=voice.capture_block_ms,
        device=voice.input_device,
    )
    speaker = SoundDeviceSpeaker(device=voice.output_device)

    def factory():
        capture = AudioCaptureService(microphone, max_duration_ms=voice.capture_timeout_ms)
        playback = PlaybackEngine(speaker, block_ms=voice.playback_block_ms,
                                  smoothing=voice.amplitude_smoothing)
        return capture, playback

    return factory
