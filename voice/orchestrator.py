"""
Turn Orchestrator — drives one test conversation through its states.

    Idle → Greeting → Listening → Transcribing → Generating
         → Synthesizing → Speaking → Listening → … → Ended

One asyncio task runs the loop; every device read, adapter call and
playback is an await, so end_call() can cancel the task at any point.
Each adapter call holds the session's in-flight slot, so at most one
stage is ever awaiting per session.

Failure handling:
  ServiceUnavailableError  → service_error event, back to Listening
  empty transcript / audio → empty_transcript event (fallback message),
                             no user turn, no LLM/TTS, back to Listening
  PlaybackError            → playback_error event, turn counts as done
  DeviceError              → device_error event, session Ended

reset() discards the run while Listening and restarts from the greeting
turn; on_ended is called once after teardown.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from agents.availability import unavailability_reason
from config.settings import VoiceConfig, get_settings
from core.errors import (
    AgentUnavailableError, DeviceError, PlaybackError, ServiceUnavailableError,
    SessionStateError, StageInFlightError,
)
from models.schemas import (
    ConversationTurn, OrchestratorState, SessionEventType, TurnRole,
)
from voice.capture import AudioCaptureService, CaptureHandle
from voice.playback import AmplitudeSampler, PlaybackEngine
from voice.providers import SpeechPipeline
from voice.session import SessionContext

logger = structlog.get_logger()

State = OrchestratorState


class TurnOrchestrator:

    def __init__(
        self,
        context: SessionContext,
        pipeline: SpeechPipeline,
        capture: AudioCaptureService,
        playback: PlaybackEngine,
        voice: VoiceConfig = None,
        on_ended: Optional[Callable[["TurnOrchestrator"], None]] = None,
    ):
        self.ctx = context
        self.pipeline = pipeline
        self.capture = capture
        self.playback = playback
        self.voice = voice or get_settings().voice
        self.on_ended = on_ended

        self._task: Optional[asyncio.Task] = None
        self._handle: Optional[CaptureHandle] = None
        self._ended = False
        self._torn_down = False
        self._restarting = False
        self._consecutive_errors = 0
        self._sampler: Optional[AmplitudeSampler] = None
        if context.amplitude_sink is not None:
            self._sampler = AmplitudeSampler(playback, context.amplitude_sink, hz=self.voice.visualizer_hz)

    # ── Public surface ────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self.ctx.session_id

    @property
    def state(self) -> OrchestratorState:
        return self.ctx.state

    @property
    def ledger(self):
        return self.ctx.ledger

    async def start(self, now: Optional[datetime] = None) -> None:
        """Check availability and begin the session. Stays Idle on refusal."""
        if self.state != State.IDLE:
            raise SessionStateError(self.session_id, "start", self.state.value)

        agent = self.ctx.agent
        reason = unavailability_reason(agent, now)
        if reason:
            logger.warning("session_refused", session_id=self.session_id,
                           agent_id=agent.id, reason=reason)
            raise AgentUnavailableError(agent.id, reason)

        logger.info("session_started", session_id=self.session_id, agent_id=agent.id)
        if self._sampler is not None:
            self._sampler.start()
        self._task = asyncio.create_task(self._run())

    def stop_listening(self) -> bool:
        """Manual end of the user's utterance. False when nothing is being captured."""
        if self.state != State.LISTENING or self._handle is None:
            return False
        self.capture.stop_capture(self._handle)
        return True

    def reset(self) -> None:
        """
        Discard the test run so far and start over from the greeting.

        Only accepted while Listening with no adapter call in flight: the
        current utterance is dropped, the ledger goes back to the single
        greeting turn and capture restarts. The greeting is not replayed.
        """
        if self.state != State.LISTENING or self.ctx.in_flight.locked():
            raise SessionStateError(self.session_id, "reset", self.ctx.current_stage or self.state.value)
        if self._handle is not None:
            self._restarting = True
            self.capture.discard(self._handle)
        self.ctx.ledger.reset(self.ctx.agent.greeting)
        self._consecutive_errors = 0
        logger.info("conversation_reset", session_id=self.session_id)
        self.ctx.emit(SessionEventType.CONVERSATION_RESET, turn=self.ctx.ledger.turns()[0])

    async def end_call(self) -> None:
        """Hang up from any state. Repeated calls are no-ops."""
        if self._ended and self._torn_down:
            return
        self._ended = True
        logger.info("end_call_requested", session_id=self.session_id, state=self.state.value)

        self.capture.discard(self._handle)
        self.playback.stop()

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._teardown()

    async def wait_closed(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def finalize(self) -> tuple[ConversationTurn, ...]:
        return self.ctx.ledger.finalize()

    # ── Main loop ─────────────────────────────────────────

    async def _run(self) -> None:
        try:
            await self._greet()
            while not self._ended:
                await self._cycle()
        except DeviceError as e:
            logger.error("device_error", session_id=self.session_id, device=e.device, error=str(e))
            self.ctx.emit(SessionEventType.DEVICE_ERROR, str(e))
            self._ended = True
        except Exception as e:
            logger.error("session_failed", session_id=self.session_id,
                         state=self.state.value, error=str(e))
            self._ended = True
            raise
        finally:
            if self._handle is not None:
                self.capture.discard(self._handle)
                self._handle = None
            if self._ended:
                await self._teardown()

    async def _greet(self) -> None:
        self._set_state(State.GREETING)
        turn = self._append(TurnRole.ASSISTANT, self.ctx.agent.greeting)
        await self._speak(turn.content)

    async def _cycle(self) -> None:
        agent = self.ctx.agent

        self._set_state(State.LISTENING)
        self._handle = await self.capture.start_capture()
        audio = await self._handle.wait()
        self._handle = None
        if self._ended:
            return
        if self._restarting:
            self._restarting = False
            return
        if not audio:
            self._empty_transcript()
            return

        self._set_state(State.TRANSCRIBING)
        transcript = await self._call("stt", self.pipeline.stt.transcribe, audio, agent.voice.language)
        if transcript is None:
            return
        if not transcript.strip():
            self._empty_transcript()
            return
        self._append(TurnRole.USER, transcript.strip())

        self._set_state(State.GENERATING)
        reply = await self._call(
            "llm", self.pipeline.llm.generate,
            self.ctx.ledger.as_context(),
            agent.ai.system_prompt,
            agent.ai.model,
            agent.ai.temperature,
            agent.ai.max_tokens,
        )
        if reply is None:
            return
        self._append(TurnRole.ASSISTANT, reply)

        await self._speak(reply)

    async def _speak(self, text: str) -> None:
        voice = self.ctx.agent.voice
        if self.state != State.GREETING:
            self._set_state(State.SYNTHESIZING)
        audio = await self._call(
            "tts", self.pipeline.tts.synthesize,
            text, voice.voice_name, voice.language, voice.speaking_rate, voice.pitch,
        )
        if audio is None:
            return

        if self.state != State.GREETING:
            self._set_state(State.SPEAKING)
        try:
            result = await self.playback.play(audio)
        except PlaybackError as e:
            logger.warning("playback_failed", session_id=self.session_id, error=str(e))
            self.ctx.emit(SessionEventType.PLAYBACK_ERROR, str(e))
            return
        logger.debug("speech_played", session_id=self.session_id, result=result.value)

    # ── Helpers ───────────────────────────────────────────

    async def _call(self, stage: str, fn: Callable[..., Awaitable[Any]], *args) -> Any:
        """
        Run one adapter call inside the in-flight slot.

        Returns None when the call failed (a service_error has been
        emitted) or the session ended while it was pending.
        """
        try:
            async with self.ctx.stage(stage):
                result = await fn(*args)
        except ServiceUnavailableError as e:
            self._service_failed(e)
            return None
        except StageInFlightError as e:
            # Slot held by a pass-through request on the same session
            self.ctx.emit(SessionEventType.SERVICE_ERROR, str(e))
            return None
        if self._ended:
            logger.debug("late_result_ignored", session_id=self.session_id, stage=stage)
            return None
        self._consecutive_errors = 0
        return result

    def _service_failed(self, error: ServiceUnavailableError) -> None:
        self._consecutive_errors += 1
        logger.warning("service_error", session_id=self.session_id, service=error.service,
                       error=str(error), consecutive=self._consecutive_errors)
        self.ctx.emit(SessionEventType.SERVICE_ERROR, str(error))

        ceiling = self.voice.max_consecutive_service_errors
        if ceiling and self._consecutive_errors >= ceiling:
            logger.error("service_error_ceiling_reached", session_id=self.session_id,
                         consecutive=self._consecutive_errors)
            self._ended = True

    def _empty_transcript(self) -> None:
        logger.info("empty_transcript", session_id=self.session_id)
        self.ctx.emit(SessionEventType.EMPTY_TRANSCRIPT, self.ctx.agent.fallback_message)

    def _append(self, role: TurnRole, content: str) -> ConversationTurn:
        turn = self.ctx.ledger.add(role, content)
        self.ctx.emit(SessionEventType.TURN_APPENDED, turn=turn)
        return turn

    def _set_state(self, state: OrchestratorState) -> None:
        if self.ctx.state == state:
            return
        previous = self.ctx.state
        self.ctx.state = state
        logger.info("state_changed", session_id=self.session_id,
                    previous=previous.value, state=state.value)
        self.ctx.emit(SessionEventType.STATE_CHANGED)

    async def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self.capture.discard(self._handle)
        self._handle = None
        self.playback.stop()
        if self._sampler is not None:
            await self._sampler.stop()
        turns = self.ctx.ledger.finalize()
        self._set_state(State.ENDED)
        self.ctx.emit(SessionEventType.SESSION_ENDED)
        logger.info("session_ended", session_id=self.session_id, turns=len(turns))
        if self.on_ended is not None:
            self.on_ended(self)
