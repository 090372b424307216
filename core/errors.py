"""
Error taxonomy for the voice preview core.

Fatal vs recoverable is carried on the exception itself so the
orchestrator can decide the next state without type-switching on
every call site:

- DeviceError: microphone permission/availability — fatal, ends session
- ServiceUnavailableError: STT / LLM / TTS failure — recoverable
- PlaybackError: decode or speaker fault — recoverable, counts as turn done
- PersistError: save-conversation failure, surfaced to the caller
"""
from __future__ import annotations


class VoicePreviewError(Exception):
    """Base exception for all voice preview operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class DeviceError(VoicePreviewError):
    """Microphone or speaker could not be acquired (permission, busy, missing)."""

    def __init__(self, message: str, device: str = "microphone"):
        self.device = device
        super().__init__(message, retryable=False)


class ServiceUnavailableError(VoicePreviewError):
    """An external speech-pipeline adapter failed."""

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(message or f"{service} service unavailable", retryable=True)


class PlaybackError(VoicePreviewError):
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class PersistError(VoicePreviewError):
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class AgentNotFoundError(VoicePreviewError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class AgentUnavailableError(VoicePreviewError):
    """Agent is inactive or outside its working-hours window."""

    def __init__(self, agent_id: str, reason: str = ""):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent {agent_id} is not available" + (f": {reason}" if reason else ""))


class StageInFlightError(VoicePreviewError):
    """A pipeline stage was started while another one is still awaiting."""

    def __init__(self, session_id: str, stage: str):
        self.session_id = session_id
        self.stage = stage
        super().__init__(f"Session {session_id}: cannot start {stage}, another stage is in flight")


class LedgerFinalizedError(VoicePreviewError):
    def __init__(self, session_id: str = ""):
        super().__init__(f"Conversation {session_id} is finalized; no further turns accepted")


class SessionNotFoundError(VoicePreviewError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SessionStateError(VoicePreviewError):
    """The session is not in a state that accepts the requested operation."""

    def __init__(self, session_id: str, operation: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id}: cannot {operation} while {state}")
