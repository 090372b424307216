"""
Core data models for the VoicePreview system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_GREETING = "Здравствуйте! Чем могу помочь?"

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_hhmm(value: str) -> time:
    """Parse a "HH:MM" time-of-day string."""
    match = _HHMM.match(value)
    if not match:
        raise ValueError(f"Invalid time of day {value!r}, expected HH:MM")
    return time(int(match.group(1)), int(match.group(2)))


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    GREETING = "greeting"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"
    ENDED = "ended"


class SessionEventType(str, Enum):
    STATE_CHANGED = "state_changed"
    TURN_APPENDED = "turn_appended"
    EMPTY_TRANSCRIPT = "empty_transcript"
    SERVICE_ERROR = "service_error"
    PLAYBACK_ERROR = "playback_error"
    DEVICE_ERROR = "device_error"
    CONVERSATION_RESET = "conversation_reset"
    SESSION_ENDED = "session_ended"


# ──────────────────────────────────────────────────────────────
#  Agent configuration
# ──────────────────────────────────────────────────────────────

class VoiceSettings(BaseModel):
    voice_name: str = "ru-RU-Wavenet-B"
    language: str = "ru-RU"                    # BCP-47 or short code (ru, en, kz)
    speaking_rate: float = Field(1.0, ge=0.5, le=2.0)
    pitch: float = Field(0.0, ge=-20.0, le=20.0)


class AISettings(BaseModel):
    model: str = "gemini-2.0-flash"
    system_prompt: str = "Ты дружелюбный AI ассистент."
    temperature: float = Field(0.7, ge=0.0, le=1.0)
    max_tokens: int = Field(1024, ge=1)


class WorkingHours(BaseModel):
    """
    Weekly availability window. work_days uses 0=Sunday … 6=Saturday.
    Windows never wrap past midnight: end must not be earlier than start.
    """
    enabled: bool = False
    timezone: str = "UTC"
    start: str = "09:00"
    end: str = "18:00"
    work_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {v!r}") from e
        return v

    @field_validator("start", "end")
    @classmethod
    def _valid_time(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @field_validator("work_days")
    @classmethod
    def _valid_days(cls, v: list[int]) -> list[int]:
        bad = [d for d in v if d < 0 or d > 6]
        if bad:
            raise ValueError(f"work_days must be within 0..6, got {bad}")
        return sorted(set(v))

    @model_validator(mode="after")
    def _no_wrap(self) -> "WorkingHours":
        if parse_hhmm(self.end) < parse_hhmm(self.start):
            raise ValueError("working hours may not wrap past midnight (end < start)")
        return self

    @property
    def start_time(self) -> time:
        return parse_hhmm(self.start)

    @property
    def end_time(self) -> time:
        return parse_hhmm(self.end)


class AgentConfig(BaseModel):
    """A configured voice agent. Sessions work on a frozen snapshot of it."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str = "Агент"
    description: str = ""
    voice: VoiceSettings = Field(default_factory=VoiceSettings)
    ai: AISettings = Field(default_factory=AISettings)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    greeting_message: str = ""
    fallback_message: str = ""
    ending_message: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def greeting(self) -> str:
        return self.greeting_message.strip() or DEFAULT_GREETING


# ──────────────────────────────────────────────────────────────
#  Conversation
# ──────────────────────────────────────────────────────────────

class ConversationTurn(BaseModel):
    """One user or assistant contribution. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ConversationSession(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    agent_id: str
    turns: list[ConversationTurn] = []
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None


class SessionEvent(BaseModel):
    """Notification pushed from an orchestrator to whoever drives the UI."""
    type: SessionEventType
    session_id: str
    state: OrchestratorState
    message: str = ""
    turn: Optional[ConversationTurn] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ConversationAnalysis(BaseModel):
    summary: str = ""
    sentiment: str = "neutral"                 # positive | neutral | negative
    key_points: list[str] = []
    customer_intention: str = ""
    next_steps: list[str] = []
    call_outcome: str = "other"
    extracted_customer_data: dict[str, Any] = {}
    deal_probability: Optional[int] = Field(None, ge=0, le=100)
    conversation_quality: Optional[int] = Field(None, ge=0, le=10)
    concerns: list[str] = []


class ConversationRecord(BaseModel):
    """A saved test conversation, as handed to persistence."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    agent_id: str
    actor_id: str = ""
    session_id: str = ""
    turns: list[ConversationTurn] = []
    transcript: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime = Field(default_factory=_utcnow)
    analysis: Optional[ConversationAnalysis] = None
    metadata: dict[str, Any] = Field(default_factory=lambda: {"is_test": True})
