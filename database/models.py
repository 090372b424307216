"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Agent settings are stored as one JSON document validated by the
    pydantic AgentConfig on read; only is_active is lifted into a column
    so listings can filter in SQL.
  - Turns of a saved conversation are stored as a JSON array; they are
    immutable once saved.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Boolean, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Agents
# ──────────────────────────────────────────────────────────────

class AgentRow(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    config: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_agents_active", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Saved test conversations
# ──────────────────────────────────────────────────────────────

class ConversationRecordRow(Base):
    __tablename__ = "test_conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), default="")
    session_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    turns: Mapped[Any] = mapped_column(JSON, default=list)
    transcript: Mapped[str] = mapped_column(Text, default="")
    analysis: Mapped[Any] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ended_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_test_conversations_agent", "agent_id"),
        Index("ix_test_conversations_ended", "ended_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "agent_id": self.agent_id, "actor_id": self.actor_id,
            "session_id": self.session_id or "", "turns": self.turns or [],
            "transcript": self.transcript, "analysis": self.analysis,
            "metadata": self.metadata_ or {},
            "started_at": self.started_at, "ended_at": self.ended_at,
        }
