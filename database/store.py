"""
SqlAgentStore — Portable SQL store for PostgreSQL, MySQL, SQLite.

Agent settings round-trip through the AgentConfig JSON document, so
schema evolution of the settings never needs a migration.
"""
from __future__ import annotations

import structlog
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.errors import PersistError
from database.models import AgentRow, ConversationRecordRow
from database.session import get_session
from database.store_base import BaseAgentStore
from models.schemas import AgentConfig, ConversationRecord

logger = structlog.get_logger()


class SqlAgentStore(BaseAgentStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Agents ─────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        async with get_session() as db:
            row = await db.get(AgentRow, agent_id)
            return self._row_to_agent(row) if row else None

    async def upsert_agent(self, agent: AgentConfig) -> AgentConfig:
        payload = agent.model_dump(mode="json")
        async with get_session() as db:
            existing = await db.get(AgentRow, agent.id)
            if existing:
                existing.name = agent.name
                existing.is_active = agent.is_active
                existing.config = payload
            else:
                db.add(AgentRow(
                    id=agent.id,
                    name=agent.name,
                    is_active=agent.is_active,
                    config=payload,
                ))
        return agent

    async def list_agents(self, active_only: bool = False) -> list[AgentConfig]:
        async with get_session() as db:
            stmt = select(AgentRow).order_by(AgentRow.created_at)
            if active_only:
                stmt = stmt.where(AgentRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [self._row_to_agent(row) for row in result.scalars()]

    # ── Saved conversations ────────────────────────────────

    async def save_conversation(self, record: ConversationRecord) -> str:
        data = record.model_dump(mode="json")
        try:
            async with get_session() as db:
                existing = None
                if record.session_id:
                    stmt = select(ConversationRecordRow).where(
                        ConversationRecordRow.session_id == record.session_id
                    )
                    existing = (await db.execute(stmt)).scalar_one_or_none()

                if existing:
                    existing.turns = data["turns"]
                    existing.transcript = record.transcript
                    existing.analysis = data["analysis"]
                    existing.metadata_ = record.metadata
                    existing.ended_at = record.ended_at
                    record_id = existing.id
                else:
                    db.add(ConversationRecordRow(
                        id=record.id,
                        agent_id=record.agent_id,
                        actor_id=record.actor_id,
                        session_id=record.session_id or None,
                        turns=data["turns"],
                        transcript=record.transcript,
                        analysis=data["analysis"],
                        metadata_=record.metadata,
                        started_at=record.started_at,
                        ended_at=record.ended_at,
                    ))
                    record_id = record.id
        except SQLAlchemyError as e:
            logger.error("conversation_save_failed", agent_id=record.agent_id, error=str(e))
            raise PersistError(f"Could not save conversation for agent {record.agent_id}: {e}") from e

        logger.info("conversation_saved", record_id=record_id,
                    agent_id=record.agent_id, turns=len(record.turns))
        return record_id

    async def get_conversation(self, record_id: str) -> Optional[ConversationRecord]:
        async with get_session() as db:
            row = await db.get(ConversationRecordRow, record_id)
            return ConversationRecord.model_validate(row.to_dict()) if row else None

    async def list_conversations(self, agent_id: str = None, limit: int = 50) -> list[ConversationRecord]:
        async with get_session() as db:
            stmt = select(ConversationRecordRow).order_by(ConversationRecordRow.ended_at.desc()).limit(limit)
            if agent_id:
                stmt = stmt.where(ConversationRecordRow.agent_id == agent_id)
            result = await db.execute(stmt)
            return [ConversationRecord.model_validate(row.to_dict()) for row in result.scalars()]

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _row_to_agent(row: AgentRow) -> AgentConfig:
        data = dict(row.config or {})
        data.update(id=row.id, name=row.name, is_active=row.is_active)
        return AgentConfig.model_validate(data)
