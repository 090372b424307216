"""
InMemoryAgentStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlAgentStore
  - Thread-safe via asyncio (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseAgentStore
from models.schemas import AgentConfig, ConversationRecord

logger = structlog.get_logger()


class InMemoryAgentStore(BaseAgentStore):
    """
    Full-featured in-memory store with the same interface as SqlAgentStore.
    Stores pydantic models; every read hands out a deep copy so callers
    never share mutable state with the store.
    """

    def __init__(self):
        self._agents: dict[str, AgentConfig] = {}              # id → agent
        self._conversations: dict[str, ConversationRecord] = {}  # id → record

        # Indexes
        self._session_index: dict[str, str] = {}               # session_id → record id
        logger.info("inmemory_store_initialized")

    # ── Agents ────────────────────────────────────────────

    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def upsert_agent(self, agent: AgentConfig) -> AgentConfig:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent

    async def list_agents(self, active_only: bool = False) -> list[AgentConfig]:
        agents = [a.model_copy(deep=True) for a in self._agents.values()]
        if active_only:
            agents = [a for a in agents if a.is_active]
        return agents

    # ── Saved conversations ───────────────────────────────

    async def save_conversation(self, record: ConversationRecord) -> str:
        if record.session_id and record.session_id in self._session_index:
            record = record.model_copy(update={"id": self._session_index[record.session_id]})
        self._conversations[record.id] = record.model_copy(deep=True)
        if record.session_id:
            self._session_index[record.session_id] = record.id
        logger.info("conversation_saved", record_id=record.id,
                    agent_id=record.agent_id, turns=len(record.turns))
        return record.id

    async def get_conversation(self, record_id: str) -> Optional[ConversationRecord]:
        record = self._conversations.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def list_conversations(self, agent_id: str = None, limit: int = 50) -> list[ConversationRecord]:
        records = [
            r for r in self._conversations.values()
            if agent_id is None or r.agent_id == agent_id
        ]
        records.sort(key=lambda r: r.ended_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]
