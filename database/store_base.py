"""
Abstract Agent Store — Interface for all storage backends.

Implementations:
  - SqlAgentStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryAgentStore (dict-based, single-process, no persistence)
  - FileAgentStore     (JSON files on disk, single-process, durable)

Two concerns live behind the same interface: the agent configuration
store that sessions read their snapshot from, and the persistence
collaborator that receives finalized test conversations.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import AgentConfig, ConversationRecord


class BaseAgentStore(ABC):
    """Interface that all agent store backends must implement."""

    # ── Agents ────────────────────────────────────────────────

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        ...

    @abstractmethod
    async def upsert_agent(self, agent: AgentConfig) -> AgentConfig:
        ...

    @abstractmethod
    async def list_agents(self, active_only: bool = False) -> list[AgentConfig]:
        ...

    # ── Saved conversations ───────────────────────────────────

    @abstractmethod
    async def save_conversation(self, record: ConversationRecord) -> str:
        """
        Persist a finalized conversation and return its record id.
        A record carrying a session_id that was already saved replaces the
        earlier record and keeps its id, so retrying a save is idempotent.
        Raises PersistError on failure.
        """
        ...

    @abstractmethod
    async def get_conversation(self, record_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    async def list_conversations(self, agent_id: str = None, limit: int = 50) -> list[ConversationRecord]:
        ...
