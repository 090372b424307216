"""
Agent configuration loader.

Reads agent configurations from the configured store and hands out
snapshots: the returned AgentConfig is a deep copy that no later store
update can change, so a session sees one consistent configuration from
start to finish.
"""
from __future__ import annotations

import structlog
from typing import Any

from core.errors import AgentNotFoundError
from database.store_base import BaseAgentStore
from models.schemas import AgentConfig

logger = structlog.get_logger()


class AgentConfigLoader:

    def __init__(self, store: BaseAgentStore):
        self.store = store

    async def load(self, agent_id: str) -> AgentConfig:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            logger.warning("agent_not_found", agent_id=agent_id)
            raise AgentNotFoundError(agent_id)
        return agent.model_copy(deep=True)

    async def seed(self, raw_agents: list[dict[str, Any]]) -> int:
        """Upsert agents declared in settings.yaml. Returns how many were loaded."""
        count = 0
        for raw in raw_agents:
            agent = AgentConfig.model_validate(raw)
            await self.store.upsert_agent(agent)
            count += 1
        if count:
            logger.info("agents_seeded", count=count)
        return count
