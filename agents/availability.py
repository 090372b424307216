"""
Agent availability — is this agent allowed to take a conversation right now?

Rules, in order:
  1. Inactive agents are never available.
  2. Working hours disabled → always available.
  3. Convert `now` into the agent's timezone; the local weekday
     (0=Sunday … 6=Saturday) must be one of work_days.
  4. The local time of day must satisfy start <= t < end.

Windows never wrap past midnight; WorkingHours validation rejects
end < start, so a night shift has to be configured as two agents.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from models.schemas import AgentConfig

logger = structlog.get_logger()


def local_weekday(moment: datetime) -> int:
    """Weekday index with 0=Sunday, matching the stored work_days convention."""
    return (moment.weekday() + 1) % 7


def unavailability_reason(config: AgentConfig, now: Optional[datetime] = None) -> str:
    """Return why the agent is unavailable at `now`, or "" when it is available."""
    if not config.is_active:
        return "agent is inactive"

    hours = config.working_hours
    if not hours.enabled:
        return ""

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(hours.timezone))

    if local_weekday(local) not in hours.work_days:
        return f"{local:%A} is not a working day"

    current = local.time().replace(second=0, microsecond=0)
    if not (hours.start_time <= current < hours.end_time):
        return f"{current:%H:%M} is outside working hours {hours.start}-{hours.end}"
    return ""


def is_available(config: AgentConfig, now: Optional[datetime] = None) -> bool:
    return unavailability_reason(config, now) == ""


def available_agents(configs: Iterable[AgentConfig], now: Optional[datetime] = None) -> list[AgentConfig]:
    """Filter to the agents that are active and inside their working hours."""
    now = now or datetime.now(timezone.utc)
    result = [c for c in configs if is_available(c, now)]
    logger.debug("available_agents_evaluated", available=len(result))
    return result
