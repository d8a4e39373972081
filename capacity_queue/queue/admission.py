"""Fresh per-decision inputs: the tenant's admission window and agent candidates.

Nothing here is cached between calls. Agent load is re-counted from the
assignment store every time a decision is about to be made.
"""

import asyncio
from datetime import datetime

import structlog

from capacity_queue.domain import business_hours
from capacity_queue.domain.schemas import Agent, AgentCandidate, AgentKind, BusinessHoursConfig, BusinessHoursStatus
from capacity_queue.queue.protocols import AgentDirectory, AssignmentStore, BusinessHoursSource
from capacity_queue.queue.usage import AgentUsageTracker

logger = structlog.get_logger(__name__)


async def tenant_window(
    source: BusinessHoursSource, tenant_id: str, now: datetime
) -> tuple[BusinessHoursConfig | None, BusinessHoursStatus]:
    """Load the tenant's business hours and evaluate them at ``now``.

    A config that can't be read or parsed counts as always open.
    """
    try:
        raw = await source.get_business_hours(tenant_id)
    except Exception as exc:
        logger.warning(
            "business_hours_config_unavailable",
            tenant_id=tenant_id,
            error=str(exc),
            error_type=type(exc).__name__,
            fallback="always_open",
        )
        raw = None

    config = business_hours.load_business_hours(raw)
    return config, business_hours.evaluate(config, now)


class CandidateLoader:
    """Builds AgentCandidate lists with load and usage derived at call time."""

    def __init__(self, directory: AgentDirectory, assignments: AssignmentStore, usage: AgentUsageTracker):
        self.directory = directory
        self.assignments = assignments
        self.usage = usage

    async def load(self, tenant_id: str, now: datetime) -> list[AgentCandidate]:
        agents = await self.directory.list_active_agents(tenant_id)
        return list(await asyncio.gather(*(self._candidate(agent, tenant_id, now) for agent in agents)))

    async def _candidate(self, agent: Agent, tenant_id: str, now: datetime) -> AgentCandidate:
        current_load = await self.assignments.count_active_conversations(agent.id, tenant_id)
        monthly_usage = 0
        if agent.kind == AgentKind.AI and agent.usage_quota is not None:
            monthly_usage = await self.usage.get(tenant_id, agent.id, now)
        return AgentCandidate(agent=agent, current_load=current_load, monthly_usage=monthly_usage)
