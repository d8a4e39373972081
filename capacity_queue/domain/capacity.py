"""Capacity evaluator: decides whether one agent can accept one more conversation.

AI agents have soft, usage-based limits; human agents have hard concurrency and
working-hours limits. Each kind has its own strategy, dispatched through
``CapacityEvaluator.check``. Nothing here mutates state or raises; callers
re-derive ``current_load`` before every call.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from capacity_queue.core.config import Settings
from capacity_queue.domain import business_hours
from capacity_queue.domain.schemas import Agent, AgentKind, AgentStatus, CapacityDecision

REASON_INACTIVE = "inactive/offline"
REASON_OUTSIDE_WORKING_HOURS = "outside working hours"
REASON_AT_CAPACITY = "at capacity"
REASON_CONCURRENCY_LIMIT = "concurrency limit"
REASON_QUOTA_EXHAUSTED = "quota exhausted"


@dataclass(frozen=True)
class CapacityPolicy:
    """Default retry estimates used when an agent is full."""

    human_retry_after: timedelta = timedelta(minutes=15)
    ai_retry_after: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CapacityPolicy":
        return cls(
            human_retry_after=timedelta(minutes=settings.human_capacity_retry_minutes),
            ai_retry_after=timedelta(minutes=settings.ai_capacity_retry_minutes),
        )


def _available(current_load: int, max_concurrent: int) -> CapacityDecision:
    utilization = (current_load / max_concurrent) * 100 if max_concurrent else 0
    return CapacityDecision(
        admit=True,
        reason=f"available ({current_load}/{max_concurrent} conversations, {utilization:.0f}% utilized)",
    )


class CapacityEvaluator:
    """Single admission gate for every agent kind."""

    def __init__(self, policy: CapacityPolicy | None = None):
        self.policy = policy or CapacityPolicy()
        self._strategies: dict[AgentKind, Callable[[Agent, int, datetime, int], CapacityDecision]] = {
            AgentKind.HUMAN: self._check_human,
            AgentKind.AI: self._check_ai,
        }

    def check(self, agent: Agent, current_load: int, now: datetime, monthly_usage: int = 0) -> CapacityDecision:
        """Decide whether ``agent`` may take a new conversation at ``now``.

        Args:
            agent: Agent record
            current_load: Open conversations, freshly counted from the assignment store
            now: Evaluation instant
            monthly_usage: Conversations handled this period (AI quota)

        Returns:
            CapacityDecision with admit flag, reason and optional retry_after
        """
        if agent.status != AgentStatus.ACTIVE:
            return CapacityDecision(admit=False, reason=REASON_INACTIVE)
        return self._strategies[agent.kind](agent, current_load, now, monthly_usage)

    def _check_human(self, agent: Agent, current_load: int, now: datetime, monthly_usage: int) -> CapacityDecision:
        # An unusable shift is logged and ignored, leaving the agent always on shift
        shift = business_hours.load_business_hours(agent.working_hours.model_dump()) if agent.working_hours else None
        if shift is not None:
            status = business_hours.evaluate(shift, now)
            if not status.in_window:
                return CapacityDecision(
                    admit=False,
                    reason=REASON_OUTSIDE_WORKING_HOURS,
                    retry_after=business_hours.time_until_open(status, now),
                )

        if current_load >= agent.max_concurrent:
            if agent.avg_response_minutes:
                retry_after = timedelta(minutes=agent.avg_response_minutes)
            else:
                retry_after = self.policy.human_retry_after
            return CapacityDecision(admit=False, reason=REASON_AT_CAPACITY, retry_after=retry_after)

        return _available(current_load, agent.max_concurrent)

    def _check_ai(self, agent: Agent, current_load: int, now: datetime, monthly_usage: int) -> CapacityDecision:
        if current_load >= agent.max_concurrent:
            return CapacityDecision(
                admit=False,
                reason=REASON_CONCURRENCY_LIMIT,
                retry_after=self.policy.ai_retry_after,
            )

        # No retry_after: the quota resets on an external period boundary
        if agent.usage_quota is not None and monthly_usage >= agent.usage_quota:
            return CapacityDecision(admit=False, reason=REASON_QUOTA_EXHAUSTED)

        return _available(current_load, agent.max_concurrent)
