"""Agent selector: picks the best admitted agent for a conversation."""

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from capacity_queue.domain.capacity import CapacityEvaluator
from capacity_queue.domain.schemas import AgentCandidate, AgentCapacityReport, AgentKind


def _rank(candidate: AgentCandidate) -> tuple[float, str]:
    return (candidate.utilization, candidate.agent.id)


class AgentSelector:
    """Filters candidates through the capacity evaluator and load-balances by utilization."""

    def __init__(self, evaluator: CapacityEvaluator | None = None):
        self.evaluator = evaluator or CapacityEvaluator()

    def admitted(self, candidates: Iterable[AgentCandidate], now: datetime) -> list[AgentCandidate]:
        return [
            c
            for c in candidates
            if self.evaluator.check(c.agent, c.current_load, now, c.monthly_usage).admit
        ]

    def select_best(
        self,
        candidates: Sequence[AgentCandidate],
        intent_category: str | None,
        prefer_human_for_intents: Iterable[str],
        now: datetime,
    ) -> AgentCandidate | None:
        """Return the admitted candidate to assign, or None when nobody can take it.

        Humans are preferred for the listed intents when one is admitted;
        otherwise the lowest utilization wins, ties broken by agent id.
        """
        admitted = self.admitted(candidates, now)
        if not admitted:
            return None

        if intent_category is not None and intent_category in set(prefer_human_for_intents):
            humans = [c for c in admitted if c.agent.kind == AgentKind.HUMAN]
            if humans:
                return min(humans, key=_rank)

        return min(admitted, key=_rank)

    def shortest_retry_after(self, candidates: Iterable[AgentCandidate], now: datetime) -> timedelta | None:
        """Earliest retry estimate among rejected candidates, if any gave one."""
        waits = [
            decision.retry_after
            for decision in (self.evaluator.check(c.agent, c.current_load, now, c.monthly_usage) for c in candidates)
            if not decision.admit and decision.retry_after is not None
        ]
        return min(waits) if waits else None

    def capacity_snapshot(self, candidates: Iterable[AgentCandidate], now: datetime) -> list[AgentCapacityReport]:
        """Per-agent capacity rows, available agents first then by utilization."""
        rows = []
        for c in candidates:
            decision = self.evaluator.check(c.agent, c.current_load, now, c.monthly_usage)
            retry_minutes = None
            if decision.retry_after is not None:
                retry_minutes = int(decision.retry_after.total_seconds() // 60)
            rows.append(
                AgentCapacityReport(
                    agent_id=c.agent.id,
                    agent_name=c.agent.name,
                    kind=c.agent.kind,
                    current_load=c.current_load,
                    max_concurrent=c.agent.max_concurrent,
                    utilization_rate=round(min(c.utilization, 1e6) * 100, 1),
                    status="available" if decision.admit else "busy",
                    reason=decision.reason,
                    retry_after_minutes=retry_minutes,
                )
            )
        rows.sort(key=lambda r: (r.status != "available", r.utilization_rate, r.agent_id))
        return rows
