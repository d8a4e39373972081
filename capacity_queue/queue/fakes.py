"""In-memory test doubles for the collaborator protocols.

Deterministic and instant. The assignment fake enforces each agent's
max_concurrent at hand-off the same way the SQL store does, and can be told
to fail the next N assignments to simulate a flaky backend.
"""

from collections import defaultdict
from typing import Any

from capacity_queue.domain.schemas import Agent, AgentKind, AgentStatus
from capacity_queue.queue.schemas import QueuedMessage


class AssignmentStoreFake:
    """Assignment table keyed by (tenant_id, conversation_id)."""

    def __init__(self, agents: list[Agent] | None = None):
        self._agents = {a.id: a for a in agents or []}
        self.assignments: dict[tuple[str, str], str] = {}
        self.fail_next = 0
        self.raise_next = 0
        self.assign_calls: list[tuple[str, str, str]] = []

    def add_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent

    def preload(self, tenant_id: str, agent_id: str, count: int) -> None:
        """Give an agent ``count`` existing open conversations."""
        for i in range(count):
            self.assignments[(tenant_id, f"preloaded-{agent_id}-{i}")] = agent_id

    def close(self, tenant_id: str, conversation_id: str) -> None:
        self.assignments.pop((tenant_id, conversation_id), None)

    async def count_active_conversations(self, agent_id: str, tenant_id: str) -> int:
        return sum(1 for (t, _), a in self.assignments.items() if t == tenant_id and a == agent_id)

    async def assign(self, conversation_id: str, agent_id: str, tenant_id: str) -> bool:
        self.assign_calls.append((tenant_id, conversation_id, agent_id))
        if self.raise_next > 0:
            self.raise_next -= 1
            raise ConnectionError("assignment backend unavailable")
        if self.fail_next > 0:
            self.fail_next -= 1
            return False

        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        if (tenant_id, conversation_id) in self.assignments:
            return self.assignments[(tenant_id, conversation_id)] == agent_id
        if await self.count_active_conversations(agent_id, tenant_id) >= agent.max_concurrent:
            return False

        self.assignments[(tenant_id, conversation_id)] = agent_id
        return True

    async def find_active_assignment(self, conversation_id: str, tenant_id: str) -> str | None:
        return self.assignments.get((tenant_id, conversation_id))


class AgentDirectoryFake:
    def __init__(self, agents: list[Agent] | None = None):
        self.agents = list(agents or [])
        self.calls = 0

    async def list_active_agents(self, tenant_id: str, kind: AgentKind | None = None) -> list[Agent]:
        self.calls += 1
        return [
            a
            for a in self.agents
            if a.tenant_id == tenant_id and a.status == AgentStatus.ACTIVE and (kind is None or a.kind == kind)
        ]


class NotificationSenderFake:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send_system_message(self, conversation_id: str, text: str) -> None:
        if self.fail:
            raise ConnectionError("transport unavailable")
        self.sent.append((conversation_id, text))


class EscalationSinkFake:
    def __init__(self):
        self.reported: list[QueuedMessage] = []

    async def report_failed_message(self, message: QueuedMessage) -> None:
        self.reported.append(message)


class BusinessHoursSourceFake:
    def __init__(self, configs: dict[str, dict[str, Any] | None] | None = None):
        self.configs: dict[str, dict[str, Any] | None] = defaultdict(lambda: None, configs or {})

    async def get_business_hours(self, tenant_id: str) -> dict[str, Any] | None:
        return self.configs[tenant_id]
