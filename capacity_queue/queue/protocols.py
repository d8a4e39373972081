"""Collaborator protocols: the narrow interfaces the engine consumes.

Message transport, conversation persistence and agent records live outside
this package. The engine only talks to them through these protocols, which
lets tests swap in the in-memory doubles from ``capacity_queue.queue.fakes``.
"""

from typing import Any, Protocol, runtime_checkable

from capacity_queue.domain.schemas import Agent, AgentKind
from capacity_queue.queue.schemas import QueuedMessage


@runtime_checkable
class AssignmentStore(Protocol):
    """Authoritative conversation-to-agent assignment table.

    Agent load is always derived from here; ``assign`` performs the load
    increment atomically and may refuse it.
    """

    async def count_active_conversations(self, agent_id: str, tenant_id: str) -> int: ...

    async def assign(self, conversation_id: str, agent_id: str, tenant_id: str) -> bool: ...

    async def find_active_assignment(self, conversation_id: str, tenant_id: str) -> str | None: ...


@runtime_checkable
class AgentDirectory(Protocol):
    async def list_active_agents(self, tenant_id: str, kind: AgentKind | None = None) -> list[Agent]: ...


@runtime_checkable
class NotificationSender(Protocol):
    async def send_system_message(self, conversation_id: str, text: str) -> None: ...


@runtime_checkable
class EscalationSink(Protocol):
    async def report_failed_message(self, message: QueuedMessage) -> None: ...


@runtime_checkable
class BusinessHoursSource(Protocol):
    """Raw per-tenant business-hours configuration (None = always open)."""

    async def get_business_hours(self, tenant_id: str) -> dict[str, Any] | None: ...
