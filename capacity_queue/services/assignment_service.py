"""SqlAssignmentStore: conversation assignments, agent records and tenant hours in SQL.

Implements the AssignmentStore, AgentDirectory and BusinessHoursSource protocols
over the ``conversation_assignments``, ``agents`` and ``tenant_business_hours``
tables. Agent load is always a COUNT over active assignment rows.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capacity_queue.core.config import Settings, get_settings
from capacity_queue.db.models.agent import AgentRecord
from capacity_queue.db.models.conversation_assignment import ConversationAssignment
from capacity_queue.db.models.tenant_business_hours import TenantBusinessHours
from capacity_queue.domain.schemas import Agent, AgentKind, AgentStatus

logger = structlog.get_logger(__name__)

ACTIVE = "active"
CLOSED = "closed"


class SqlAssignmentStore:
    """Uses dependency injection (takes session_factory) for testability."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings | None = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def count_active_conversations(self, agent_id: str, tenant_id: str) -> int:
        async with self.session_factory() as session:
            return await self._count(session, agent_id, tenant_id)

    @staticmethod
    async def _count(session: AsyncSession, agent_id: str, tenant_id: str) -> int:
        result = await session.execute(
            select(func.count(ConversationAssignment.id)).where(
                ConversationAssignment.tenant_id == tenant_id,
                ConversationAssignment.agent_id == agent_id,
                ConversationAssignment.status == ACTIVE,
            )
        )
        return result.scalar_one()

    async def assign(self, conversation_id: str, agent_id: str, tenant_id: str) -> bool:
        """Hand the conversation to the agent if it still has room.

        The agent row is locked for the duration of the transaction so two
        concurrent hand-offs can't both take the last slot.

        Returns:
            True if the conversation is now assigned to ``agent_id``
        """
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(AgentRecord)
                .where(AgentRecord.id == agent_id, AgentRecord.tenant_id == tenant_id)
                .with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None or record.status != AgentStatus.ACTIVE.value:
                logger.info("assignment_refused", agent_id=agent_id, reason="agent missing or inactive")
                return False

            existing = await self._active_assignment(session, conversation_id, tenant_id)
            if existing is not None:
                return existing.agent_id == agent_id

            limit = record.max_concurrent if record.max_concurrent is not None else record.default_max_concurrent(self.settings)
            if await self._count(session, agent_id, tenant_id) >= limit:
                logger.info("assignment_refused", agent_id=agent_id, reason="at capacity", max_concurrent=limit)
                return False

            session.add(
                ConversationAssignment(
                    tenant_id=tenant_id,
                    conversation_id=conversation_id,
                    agent_id=agent_id,
                    status=ACTIVE,
                    assigned_at=datetime.now(UTC),
                )
            )
        return True

    async def find_active_assignment(self, conversation_id: str, tenant_id: str) -> str | None:
        async with self.session_factory() as session:
            existing = await self._active_assignment(session, conversation_id, tenant_id)
            return existing.agent_id if existing is not None else None

    @staticmethod
    async def _active_assignment(
        session: AsyncSession, conversation_id: str, tenant_id: str
    ) -> ConversationAssignment | None:
        result = await session.execute(
            select(ConversationAssignment)
            .where(
                ConversationAssignment.tenant_id == tenant_id,
                ConversationAssignment.conversation_id == conversation_id,
                ConversationAssignment.status == ACTIVE,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def close_assignment(self, conversation_id: str, tenant_id: str) -> bool:
        """Close the conversation's active assignment, freeing one slot.

        Returns:
            True if an active assignment was closed
        """
        async with self.session_factory() as session, session.begin():
            existing = await self._active_assignment(session, conversation_id, tenant_id)
            if existing is None:
                return False
            existing.status = CLOSED
            existing.closed_at = datetime.now(UTC)
        return True

    async def list_active_agents(self, tenant_id: str, kind: AgentKind | None = None) -> list[Agent]:
        query = select(AgentRecord).where(
            AgentRecord.tenant_id == tenant_id,
            AgentRecord.status == AgentStatus.ACTIVE.value,
        )
        if kind is not None:
            query = query.where(AgentRecord.kind == kind.value)

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(AgentRecord.id))
            records = result.scalars().all()

        return [record.to_agent(self.settings) for record in records]

    async def get_business_hours(self, tenant_id: str) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantBusinessHours).where(TenantBusinessHours.tenant_id == tenant_id)
            )
            row = result.scalar_one_or_none()

        if row is None or not row.enabled:
            return None
        return row.as_config()
