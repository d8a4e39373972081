"""SqlEscalationSink: persists messages that exhausted their retries for ops review."""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capacity_queue.db.models.queue_escalation import QueueEscalation
from capacity_queue.queue.schemas import QueuedMessage

logger = structlog.get_logger(__name__)


class SqlEscalationSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def report_failed_message(self, message: QueuedMessage) -> None:
        """Record a FAILED message. Reporting the same message twice is a no-op."""
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(QueueEscalation.id).where(QueueEscalation.message_id == message.id)
            )
            if result.scalar_one_or_none() is not None:
                return

            session.add(
                QueueEscalation(
                    message_id=message.id,
                    tenant_id=message.tenant_id,
                    conversation_id=message.conversation_id,
                    attempts=message.attempts,
                    last_error=message.last_error,
                    payload=message.model_dump(mode="json"),
                )
            )

        logger.warning(
            "queue_escalation_recorded",
            message_id=message.id,
            tenant_id=message.tenant_id,
            conversation_id=message.conversation_id,
            attempts=message.attempts,
        )

    async def list_pending(self, tenant_id: str) -> list[QueueEscalation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueEscalation)
                .where(QueueEscalation.tenant_id == tenant_id, QueueEscalation.status == "pending")
                .order_by(QueueEscalation.created_at)
            )
            return list(result.scalars().all())
