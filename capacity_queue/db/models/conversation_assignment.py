"""ConversationAssignment model: the authoritative conversation-to-agent table.

Agent load is the count of active rows per agent; it is never stored elsewhere.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Index, String, Uuid

from capacity_queue.db.base import Base


class ConversationAssignment(Base):
    __tablename__ = "conversation_assignments"
    __table_args__ = (
        Index("ix_conversation_assignments_agent_status", "tenant_id", "agent_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(255), nullable=False, index=True)
    conversation_id = Column(String(255), nullable=False, index=True)
    agent_id = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="active")  # active | closed

    assigned_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    closed_at = Column(DateTime(timezone=True), nullable=True)
