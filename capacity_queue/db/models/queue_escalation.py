"""QueueEscalation model: messages that exhausted their retries, awaiting ops review.

Python-level defaults are set explicitly in __init__ so that in-memory model
instances (unit tests, pre-flush objects) behave correctly without a DB round-trip.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, Uuid

from capacity_queue.db.base import Base


class QueueEscalation(Base):
    """One row per FAILED queued message.

    Fields:
    - message_id / tenant_id / conversation_id: linkage to the queue record
    - attempts: retries consumed before giving up
    - last_error: reason recorded on the final failed try
    - payload: full queue record snapshot for replay
    - status: pending | resolved
    """

    __tablename__ = "queue_escalations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    message_id = Column(String(255), nullable=False, unique=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    conversation_id = Column(String(255), nullable=False, index=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)

    status = Column(String(50), nullable=False, default="pending")
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    def __init__(self, **kwargs: object) -> None:
        # Column(default=...) only fires at INSERT
        kwargs.setdefault("status", "pending")
        kwargs.setdefault("attempts", 0)
        kwargs.setdefault("payload", {})
        super().__init__(**kwargs)
