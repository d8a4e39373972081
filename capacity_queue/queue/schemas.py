"""Queue schemas: queued message lifecycle, run results and exposed outcomes."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class MessageStatus(str, Enum):
    """Queued message lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"  # Terminal: handed off
    FAILED = "failed"  # Terminal: retries exhausted


class MessagePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Higher rank is claimed first
PRIORITY_RANK = {
    MessagePriority.HIGH: 3,
    MessagePriority.MEDIUM: 2,
    MessagePriority.LOW: 1,
}


class NewQueuedMessage(BaseModel):
    """Inbound message to defer; id and bookkeeping are assigned by the store."""

    conversation_id: str
    tenant_id: str
    platform: str = ""
    content: str
    sender_info: dict[str, Any] = Field(default_factory=dict)
    intent_category: str | None = None
    priority: MessagePriority = MessagePriority.MEDIUM
    queued_at: datetime
    dedupe_key: str | None = None


class QueuedMessage(NewQueuedMessage):
    """Complete queue record with status bookkeeping."""

    id: str
    estimated_process_at: datetime
    attempts: int = 0
    status: MessageStatus = MessageStatus.QUEUED
    claimed_at: datetime | None = None
    assigned_agent_id: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None


class QueueStatus(BaseModel):
    """Read-only backlog summary for dashboards."""

    queue_length: int
    oldest_queued_at: datetime | None = None
    estimated_wait_minutes: int = 0


class ProcessorRunResult(BaseModel):
    """Outcome counters for one processor run over one tenant."""

    tenant_id: str
    skipped: bool = False
    reason: str | None = None
    reclaimed: int = 0
    claimed: int = 0
    processed: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0  # Bookkeeping failed; left PROCESSING for stale-claim reclaim


class Assigned(BaseModel):
    outcome: Literal["assigned"] = "assigned"
    conversation_id: str
    agent_id: str
    reason: str


class Queued(BaseModel):
    outcome: Literal["queued"] = "queued"
    message: QueuedMessage
    reason: str
    notice: str | None = None  # System message sent to the customer
