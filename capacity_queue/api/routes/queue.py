"""Queue API routes: admission, processor ticks and dashboard views.

Endpoints:
- POST /queue/{tenant_id}/messages  Assign an inbound message now or queue it
- POST /queue/{tenant_id}/tick      Run one processor batch (external scheduler)
- GET  /queue/{tenant_id}/status    Backlog length, oldest message, wait estimate
- GET  /queue/{tenant_id}/agents    Per-agent capacity snapshot
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from capacity_queue.db.base import get_session_factory
from capacity_queue.db.redis import get_redis
from capacity_queue.domain.schemas import AgentCapacityReport
from capacity_queue.queue.engine import QueueEngine
from capacity_queue.queue.processor import RUN_IN_PROGRESS
from capacity_queue.queue.schemas import Assigned, MessagePriority, ProcessorRunResult, Queued, QueueStatus
from capacity_queue.services.assignment_service import SqlAssignmentStore
from capacity_queue.services.escalation_service import SqlEscalationSink
from capacity_queue.services.notification_service import RedisNotificationSender

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# Pydantic request / response models
# ──────────────────────────────────────────────────────────────────────────────


class InboundMessageRequest(BaseModel):
    """Request body for POST /queue/{tenant_id}/messages."""

    conversation_id: str = Field(min_length=1)
    content: str
    platform: str = ""
    sender_info: dict[str, Any] = Field(default_factory=dict)
    intent_category: str | None = None
    priority: MessagePriority = MessagePriority.MEDIUM
    received_at: datetime | None = None
    dedupe_key: str | None = None


class AdmissionResponse(BaseModel):
    outcome: str
    conversation_id: str
    reason: str
    agent_id: str | None = None
    message_id: str | None = None
    estimated_process_at: datetime | None = None
    notice: str | None = None


# ──────────────────────────────────────────────────────────────────────────────
# Dependencies
# ──────────────────────────────────────────────────────────────────────────────


def get_engine() -> QueueEngine:
    """Wire a QueueEngine over the shared Redis client and SQL session factory."""
    redis = get_redis()
    sql = SqlAssignmentStore(get_session_factory())
    return QueueEngine.build(
        redis=redis,
        assignments=sql,
        directory=sql,
        notifications=RedisNotificationSender(redis),
        escalations=SqlEscalationSink(get_session_factory()),
        hours_source=sql,
    )


def _to_response(result: Assigned | Queued) -> AdmissionResponse:
    if isinstance(result, Assigned):
        return AdmissionResponse(
            outcome=result.outcome,
            conversation_id=result.conversation_id,
            reason=result.reason,
            agent_id=result.agent_id,
        )
    return AdmissionResponse(
        outcome=result.outcome,
        conversation_id=result.message.conversation_id,
        reason=result.reason,
        message_id=result.message.id,
        estimated_process_at=result.message.estimated_process_at,
        notice=result.notice,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────────────────────


@router.post("/{tenant_id}/messages", response_model=AdmissionResponse)
async def submit_message(
    tenant_id: str,
    request: InboundMessageRequest,
    engine: QueueEngine = Depends(get_engine),
) -> AdmissionResponse:
    """Admit an inbound message: assign an agent now or queue it with a notice."""
    result = await engine.try_immediate_assign(
        conversation_id=request.conversation_id,
        tenant_id=tenant_id,
        content=request.content,
        sender_info=request.sender_info,
        intent_category=request.intent_category,
        platform=request.platform,
        priority=request.priority,
        queued_at=request.received_at,
        dedupe_key=request.dedupe_key,
    )
    return _to_response(result)


@router.post("/{tenant_id}/tick", response_model=ProcessorRunResult)
async def run_tick(tenant_id: str, engine: QueueEngine = Depends(get_engine)) -> ProcessorRunResult:
    """Run one queue-processor batch for the tenant.

    Raises:
        HTTPException(409): Another run for this tenant holds the run lock
    """
    result = await engine.run_queue_processor_tick(tenant_id)
    if result.skipped and result.reason == RUN_IN_PROGRESS:
        raise HTTPException(status_code=409, detail=f"Queue run already in progress for tenant {tenant_id}")
    return result


@router.get("/{tenant_id}/status", response_model=QueueStatus)
async def queue_status(tenant_id: str, engine: QueueEngine = Depends(get_engine)) -> QueueStatus:
    return await engine.get_queue_status(tenant_id)


@router.get("/{tenant_id}/agents", response_model=list[AgentCapacityReport])
async def agent_capacity(tenant_id: str, engine: QueueEngine = Depends(get_engine)) -> list[AgentCapacityReport]:
    return await engine.get_agent_capacity(tenant_id)
