"""QueueEngine: the operations the messaging pipeline calls into.

- try_immediate_assign: admit an inbound message now, or queue it
- run_queue_processor_tick: one processor run for a tenant (external scheduler)
- process_all_tenants: a tick for every tenant with backlog, concurrently
- get_queue_status / get_agent_capacity: read-only dashboard views

The engine holds no module-level state; every collaborator is injected and
all tenant context is passed per call.
"""

import asyncio
import math
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.asyncio import Redis

from capacity_queue.core.config import Settings, get_settings
from capacity_queue.core.locking import TenantRunLock
from capacity_queue.domain.capacity import CapacityEvaluator, CapacityPolicy
from capacity_queue.domain.schemas import AgentCapacityReport, AgentKind
from capacity_queue.domain.selection import AgentSelector
from capacity_queue.queue import notices
from capacity_queue.queue.admission import CandidateLoader, tenant_window
from capacity_queue.queue.estimator import WaitTimeEstimator
from capacity_queue.queue.processor import ProcessorConfig, QueueProcessor
from capacity_queue.queue.protocols import (
    AgentDirectory,
    AssignmentStore,
    BusinessHoursSource,
    EscalationSink,
    NotificationSender,
)
from capacity_queue.queue.schemas import (
    Assigned,
    MessagePriority,
    NewQueuedMessage,
    ProcessorRunResult,
    Queued,
    QueueStatus,
)
from capacity_queue.queue.store import QueueStore, as_utc
from capacity_queue.queue.usage import AgentUsageTracker

logger = structlog.get_logger(__name__)


class QueueEngine:
    def __init__(
        self,
        store: QueueStore,
        processor: QueueProcessor,
        selector: AgentSelector,
        candidates: CandidateLoader,
        assignments: AssignmentStore,
        directory: AgentDirectory,
        notifications: NotificationSender,
        hours_source: BusinessHoursSource,
        usage: AgentUsageTracker,
        estimator: WaitTimeEstimator,
        config: ProcessorConfig,
    ):
        self.store = store
        self.processor = processor
        self.selector = selector
        self.candidates = candidates
        self.assignments = assignments
        self.directory = directory
        self.notifications = notifications
        self.hours_source = hours_source
        self.usage = usage
        self.estimator = estimator
        self.config = config

    @classmethod
    def build(
        cls,
        redis: Redis,
        assignments: AssignmentStore,
        directory: AgentDirectory,
        notifications: NotificationSender,
        escalations: EscalationSink,
        hours_source: BusinessHoursSource,
        settings: Settings | None = None,
    ) -> "QueueEngine":
        """Wire an engine from a Redis client, the collaborators and settings."""
        settings = settings or get_settings()
        config = ProcessorConfig.from_settings(settings)
        selector = AgentSelector(CapacityEvaluator(CapacityPolicy.from_settings(settings)))
        store = QueueStore(redis)
        usage = AgentUsageTracker(redis)
        estimator = WaitTimeEstimator(redis, default_seconds=settings.default_wait_minutes_per_message * 60)
        candidates = CandidateLoader(directory, assignments, usage)
        processor = QueueProcessor(
            store=store,
            selector=selector,
            candidates=candidates,
            assignments=assignments,
            escalations=escalations,
            hours_source=hours_source,
            usage=usage,
            estimator=estimator,
            run_lock=TenantRunLock(redis, ttl=settings.tenant_run_lock_seconds),
            config=config,
        )
        return cls(
            store=store,
            processor=processor,
            selector=selector,
            candidates=candidates,
            assignments=assignments,
            directory=directory,
            notifications=notifications,
            hours_source=hours_source,
            usage=usage,
            estimator=estimator,
            config=config,
        )

    async def try_immediate_assign(
        self,
        conversation_id: str,
        tenant_id: str,
        content: str,
        sender_info: dict[str, Any] | None = None,
        intent_category: str | None = None,
        platform: str = "",
        priority: MessagePriority = MessagePriority.MEDIUM,
        queued_at: datetime | None = None,
        dedupe_key: str | None = None,
        now: datetime | None = None,
    ) -> Assigned | Queued:
        """Assign the conversation to an agent now, or queue the message.

        Args:
            conversation_id: Conversation the inbound message belongs to
            tenant_id: Owning tenant
            content: Message text
            sender_info: Transport-specific sender details
            intent_category: Classified intent, used for human preference
            platform: Source platform (whatsapp, telegram, ...)
            priority: Queue priority if the message has to wait
            queued_at: Receipt time from the webhook; part of the dedupe key
            dedupe_key: Explicit dedupe key overriding the derived one
            now: Current time (for deterministic testing)

        Returns:
            Assigned(agent_id) or Queued(message)
        """
        now = as_utc(now or datetime.now(UTC))
        message = NewQueuedMessage(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            platform=platform,
            content=content,
            sender_info=sender_info or {},
            intent_category=intent_category,
            priority=priority,
            queued_at=queued_at or now,
            dedupe_key=dedupe_key,
        )

        try:
            existing = await self.assignments.find_active_assignment(conversation_id, tenant_id)
        except Exception as exc:
            logger.warning(
                "existing_assignment_lookup_failed",
                conversation_id=conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            existing = None
        if existing is not None:
            return Assigned(conversation_id=conversation_id, agent_id=existing, reason="already assigned")

        config, window = await tenant_window(self.hours_source, tenant_id, now)
        if not window.in_window:
            return await self._defer(
                message,
                estimated_process_at=window.next_window_start or now,
                reason=window.reason or "outside business hours",
                notice=notices.out_of_hours_notice(config, window.next_window_start, now),
            )

        try:
            candidates = await self.candidates.load(tenant_id, now)
            best = self.selector.select_best(candidates, intent_category, self.config.prefer_human_for_intents, now)
            if best is not None and await self.assignments.assign(conversation_id, best.agent.id, tenant_id):
                if best.agent.kind == AgentKind.AI:
                    await self._count_usage(tenant_id, best.agent.id, now)
                logger.info(
                    "conversation_assigned",
                    conversation_id=conversation_id,
                    tenant_id=tenant_id,
                    agent_id=best.agent.id,
                    agent_kind=best.agent.kind.value,
                )
                return Assigned(conversation_id=conversation_id, agent_id=best.agent.id, reason="agent available")

            if best is None:
                reason = "no agent available"
                retry_after = self.selector.shortest_retry_after(candidates, now)
            else:
                reason = f"hand-off to agent {best.agent.id} refused"
                retry_after = None
        except Exception as exc:
            logger.error(
                "immediate_assignment_failed",
                conversation_id=conversation_id,
                tenant_id=tenant_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            reason = "assignment backend unavailable"
            retry_after = None

        return await self._defer(message, now, reason, notices.capacity_notice(retry_after))

    async def _defer(self, message: NewQueuedMessage, estimated_process_at: datetime, reason: str, notice: str) -> Queued:
        record, created = await self.store.enqueue(message, estimated_process_at)
        if not created:
            return Queued(message=record, reason=reason)

        try:
            await self.notifications.send_system_message(record.conversation_id, notice)
        except Exception as exc:
            logger.warning(
                "queued_notice_failed",
                conversation_id=record.conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return Queued(message=record, reason=reason)

        return Queued(message=record, reason=reason, notice=notice)

    async def _count_usage(self, tenant_id: str, agent_id: str, now: datetime) -> None:
        try:
            await self.usage.increment(tenant_id, agent_id, now)
        except Exception as exc:
            logger.warning("agent_usage_increment_failed", agent_id=agent_id, error=str(exc))

    async def run_queue_processor_tick(self, tenant_id: str, now: datetime | None = None) -> ProcessorRunResult:
        return await self.processor.run_once(tenant_id, now)

    async def process_all_tenants(self, now: datetime | None = None) -> list[ProcessorRunResult]:
        """Run a tick for every tenant with backlog; tenants run concurrently."""
        now = as_utc(now or datetime.now(UTC))
        tenants = await self.store.tenants_with_backlog()
        if not tenants:
            logger.info("no_tenants_with_backlog")
            return []
        results = await asyncio.gather(*(self.processor.run_once(tenant_id, now) for tenant_id in tenants))
        logger.info(
            "queue_sweep_complete",
            tenants=len(tenants),
            processed=sum(r.processed for r in results),
            failed=sum(r.failed for r in results),
        )
        return list(results)

    async def get_queue_status(self, tenant_id: str) -> QueueStatus:
        """Backlog length, oldest queued time and an estimated wait in minutes."""
        queue_length = await self.store.queue_length(tenant_id)
        oldest = await self.store.oldest_queued_at(tenant_id)

        try:
            active_agents = len(await self.directory.list_active_agents(tenant_id))
        except Exception as exc:
            logger.warning("agent_directory_unavailable", tenant_id=tenant_id, error=str(exc))
            active_agents = 1

        wait_seconds = await self.estimator.estimate_wait_seconds(tenant_id, queue_length, active_agents)
        return QueueStatus(
            queue_length=queue_length,
            oldest_queued_at=oldest,
            estimated_wait_minutes=math.ceil(wait_seconds / 60),
        )

    async def get_agent_capacity(self, tenant_id: str, now: datetime | None = None) -> list[AgentCapacityReport]:
        now = as_utc(now or datetime.now(UTC))
        candidates = await self.candidates.load(tenant_id, now)
        return self.selector.capacity_snapshot(candidates, now)
