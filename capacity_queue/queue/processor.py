"""QueueProcessor: replays due queued messages for one tenant per run.

A run:
1. Evaluates the tenant's business hours; out of window means no dequeue at all
2. Takes the tenant run lock so runs for one tenant never overlap
3. Reclaims stale PROCESSING claims, then claims due messages in priority/FIFO order
4. For each message, re-derives agent load, selects an agent and hands off
5. Converts every failure into a retry (bounded backoff) or, past the attempts
   ceiling, a FAILED record reported to the escalation sink

Failures are isolated per message: one stuck message never aborts the batch.
"""

import uuid
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from capacity_queue.core.config import Settings
from capacity_queue.core.locking import TenantRunLock
from capacity_queue.domain.schemas import AgentCandidate, AgentKind
from capacity_queue.domain.selection import AgentSelector
from capacity_queue.queue.admission import CandidateLoader, tenant_window
from capacity_queue.queue.estimator import WaitTimeEstimator
from capacity_queue.queue.protocols import AssignmentStore, BusinessHoursSource, EscalationSink
from capacity_queue.queue.schemas import ProcessorRunResult, QueuedMessage
from capacity_queue.queue.store import QueueStore, as_utc
from capacity_queue.queue.usage import AgentUsageTracker

logger = structlog.get_logger(__name__)

PROCESSED = "processed"
RETRIED = "retried"
FAILED = "failed"
ERROR = "error"

RUN_IN_PROGRESS = "run in progress"


@dataclass(frozen=True)
class ProcessorConfig:
    base_interval: timedelta = timedelta(minutes=2)
    max_interval: timedelta = timedelta(minutes=30)
    max_attempts: int = 10
    processing_timeout: timedelta = timedelta(minutes=5)
    prefer_human_for_intents: frozenset[str] = frozenset({"support"})

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessorConfig":
        return cls(
            base_interval=timedelta(minutes=settings.retry_base_interval_minutes),
            max_interval=timedelta(minutes=settings.retry_max_interval_minutes),
            max_attempts=settings.max_attempts,
            processing_timeout=timedelta(minutes=settings.processing_timeout_minutes),
            prefer_human_for_intents=frozenset(settings.prefer_human_for_intents),
        )

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next try: min(attempts * base, max)."""
        return min(self.base_interval * max(attempts, 1), self.max_interval)


class QueueProcessor:
    def __init__(
        self,
        store: QueueStore,
        selector: AgentSelector,
        candidates: CandidateLoader,
        assignments: AssignmentStore,
        escalations: EscalationSink,
        hours_source: BusinessHoursSource,
        usage: AgentUsageTracker,
        estimator: WaitTimeEstimator,
        run_lock: TenantRunLock | None = None,
        config: ProcessorConfig | None = None,
    ):
        self.store = store
        self.selector = selector
        self.candidates = candidates
        self.assignments = assignments
        self.escalations = escalations
        self.hours_source = hours_source
        self.usage = usage
        self.estimator = estimator
        self.run_lock = run_lock
        self.config = config or ProcessorConfig()

    async def run_once(self, tenant_id: str, now: datetime | None = None) -> ProcessorRunResult:
        """Process one batch of due messages for a tenant.

        Args:
            tenant_id: Tenant to process
            now: Current time (for deterministic testing)

        Returns:
            ProcessorRunResult with per-outcome counters; skipped=True when the
            tenant is out of business hours or another run holds the lock
        """
        now = as_utc(now or datetime.now(UTC))
        result = ProcessorRunResult(tenant_id=tenant_id)

        _config, window = await tenant_window(self.hours_source, tenant_id, now)
        if not window.in_window:
            logger.info(
                "queue_run_outside_business_hours",
                tenant_id=tenant_id,
                reason=window.reason,
                next_window_start=window.next_window_start.isoformat() if window.next_window_start else None,
            )
            result.skipped = True
            result.reason = window.reason
            return result

        run_id = uuid.uuid4().hex
        async with self._exclusive(tenant_id, run_id) as acquired:
            if not acquired:
                result.skipped = True
                result.reason = RUN_IN_PROGRESS
                return result

            structlog.contextvars.bind_contextvars(tenant_id=tenant_id, run_id=run_id)
            try:
                await self._run_batch(tenant_id, now, result)
            finally:
                structlog.contextvars.unbind_contextvars("tenant_id", "run_id")
        return result

    def _exclusive(self, tenant_id: str, run_id: str) -> AbstractAsyncContextManager[bool]:
        if self.run_lock is None:
            return nullcontext(True)
        return self.run_lock.hold(tenant_id, run_id)

    async def _run_batch(self, tenant_id: str, now: datetime, result: ProcessorRunResult) -> None:
        try:
            result.reclaimed = await self.store.reclaim_stale(tenant_id, now, self.config.processing_timeout)
            messages = await self.store.dequeue_due(tenant_id, now)
        except Exception as exc:
            logger.error(
                "queue_dequeue_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            result.reason = "queue store unavailable"
            return

        result.claimed = len(messages)
        for message in messages:
            outcome = await self._process_message(message, now)
            if outcome == PROCESSED:
                result.processed += 1
            elif outcome == RETRIED:
                result.retried += 1
            elif outcome == FAILED:
                result.failed += 1
            else:
                result.errors += 1

        logger.info("queue_run_complete", **result.model_dump(exclude={"tenant_id", "skipped", "reason"}))

    async def _process_message(self, message: QueuedMessage, now: datetime) -> str:
        tenant_id = message.tenant_id
        try:
            existing = await self.assignments.find_active_assignment(message.conversation_id, tenant_id)
            if existing is not None:
                # Handed off by an earlier run whose bookkeeping didn't land
                await self.store.mark_processed(message.id, existing, now)
                return PROCESSED

            candidates = await self.candidates.load(tenant_id, now)
            best = self.selector.select_best(
                candidates, message.intent_category, self.config.prefer_human_for_intents, now
            )
            if best is None:
                return await self._retry_or_fail(message, now, "no agent available")

            if not await self.assignments.assign(message.conversation_id, best.agent.id, tenant_id):
                return await self._retry_or_fail(message, now, f"hand-off to agent {best.agent.id} refused")
        except Exception as exc:
            logger.error(
                "queue_message_handoff_error",
                message_id=message.id,
                conversation_id=message.conversation_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return await self._retry_or_fail(message, now, f"{type(exc).__name__}: {exc}"[:500])

        await self._complete(message, best, now)
        return PROCESSED

    async def _complete(self, message: QueuedMessage, best: AgentCandidate, now: datetime) -> None:
        # The conversation is assigned at this point; a failure below leaves the
        # record PROCESSING and the next run settles it via find_active_assignment.
        try:
            await self.store.mark_processed(message.id, best.agent.id, now)
            if best.agent.kind == AgentKind.AI:
                await self.usage.increment(message.tenant_id, best.agent.id, now)
            await self.estimator.record_wait(message.tenant_id, (now - message.queued_at).total_seconds())
        except Exception as exc:
            logger.error(
                "queue_message_completion_bookkeeping_failed",
                message_id=message.id,
                agent_id=best.agent.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        logger.info(
            "queue_message_handed_off",
            message_id=message.id,
            conversation_id=message.conversation_id,
            agent_id=best.agent.id,
            agent_kind=best.agent.kind.value,
            attempts=message.attempts,
        )

    async def _retry_or_fail(self, message: QueuedMessage, now: datetime, reason: str) -> str:
        try:
            if message.attempts >= self.config.max_attempts:
                if not await self.store.mark_failed(message.id, reason, now):
                    self._transition_lost(message, "failed")
                    return ERROR
                logger.warning(
                    "queue_message_failed",
                    message_id=message.id,
                    conversation_id=message.conversation_id,
                    attempts=message.attempts,
                    reason=reason,
                )
                failed = await self.store.get(message.id)
                await self._escalate(failed or message)
                return FAILED

            next_attempt_at = now + self.config.backoff(message.attempts + 1)
            if not await self.store.mark_retry(message.id, next_attempt_at, reason):
                self._transition_lost(message, "queued")
                return ERROR
            logger.info(
                "queue_message_retry_scheduled",
                message_id=message.id,
                attempts=message.attempts + 1,
                next_attempt_at=next_attempt_at.isoformat(),
                reason=reason,
            )
            return RETRIED
        except Exception as exc:
            logger.error(
                "queue_message_retry_bookkeeping_failed",
                message_id=message.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ERROR

    @staticmethod
    def _transition_lost(message: QueuedMessage, to_status: str) -> None:
        # Record changed or vanished since it was claimed
        logger.warning(
            "queue_message_transition_lost",
            message_id=message.id,
            conversation_id=message.conversation_id,
            attempts=message.attempts,
            to_status=to_status,
        )

    async def _escalate(self, message: QueuedMessage) -> None:
        try:
            await self.escalations.report_failed_message(message)
        except Exception as exc:
            logger.error(
                "queue_escalation_failed",
                message_id=message.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
