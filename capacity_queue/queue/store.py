"""QueueStore: durable Redis storage for deferred messages.

Layout per tenant:
- queue:msg:{id}             hash with "status" and the JSON record under "data"
- queue:{tenant}:pending     sorted set, QUEUED ids scored by estimated_process_at
- queue:{tenant}:processing  sorted set, PROCESSING ids scored by claimed_at
- queue:{tenant}:backlog     sorted set, non-terminal ids scored by queued_at
- queue:dedupe:{tenant}:{h}  id of the message first queued for a dedupe key

Every status change is a compare-and-set on the message hash (WATCH/MULTI), so
a message can be claimed by exactly one caller and terminal records never move.
Terminal records are kept for audit; only the index sets forget them.
"""

import hashlib
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import WatchError

from capacity_queue.core.exceptions import QueueStoreError
from capacity_queue.queue.schemas import (
    PRIORITY_RANK,
    MessageStatus,
    NewQueuedMessage,
    QueuedMessage,
)

logger = structlog.get_logger(__name__)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def default_dedupe_key(conversation_id: str, content: str, queued_at: datetime) -> str:
    """Stable key for retried webhook deliveries of the same inbound message."""
    raw = f"{conversation_id}\x1f{content}\x1f{as_utc(queued_at).isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class QueueStore:
    """Stores queued messages and enforces their state machine."""

    MSG_KEY = "queue:msg:{message_id}"
    PENDING_KEY = "queue:{tenant_id}:pending"
    PROCESSING_KEY = "queue:{tenant_id}:processing"
    BACKLOG_KEY = "queue:{tenant_id}:backlog"
    DEDUPE_KEY = "queue:dedupe:{tenant_id}:{digest}"
    TENANTS_KEY = "queue:tenants"

    # Valid state transitions
    TRANSITIONS = {
        MessageStatus.QUEUED: [MessageStatus.PROCESSING],
        MessageStatus.PROCESSING: [
            MessageStatus.PROCESSED,
            MessageStatus.QUEUED,  # retry or stale-claim reclaim
            MessageStatus.FAILED,
        ],
        MessageStatus.PROCESSED: [],  # Terminal state
        MessageStatus.FAILED: [],  # Terminal state
    }

    CAS_ATTEMPTS = 5

    def __init__(self, redis: Redis):
        self.redis = redis

    def _msg_key(self, message_id: str) -> str:
        return self.MSG_KEY.format(message_id=message_id)

    def _pending_key(self, tenant_id: str) -> str:
        return self.PENDING_KEY.format(tenant_id=tenant_id)

    def _processing_key(self, tenant_id: str) -> str:
        return self.PROCESSING_KEY.format(tenant_id=tenant_id)

    def _backlog_key(self, tenant_id: str) -> str:
        return self.BACKLOG_KEY.format(tenant_id=tenant_id)

    async def enqueue(self, message: NewQueuedMessage, estimated_process_at: datetime) -> tuple[QueuedMessage, bool]:
        """Store a new QUEUED message, or return the existing one for a duplicate delivery.

        Args:
            message: Inbound message data
            estimated_process_at: Earliest instant the processor should pick it up

        Returns:
            Tuple of (stored QueuedMessage, created). created is False when the
            dedupe key matched an earlier delivery and its record is returned
        """
        digest = message.dedupe_key or default_dedupe_key(
            message.conversation_id, message.content, message.queued_at
        )
        dedupe_key = self.DEDUPE_KEY.format(tenant_id=message.tenant_id, digest=digest)
        message_id = f"qm_{uuid.uuid4().hex}"

        if not await self.redis.set(dedupe_key, message_id, nx=True):
            existing_id = await self.redis.get(dedupe_key)
            existing = await self.get(existing_id) if existing_id else None
            if existing is not None:
                logger.info(
                    "queue_message_deduplicated",
                    message_id=existing.id,
                    conversation_id=message.conversation_id,
                    tenant_id=message.tenant_id,
                )
                return existing, False
            # Dedupe marker without a record: a previous enqueue died mid-way
            await self.redis.set(dedupe_key, message_id)

        record = QueuedMessage(
            **message.model_dump(exclude={"dedupe_key", "queued_at"}),
            queued_at=as_utc(message.queued_at),
            dedupe_key=digest,
            id=message_id,
            estimated_process_at=as_utc(estimated_process_at),
            attempts=0,
            status=MessageStatus.QUEUED,
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._msg_key(record.id),
                mapping={"status": record.status.value, "data": record.model_dump_json()},
            )
            pipe.zadd(self._pending_key(record.tenant_id), {record.id: record.estimated_process_at.timestamp()})
            pipe.zadd(self._backlog_key(record.tenant_id), {record.id: record.queued_at.timestamp()})
            pipe.sadd(self.TENANTS_KEY, record.tenant_id)
            await pipe.execute()

        logger.info(
            "queue_message_enqueued",
            message_id=record.id,
            conversation_id=record.conversation_id,
            tenant_id=record.tenant_id,
            priority=record.priority.value,
            estimated_process_at=record.estimated_process_at.isoformat(),
        )
        return record, True

    async def get(self, message_id: str) -> QueuedMessage | None:
        """Load a message record, or None if it doesn't exist."""
        raw = await self.redis.hget(self._msg_key(message_id), "data")
        if raw is None:
            return None
        return self._decode(message_id, raw)

    def _decode(self, message_id: str, raw: str) -> QueuedMessage:
        try:
            return QueuedMessage.model_validate_json(raw)
        except ValidationError as exc:
            raise QueueStoreError(f"Corrupt queue record '{message_id}': {exc}") from exc

    async def dequeue_due(self, tenant_id: str, now: datetime, limit: int | None = None) -> list[QueuedMessage]:
        """Claim due QUEUED messages for a tenant.

        Ordered by priority (high first), then queued_at (FIFO within a
        priority). Each message is moved to PROCESSING by its own
        compare-and-set; messages claimed concurrently by another caller are
        skipped, so concurrent callers never receive the same id.
        """
        now = as_utc(now)
        due_ids = await self.redis.zrangebyscore(self._pending_key(tenant_id), "-inf", now.timestamp())

        due: list[QueuedMessage] = []
        for message_id in due_ids:
            message = await self.get(message_id)
            if message is None:
                logger.warning("queue_index_orphan", message_id=message_id, tenant_id=tenant_id)
                await self.redis.zrem(self._pending_key(tenant_id), message_id)
                continue
            due.append(message)

        due.sort(key=lambda m: (-PRIORITY_RANK[m.priority], m.queued_at, m.id))

        claimed: list[QueuedMessage] = []
        for message in due:
            if limit is not None and len(claimed) >= limit:
                break
            updated = await self._transition(
                message.id,
                MessageStatus.PROCESSING,
                lambda current: {"claimed_at": now},
            )
            if updated is not None:
                claimed.append(updated)

        return claimed

    async def mark_processed(self, message_id: str, agent_id: str, now: datetime) -> bool:
        """PROCESSING -> PROCESSED after a successful hand-off."""
        updated = await self._transition(
            message_id,
            MessageStatus.PROCESSED,
            lambda current: {"assigned_agent_id": agent_id, "completed_at": as_utc(now), "last_error": None},
        )
        return updated is not None

    async def mark_retry(self, message_id: str, next_attempt_at: datetime, reason: str = "") -> bool:
        """PROCESSING -> QUEUED with attempts + 1 and a new estimated_process_at."""
        updated = await self._transition(
            message_id,
            MessageStatus.QUEUED,
            lambda current: {
                "attempts": current.attempts + 1,
                "estimated_process_at": as_utc(next_attempt_at),
                "claimed_at": None,
                "last_error": reason or None,
            },
        )
        return updated is not None

    async def mark_failed(self, message_id: str, reason: str, now: datetime) -> bool:
        """PROCESSING -> FAILED once retries are exhausted."""
        updated = await self._transition(
            message_id,
            MessageStatus.FAILED,
            lambda current: {"last_error": reason, "completed_at": as_utc(now)},
        )
        return updated is not None

    async def reclaim_stale(self, tenant_id: str, now: datetime, timeout: timedelta) -> int:
        """Return PROCESSING claims older than ``timeout`` to QUEUED.

        A crashed run is not a failed attempt, so attempts is left unchanged.

        Returns:
            Number of messages reclaimed
        """
        now = as_utc(now)
        cutoff = (now - timeout).timestamp()
        stale_ids = await self.redis.zrangebyscore(self._processing_key(tenant_id), "-inf", cutoff)

        reclaimed = 0
        for message_id in stale_ids:
            updated = await self._transition(
                message_id,
                MessageStatus.QUEUED,
                lambda current: {"estimated_process_at": now, "claimed_at": None, "last_error": "claim expired"},
                guard=lambda current: current.claimed_at is not None and current.claimed_at.timestamp() <= cutoff,
            )
            if updated is not None:
                reclaimed += 1
                logger.warning("queue_claim_reclaimed", message_id=message_id, tenant_id=tenant_id)
        return reclaimed

    async def queue_length(self, tenant_id: str) -> int:
        """Messages not yet handed off or failed (QUEUED + PROCESSING)."""
        return await self.redis.zcard(self._backlog_key(tenant_id))

    async def oldest_queued_at(self, tenant_id: str) -> datetime | None:
        oldest = await self.redis.zrange(self._backlog_key(tenant_id), 0, 0, withscores=True)
        if not oldest:
            return None
        _message_id, score = oldest[0]
        return datetime.fromtimestamp(score, tz=UTC)

    async def tenants_with_backlog(self) -> list[str]:
        """Tenants that currently have QUEUED or PROCESSING messages."""
        tenants = await self.redis.smembers(self.TENANTS_KEY)
        active = []
        for tenant_id in sorted(tenants):
            if await self.redis.zcard(self._backlog_key(tenant_id)) > 0:
                active.append(tenant_id)
        return active

    async def _transition(
        self,
        message_id: str,
        new_status: MessageStatus,
        changes: Callable[[QueuedMessage], dict[str, Any]],
        guard: Callable[[QueuedMessage], bool] | None = None,
    ) -> QueuedMessage | None:
        """Compare-and-set a status change.

        Returns:
            The updated record, or None if the message is missing, the
            transition is invalid from its current status, or the guard fails
        """
        key = self._msg_key(message_id)

        for _ in range(self.CAS_ATTEMPTS):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hget(key, "data")
                    if raw is None:
                        return None

                    current = self._decode(message_id, raw)
                    if new_status not in self.TRANSITIONS[current.status]:
                        return None
                    if guard is not None and not guard(current):
                        return None

                    updated = current.model_copy(update={"status": new_status, **changes(current)})

                    pipe.multi()
                    pipe.hset(key, mapping={"status": new_status.value, "data": updated.model_dump_json()})
                    self._reindex(pipe, updated)
                    await pipe.execute()
                except WatchError:
                    # Someone else changed the record; re-read and re-validate
                    continue

            logger.debug(
                "queue_message_transition",
                message_id=message_id,
                from_status=current.status.value,
                to_status=new_status.value,
            )
            return updated

        logger.warning("queue_transition_contended", message_id=message_id, to_status=new_status.value)
        return None

    def _reindex(self, pipe, message: QueuedMessage) -> None:
        pending = self._pending_key(message.tenant_id)
        processing = self._processing_key(message.tenant_id)

        if message.status == MessageStatus.PROCESSING:
            pipe.zrem(pending, message.id)
            pipe.zadd(processing, {message.id: message.claimed_at.timestamp()})
        elif message.status == MessageStatus.QUEUED:
            pipe.zrem(processing, message.id)
            pipe.zadd(pending, {message.id: message.estimated_process_at.timestamp()})
        else:
            pipe.zrem(processing, message.id)
            pipe.zrem(pending, message.id)
            pipe.zrem(self._backlog_key(message.tenant_id), message.id)
