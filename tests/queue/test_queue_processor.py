"""Test QueueProcessor runs: gating, hand-off, bounded retry and isolation."""

from datetime import UTC, datetime, timedelta

import pytest

from capacity_queue.core.locking import TenantRunLock
from capacity_queue.domain.schemas import AgentKind
from capacity_queue.queue.processor import RUN_IN_PROGRESS, ProcessorConfig
from capacity_queue.queue.schemas import MessagePriority, MessageStatus

pytestmark = pytest.mark.unit

WEDNESDAY_NOON = datetime(2024, 6, 12, 12, 0, tzinfo=UTC)
SATURDAY_10AM = datetime(2024, 6, 15, 10, 0, tzinfo=UTC)
WEEKDAYS_9_TO_5 = {"start": "09:00", "end": "17:00", "timezone": "UTC", "days": [1, 2, 3, 4, 5]}


async def enqueue(harness, message, estimated_process_at=None):
    record, _ = await harness.store.enqueue(message, estimated_process_at or message.queued_at)
    return record


def test_backoff_is_linear_and_capped():
    config = ProcessorConfig()

    assert config.backoff(1) == timedelta(minutes=2)
    assert config.backoff(3) == timedelta(minutes=6)
    assert config.backoff(15) == timedelta(minutes=30)
    assert config.backoff(100) == timedelta(minutes=30)


def test_config_from_settings(settings):
    config = ProcessorConfig.from_settings(settings.model_copy(update={"max_attempts": 3}))
    assert config.max_attempts == 3
    assert config.prefer_human_for_intents == frozenset({"support"})


async def test_out_of_hours_run_touches_nothing(harness, make_agent, make_message):
    harness.hours.configs["tenant-1"] = WEEKDAYS_9_TO_5
    harness.add_agent(make_agent())
    record = await enqueue(harness, make_message(queued_at=SATURDAY_10AM - timedelta(hours=1)))

    result = await harness.processor.run_once("tenant-1", SATURDAY_10AM)

    assert result.skipped is True
    assert result.reason == "Outside business days"
    assert result.claimed == 0
    assert harness.directory.calls == 0
    assert harness.assignments.assign_calls == []
    assert (await harness.store.get(record.id)).status == MessageStatus.QUEUED


async def test_due_message_is_handed_off(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1"))
    record = await enqueue(harness, make_message())

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=10))

    assert result.processed == 1
    assert await harness.assignments.find_active_assignment("conv-1", "tenant-1") == "human-1"
    stored = await harness.store.get(record.id)
    assert stored.status == MessageStatus.PROCESSED
    assert stored.assigned_agent_id == "human-1"
    assert await harness.store.queue_length("tenant-1") == 0


async def test_handoff_records_wait_time(harness, make_agent, make_message):
    harness.add_agent(make_agent())
    await enqueue(harness, make_message())

    await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=10))

    # EMA from the 300s default: 0.3 * 600 + 0.7 * 300
    assert float(await harness.redis.get("queue:tenant-1:avg_wait_seconds")) == pytest.approx(390)


async def test_ai_handoff_counts_monthly_usage(harness, make_agent, make_message):
    harness.add_agent(make_agent("ai-1", kind=AgentKind.AI, usage_quota=1000))
    await enqueue(harness, make_message())
    now = WEDNESDAY_NOON + timedelta(minutes=1)

    await harness.processor.run_once("tenant-1", now)

    assert await harness.engine.usage.get("tenant-1", "ai-1", now) == 1


async def test_no_agent_schedules_retry_with_backoff(harness, make_message):
    record = await enqueue(harness, make_message())
    now = WEDNESDAY_NOON + timedelta(minutes=1)

    result = await harness.processor.run_once("tenant-1", now)

    assert result.retried == 1
    stored = await harness.store.get(record.id)
    assert stored.status == MessageStatus.QUEUED
    assert stored.attempts == 1
    assert stored.estimated_process_at == now + timedelta(minutes=2)
    assert stored.last_error == "no agent available"


async def test_message_fails_after_max_attempts_and_escalates(harness, make_message):
    record = await enqueue(harness, make_message())
    now = WEDNESDAY_NOON

    for _ in range(10):
        now += timedelta(minutes=31)
        result = await harness.processor.run_once("tenant-1", now)
        assert result.retried == 1
        assert result.failed == 0

    assert (await harness.store.get(record.id)).attempts == 10
    assert harness.escalations.reported == []

    now += timedelta(minutes=31)
    result = await harness.processor.run_once("tenant-1", now)

    assert result.failed == 1
    stored = await harness.store.get(record.id)
    assert stored.status == MessageStatus.FAILED
    assert stored.attempts == 10
    assert [m.id for m in harness.escalations.reported] == [record.id]
    assert harness.escalations.reported[0].status == MessageStatus.FAILED

    result = await harness.processor.run_once("tenant-1", now + timedelta(hours=1))
    assert result.claimed == 0


async def test_refused_handoff_is_retried(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1"))
    harness.assignments.fail_next = 1
    record = await enqueue(harness, make_message())

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.retried == 1
    assert (await harness.store.get(record.id)).last_error == "hand-off to agent human-1 refused"


async def test_one_failing_message_does_not_abort_the_batch(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1"))
    harness.assignments.raise_next = 1
    first = await enqueue(harness, make_message("conv-1", WEDNESDAY_NOON))
    second = await enqueue(harness, make_message("conv-2", WEDNESDAY_NOON + timedelta(seconds=1)))

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=1))

    assert result.claimed == 2
    assert result.retried == 1
    assert result.processed == 1
    assert (await harness.store.get(first.id)).last_error.startswith("ConnectionError")
    assert (await harness.store.get(second.id)).status == MessageStatus.PROCESSED


async def test_capacity_is_never_exceeded(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1", max_concurrent=2))
    for i in range(5):
        await enqueue(harness, make_message(f"conv-{i}", WEDNESDAY_NOON + timedelta(seconds=i)))

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=1))

    assert result.processed == 2
    assert result.retried == 3
    assert await harness.assignments.count_active_conversations("human-1", "tenant-1") == 2


async def test_high_priority_gets_the_last_slot(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1", max_concurrent=1))
    await enqueue(harness, make_message("conv-low", WEDNESDAY_NOON, MessagePriority.LOW))
    await enqueue(harness, make_message("conv-high", WEDNESDAY_NOON + timedelta(seconds=1), MessagePriority.HIGH))

    await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=1))

    assert await harness.assignments.find_active_assignment("conv-high", "tenant-1") == "human-1"
    assert await harness.assignments.find_active_assignment("conv-low", "tenant-1") is None


async def test_already_assigned_conversation_is_settled(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1"))
    harness.assignments.assignments[("tenant-1", "conv-1")] = "human-1"
    record = await enqueue(harness, make_message())

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.processed == 1
    assert harness.assignments.assign_calls == []
    assert (await harness.store.get(record.id)).assigned_agent_id == "human-1"


async def test_run_in_progress_is_skipped(harness, make_agent, make_message):
    harness.add_agent(make_agent())
    record = await enqueue(harness, make_message())
    assert await TenantRunLock(harness.redis).acquire("tenant-1", "other-run")

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.skipped is True
    assert result.reason == RUN_IN_PROGRESS
    assert (await harness.store.get(record.id)).status == MessageStatus.QUEUED


async def test_run_releases_lock(harness, make_message):
    await enqueue(harness, make_message())

    await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert await harness.redis.get("queue:lock:run:tenant-1") is None


async def test_stale_claim_is_reclaimed_and_processed(harness, make_agent, make_message):
    harness.add_agent(make_agent("human-1"))
    record = await enqueue(harness, make_message())
    await harness.store.dequeue_due("tenant-1", WEDNESDAY_NOON)  # claimed by a run that crashed

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON + timedelta(minutes=10))

    assert result.reclaimed == 1
    assert result.processed == 1
    assert (await harness.store.get(record.id)).attempts == 0


async def test_run_without_lock_still_processes(harness, make_agent, make_message):
    harness.processor.run_lock = None
    harness.add_agent(make_agent("human-1"))
    await enqueue(harness, make_message())

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.processed == 1


async def test_lost_retry_transition_counts_as_error(harness, make_message, monkeypatch):
    record = await enqueue(harness, make_message())

    async def lost_retry(message_id, next_attempt_at, reason=""):
        return False

    monkeypatch.setattr(harness.store, "mark_retry", lost_retry)

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.retried == 0
    assert result.errors == 1
    assert (await harness.store.get(record.id)).status == MessageStatus.PROCESSING


async def test_lost_failed_transition_skips_escalation(harness, make_message, monkeypatch):
    harness.processor.config = ProcessorConfig(max_attempts=0)
    await enqueue(harness, make_message())

    async def lost_failure(message_id, reason, now):
        return False

    monkeypatch.setattr(harness.store, "mark_failed", lost_failure)

    result = await harness.processor.run_once("tenant-1", WEDNESDAY_NOON)

    assert result.failed == 0
    assert result.errors == 1
    assert harness.escalations.reported == []
