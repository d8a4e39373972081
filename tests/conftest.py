"""Shared test fixtures for all test groups."""

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
from fakeredis import FakeAsyncRedis

from capacity_queue.core.config import Settings
from capacity_queue.domain.schemas import Agent, AgentKind
from capacity_queue.queue.engine import QueueEngine
from capacity_queue.queue.fakes import (
    AgentDirectoryFake,
    AssignmentStoreFake,
    BusinessHoursSourceFake,
    EscalationSinkFake,
    NotificationSenderFake,
)
from capacity_queue.queue.schemas import MessagePriority, NewQueuedMessage

TENANT = "tenant-1"

# 2024-06-12 is a Wednesday, 2024-06-15 a Saturday, 2024-06-17 a Monday
WEDNESDAY_NOON = datetime(2024, 6, 12, 12, 0, tzinfo=UTC)
SATURDAY_10AM = datetime(2024, 6, 15, 10, 0, tzinfo=UTC)
MONDAY_9AM = datetime(2024, 6, 17, 9, 0, tzinfo=UTC)

WEEKDAYS_9_TO_5 = {"start": "09:00", "end": "17:00", "timezone": "UTC", "days": [1, 2, 3, 4, 5]}


@pytest.fixture
async def redis_client():
    """Create a fake Redis client for testing."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def make_agent():
    """Factory for Agent records with per-kind default capacity."""

    def _make(agent_id: str = "agent-1", kind: AgentKind = AgentKind.HUMAN, tenant_id: str = TENANT, **overrides):
        fields = {"max_concurrent": 5 if kind == AgentKind.HUMAN else 100, "name": agent_id}
        fields.update(overrides)
        return Agent(id=agent_id, tenant_id=tenant_id, kind=kind, **fields)

    return _make


@pytest.fixture
def make_message():
    """Factory for inbound messages awaiting a queue slot."""

    def _make(
        conversation_id: str = "conv-1",
        queued_at: datetime = WEDNESDAY_NOON,
        priority: MessagePriority = MessagePriority.MEDIUM,
        tenant_id: str = TENANT,
        **overrides,
    ) -> NewQueuedMessage:
        fields = {"content": f"hello from {conversation_id}", "platform": "whatsapp"}
        fields.update(overrides)
        return NewQueuedMessage(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            queued_at=queued_at,
            priority=priority,
            **fields,
        )

    return _make


@dataclass
class Harness:
    """An engine wired to fake Redis and in-memory collaborators."""

    redis: FakeAsyncRedis
    assignments: AssignmentStoreFake
    directory: AgentDirectoryFake
    notifications: NotificationSenderFake
    escalations: EscalationSinkFake
    hours: BusinessHoursSourceFake
    engine: QueueEngine

    def add_agent(self, agent: Agent) -> Agent:
        self.directory.agents.append(agent)
        self.assignments.add_agent(agent)
        return agent

    @property
    def store(self):
        return self.engine.store

    @property
    def processor(self):
        return self.engine.processor


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def harness(redis_client, settings):
    assignments = AssignmentStoreFake()
    directory = AgentDirectoryFake()
    notifications = NotificationSenderFake()
    escalations = EscalationSinkFake()
    hours = BusinessHoursSourceFake()
    engine = QueueEngine.build(
        redis=redis_client,
        assignments=assignments,
        directory=directory,
        notifications=notifications,
        escalations=escalations,
        hours_source=hours,
        settings=settings,
    )
    return Harness(
        redis=redis_client,
        assignments=assignments,
        directory=directory,
        notifications=notifications,
        escalations=escalations,
        hours=hours,
        engine=engine,
    )
