"""Test SqlAssignmentStore against SQLite: load counting, hand-off and directory."""

import pytest
from sqlalchemy import select

from capacity_queue.db.models import AgentRecord, ConversationAssignment, TenantBusinessHours
from capacity_queue.domain.schemas import AgentKind, WorkingHours
from capacity_queue.queue.protocols import AgentDirectory, AssignmentStore, BusinessHoursSource
from capacity_queue.services.assignment_service import SqlAssignmentStore

pytestmark = pytest.mark.integration


@pytest.fixture
async def store(session_factory, settings):
    async with session_factory() as session, session.begin():
        session.add_all(
            [
                AgentRecord(id="human-1", tenant_id="tenant-1", name="Dana", kind="human", status="active", max_concurrent=2,
                            working_hours={"start": "08:00", "end": "16:00", "timezone": "UTC"}),
                AgentRecord(id="human-2", tenant_id="tenant-1", name="Sam", kind="human", status="inactive"),
                AgentRecord(id="ai-1", tenant_id="tenant-1", name="Bot", kind="ai", status="active", usage_quota=1000),
                AgentRecord(id="ai-9", tenant_id="tenant-2", name="Other", kind="ai", status="active"),
            ]
        )
    return SqlAssignmentStore(session_factory, settings)


def test_implements_collaborator_protocols(store):
    assert isinstance(store, AssignmentStore)
    assert isinstance(store, AgentDirectory)
    assert isinstance(store, BusinessHoursSource)


async def test_list_active_agents_applies_defaults(store):
    agents = await store.list_active_agents("tenant-1")

    assert [a.id for a in agents] == ["ai-1", "human-1"]
    ai, human = agents
    assert ai.max_concurrent == 100
    assert ai.usage_quota == 1000
    assert human.max_concurrent == 2
    assert human.working_hours == WorkingHours(start="08:00", end="16:00", timezone="UTC")


async def test_list_active_agents_by_kind(store):
    humans = await store.list_active_agents("tenant-1", kind=AgentKind.HUMAN)
    assert [a.id for a in humans] == ["human-1"]


async def test_assign_counts_toward_load(store):
    assert await store.assign("conv-1", "human-1", "tenant-1") is True

    assert await store.count_active_conversations("human-1", "tenant-1") == 1
    assert await store.find_active_assignment("conv-1", "tenant-1") == "human-1"
    assert await store.find_active_assignment("conv-1", "tenant-2") is None


async def test_assign_refuses_past_max_concurrent(store):
    assert await store.assign("conv-1", "human-1", "tenant-1") is True
    assert await store.assign("conv-2", "human-1", "tenant-1") is True
    assert await store.assign("conv-3", "human-1", "tenant-1") is False

    assert await store.count_active_conversations("human-1", "tenant-1") == 2


async def test_repeat_assign_is_idempotent(store):
    assert await store.assign("conv-1", "human-1", "tenant-1") is True
    assert await store.assign("conv-1", "human-1", "tenant-1") is True
    assert await store.assign("conv-1", "ai-1", "tenant-1") is False

    assert await store.count_active_conversations("human-1", "tenant-1") == 1


async def test_assign_refuses_inactive_or_foreign_agent(store):
    assert await store.assign("conv-1", "human-2", "tenant-1") is False
    assert await store.assign("conv-1", "ai-9", "tenant-1") is False


async def test_close_assignment_frees_a_slot(store, session_factory):
    await store.assign("conv-1", "human-1", "tenant-1")
    await store.assign("conv-2", "human-1", "tenant-1")

    assert await store.close_assignment("conv-1", "tenant-1") is True
    assert await store.close_assignment("conv-1", "tenant-1") is False
    assert await store.assign("conv-3", "human-1", "tenant-1") is True

    async with session_factory() as session:
        result = await session.execute(
            select(ConversationAssignment).where(ConversationAssignment.conversation_id == "conv-1")
        )
        closed = result.scalar_one()
    assert closed.status == "closed"
    assert closed.closed_at is not None


async def test_business_hours(store, session_factory):
    assert await store.get_business_hours("tenant-1") is None

    async with session_factory() as session, session.begin():
        session.add(TenantBusinessHours(tenant_id="tenant-1", start="09:00", end="17:00", timezone="UTC", days=[1, 2, 3, 4, 5]))
        session.add(TenantBusinessHours(tenant_id="tenant-2", start="09:00", end="17:00", days=[1], enabled=False))

    assert await store.get_business_hours("tenant-1") == {
        "start": "09:00",
        "end": "17:00",
        "timezone": "UTC",
        "days": [1, 2, 3, 4, 5],
    }
    assert await store.get_business_hours("tenant-2") is None


async def test_malformed_working_hours_do_not_hide_agents(store, session_factory):
    async with session_factory() as session, session.begin():
        session.add(
            AgentRecord(id="human-3", tenant_id="tenant-1", name="Kim", kind="human", status="active",
                        working_hours={"start": 9})
        )

    agents = await store.list_active_agents("tenant-1")

    assert [a.id for a in agents] == ["ai-1", "human-1", "human-3"]
    assert agents[2].working_hours is None
    assert agents[1].working_hours is not None
