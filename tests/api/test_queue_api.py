"""Test queue API routes over the fake-backed engine."""

import pytest

from capacity_queue.core.exceptions import QueueStoreError
from capacity_queue.core.locking import TenantRunLock

pytestmark = pytest.mark.integration


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "capacity-queue"}


async def test_request_id_is_echoed(client):
    response = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


async def test_submit_message_assigns_agent(client, harness, make_agent):
    harness.add_agent(make_agent("human-1"))

    response = await client.post(
        "/api/queue/tenant-1/messages",
        json={"conversation_id": "conv-1", "content": "hi", "platform": "telegram"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "assigned"
    assert body["agent_id"] == "human-1"
    assert body["message_id"] is None


async def test_submit_message_queues_when_no_agent(client, harness):
    response = await client.post(
        "/api/queue/tenant-1/messages",
        json={"conversation_id": "conv-1", "content": "hi", "priority": "high"},
    )

    body = response.json()
    assert body["outcome"] == "queued"
    assert body["message_id"].startswith("qm_")
    assert body["notice"].startswith("Thank you for your message!")
    assert harness.notifications.sent == [("conv-1", body["notice"])]


async def test_submit_message_validates_body(client):
    response = await client.post("/api/queue/tenant-1/messages", json={"content": "no conversation"})
    assert response.status_code == 422


async def test_status_reports_backlog(client):
    await client.post("/api/queue/tenant-1/messages", json={"conversation_id": "conv-1", "content": "a"})
    await client.post("/api/queue/tenant-1/messages", json={"conversation_id": "conv-2", "content": "b"})

    response = await client.get("/api/queue/tenant-1/status")

    assert response.status_code == 200
    body = response.json()
    assert body["queue_length"] == 2
    assert body["estimated_wait_minutes"] == 10
    assert body["oldest_queued_at"] is not None


async def test_tick_processes_backlog(client, harness, make_agent):
    await client.post("/api/queue/tenant-1/messages", json={"conversation_id": "conv-1", "content": "a"})
    harness.add_agent(make_agent("human-1"))

    response = await client.post("/api/queue/tenant-1/tick")

    assert response.status_code == 200
    assert response.json()["processed"] == 1


async def test_tick_conflict_while_run_in_progress(client, harness):
    await TenantRunLock(harness.redis).acquire("tenant-1", "other-run")

    response = await client.post("/api/queue/tenant-1/tick")

    assert response.status_code == 409
    body = response.json()
    assert "already in progress" in body["detail"]
    assert "debug_id" in body


async def test_agent_capacity(client, harness, make_agent):
    harness.add_agent(make_agent("human-1", max_concurrent=4))
    harness.assignments.preload("tenant-1", "human-1", 1)

    response = await client.get("/api/queue/tenant-1/agents")

    assert response.status_code == 200
    [row] = response.json()
    assert row["agent_id"] == "human-1"
    assert row["kind"] == "human"
    assert row["utilization_rate"] == 25.0
    assert row["status"] == "available"


async def test_queue_store_error_maps_to_503(client, harness, monkeypatch):
    async def broken_status(tenant_id):
        raise QueueStoreError("Corrupt queue record 'qm_1'")

    monkeypatch.setattr(harness.engine, "get_queue_status", broken_status)

    response = await client.get("/api/queue/tenant-1/status")

    assert response.status_code == 503
    body = response.json()
    assert body["detail"] == "Queue temporarily unavailable"
    assert "qm_1" not in body["detail"]
    assert "debug_id" in body
