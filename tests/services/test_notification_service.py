"""Test RedisNotificationSender publishes on the conversation system channel."""

import json

import pytest

from capacity_queue.queue.protocols import NotificationSender
from capacity_queue.services.notification_service import RedisNotificationSender

pytestmark = pytest.mark.unit


async def test_system_message_is_published(redis_client):
    sender = RedisNotificationSender(redis_client)
    assert isinstance(sender, NotificationSender)

    pubsub = redis_client.pubsub()
    await pubsub.subscribe("conversation:conv-1:system")
    await pubsub.get_message(timeout=1.0)  # subscribe confirmation

    await sender.send_system_message("conv-1", "We'll be right with you.")

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
    payload = json.loads(message["data"])
    assert payload["conversation_id"] == "conv-1"
    assert payload["text"] == "We'll be right with you."
    assert payload["type"] == "system"

    await pubsub.unsubscribe()
    await pubsub.aclose()
