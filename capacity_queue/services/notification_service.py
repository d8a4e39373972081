"""RedisNotificationSender: system messages to the conversation's transport channel.

The transport layer subscribes to ``conversation:{id}:system`` and delivers
each published payload to the customer on their platform.
"""

import json
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)

CHANNEL_TEMPLATE = "conversation:{conversation_id}:system"


class RedisNotificationSender:
    def __init__(self, redis: Redis):
        self.redis = redis

    async def send_system_message(self, conversation_id: str, text: str) -> None:
        payload = {
            "conversation_id": conversation_id,
            "type": "system",
            "text": text,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        receivers = await self.redis.publish(CHANNEL_TEMPLATE.format(conversation_id=conversation_id), json.dumps(payload))
        logger.debug("system_message_published", conversation_id=conversation_id, receivers=receivers)
