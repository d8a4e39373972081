"""Shared Redis connection pool."""

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from capacity_queue.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


@retry(
    retry=retry_if_exception_type(RedisConnectionError),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "redis_connect_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)
async def _ping(client: redis.Redis) -> None:
    await client.ping()


async def init_redis(url: str | None = None) -> None:
    """Initialize the shared Redis connection pool.

    Retries the connectivity check with exponential backoff so a Redis that
    starts a little after the app doesn't fail the boot.
    """
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    redis_url = url or settings.redis_url

    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    # Verify connectivity
    await _ping(client)
    _redis = client


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
