"""Tenant run lock: keeps queue processor runs for one tenant from overlapping.

Runs for different tenants use different keys and proceed concurrently.
The lock expires on its own so a crashed processor cannot wedge a tenant.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class TenantRunLock:
    """Redis lock (SET NX EX) scoped to a single tenant's queue processor run."""

    LOCK_PREFIX = "queue:lock:run:"
    DEFAULT_TTL = 300  # 5 minutes

    def __init__(self, redis: Redis, ttl: int | None = None):
        self.redis = redis
        self.ttl = ttl or self.DEFAULT_TTL

    def _lock_key(self, tenant_id: str) -> str:
        return f"{self.LOCK_PREFIX}{tenant_id}"

    async def acquire(self, tenant_id: str, owner: str) -> bool:
        """Attempt to take the tenant's run lock.

        Args:
            tenant_id: Tenant identifier
            owner: Token identifying this run

        Returns:
            True if acquired, False if another run holds it
        """
        result = await self.redis.set(self._lock_key(tenant_id), owner, nx=True, ex=self.ttl)
        return bool(result)

    async def release(self, tenant_id: str, owner: str) -> bool:
        """Release the lock if this owner still holds it.

        Returns:
            True if released, False if the lock expired or belongs to another run
        """
        key = self._lock_key(tenant_id)
        current = await self.redis.get(key)
        if current == owner:
            await self.redis.delete(key)
            return True
        return False

    @asynccontextmanager
    async def hold(self, tenant_id: str, owner: str | None = None) -> AsyncGenerator[bool, None]:
        """Context manager around acquire/release.

        Yields:
            True if the lock was acquired

        Example:
            async with run_lock.hold("tenant-1") as acquired:
                if acquired:
                    ...
        """
        owner = owner or uuid.uuid4().hex
        acquired = False
        try:
            acquired = await self.acquire(tenant_id, owner)
            if not acquired:
                logger.info("tenant_run_lock_busy", tenant_id=tenant_id)
            yield acquired
        finally:
            if acquired:
                await self.release(tenant_id, owner)
