"""Monthly conversation counters for AI agent usage quotas."""

from datetime import UTC, datetime

from redis.asyncio import Redis


class AgentUsageTracker:
    """Track conversations handled per AI agent per calendar month (UTC)."""

    KEY = "usage:{tenant_id}:{agent_id}:conversations:{period}"

    def __init__(self, redis: Redis):
        self.redis = redis

    def _key(self, tenant_id: str, agent_id: str, now: datetime) -> str:
        return self.KEY.format(tenant_id=tenant_id, agent_id=agent_id, period=now.astimezone(UTC).strftime("%Y-%m"))

    async def increment(self, tenant_id: str, agent_id: str, now: datetime | None = None) -> int:
        """Count one more conversation. Sets expiry at the next month boundary if not already set.

        Args:
            tenant_id: Tenant identifier
            agent_id: Agent identifier
            now: Current time (for deterministic testing)

        Returns:
            New usage count for the month
        """
        now = now or datetime.now(UTC)
        key = self._key(tenant_id, agent_id, now)

        count = await self.redis.incr(key)

        ttl = await self.redis.ttl(key)
        if ttl == -1:  # No expiry set
            await self.redis.expireat(key, int(self.next_reset(now).timestamp()))

        return count

    async def get(self, tenant_id: str, agent_id: str, now: datetime | None = None) -> int:
        """Current month's usage (0 if not set)."""
        now = now or datetime.now(UTC)
        count = await self.redis.get(self._key(tenant_id, agent_id, now))
        return int(count) if count else 0

    @staticmethod
    def next_reset(now: datetime | None = None) -> datetime:
        """First instant of next month, UTC."""
        now = (now or datetime.now(UTC)).astimezone(UTC)
        if now.month == 12:
            return datetime(now.year + 1, 1, 1, tzinfo=UTC)
        return datetime(now.year, now.month + 1, 1, tzinfo=UTC)
