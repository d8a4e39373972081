"""Queue wait estimator using Exponential Moving Average."""

from redis.asyncio import Redis


class WaitTimeEstimator:
    """Estimates how long a queued message waits before hand-off, per tenant."""

    KEY = "queue:{tenant_id}:avg_wait_seconds"

    def __init__(self, redis: Redis, default_seconds: float = 300, alpha: float = 0.3):
        self.redis = redis
        self.default_seconds = default_seconds
        self.alpha = alpha  # EMA weight (0.3 = 30% new, 70% historical)

    async def _average(self, tenant_id: str) -> float:
        return float(await self.redis.get(self.KEY.format(tenant_id=tenant_id)) or self.default_seconds)

    async def record_wait(self, tenant_id: str, wait_seconds: float) -> None:
        """Fold an observed queued_at -> hand-off wait into the tenant average.

        Uses EMA formula: new_avg = alpha * new_value + (1 - alpha) * old_avg
        """
        current_avg = await self._average(tenant_id)
        new_avg = self.alpha * max(wait_seconds, 0.0) + (1 - self.alpha) * current_avg
        await self.redis.set(self.KEY.format(tenant_id=tenant_id), str(new_avg))

    async def estimate_wait_seconds(self, tenant_id: str, position: int, active_agents: int = 1) -> int:
        """Estimate wait in seconds given a queue position.

        Formula: wait_time = avg_wait * position / agents
        """
        if position <= 0:
            return 0
        avg = await self._average(tenant_id)
        agents = max(active_agents, 1)
        return int((avg * position) / agents)

    @staticmethod
    def format_wait_time(seconds: int) -> str:
        """Format wait time as human-readable string (e.g. "5 minutes", "2h 15m")."""
        if seconds < 60:
            return f"{seconds} seconds"
        elif seconds < 3600:
            minutes = seconds // 60
            return f"{minutes} minute{'s' if minutes != 1 else ''}"
        else:
            hours = seconds // 3600
            minutes = (seconds % 3600) // 60
            if minutes > 0:
                return f"{hours}h {minutes}m"
            return f"{hours}h"
