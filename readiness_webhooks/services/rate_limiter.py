"""
Rate Limiter Service using Redis sorted sets (sliding window).

Limits webhook API calls per organisation.
"""
import time
import redis.asyncio as redis

from readiness_webhooks.config import settings
from readiness_webhooks.logging_config import logger


class RateLimiter:
    """Per-organisation rate limiter using Redis sorted sets."""

    def __init__(self, redis_url: str = None, limit: int = None, window: int = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = None
        self.limit = limit or settings.WEBHOOK_API_RATE_LIMIT  # requests per window
        self.window = window or settings.WEBHOOK_API_RATE_WINDOW  # seconds

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def key_for(self, org_id: str) -> str:
        return f"ratelimit:webhooks:{org_id}"

    async def is_allowed(self, org_id: str) -> tuple[bool, int]:
        """
        Check if request is allowed for the organisation.

        Returns:
            (allowed: bool, retry_after: int)
        """
        r = await self.get_redis()
        key = self.key_for(org_id)
        now = time.time()
        window_start = now - self.window

        try:
            # Drop entries outside the window, then count what is left
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()

            request_count = results[1]

            if request_count >= self.limit:
                oldest = await r.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = int(self.window - (now - oldest[0][1]))
                else:
                    retry_after = self.window
                return False, max(retry_after, 1)

            await r.zadd(key, {str(now): now})
            await r.expire(key, self.window)

            return True, 0

        except (redis.RedisError, OSError) as e:
            # Fail open when Redis is unreachable
            logger.warning("rate_limiter_unavailable", org_id=org_id, error=str(e))
            return True, 0

    async def get_current_count(self, org_id: str) -> int:
        """Get current request count for organisation."""
        r = await self.get_redis()
        key = self.key_for(org_id)
        window_start = time.time() - self.window

        try:
            await r.zremrangebyscore(key, 0, window_start)
            return await r.zcard(key)
        except (redis.RedisError, OSError):
            return 0


# Singleton instance
rate_limiter = RateLimiter()
