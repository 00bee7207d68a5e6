from cartrecovery.logging_config import get_logger

logger = get_logger("rate_limiter")


class RateLimiter:
    """Fixed-window counter per key in Redis (INCR, EXPIRE on first hit)."""

    def __init__(self, redis_client, *, limit: int, window_seconds: int, prefix: str = "cartrecovery:ratelimit"):
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def hit(self, key: str) -> bool:
        """Count one request for `key`. Returns False once the limit is exceeded."""
        if self.redis is None:
            return True
        redis_key = f"{self.prefix}:{key}"
        try:
            count = await self.redis.incr(redis_key)
            if count == 1:
                await self.redis.expire(redis_key, self.window_seconds)
        except Exception as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return True
        if count > self.limit:
            logger.warning("Rate limit exceeded", extra={"context": {"key": key, "count": count, "limit": self.limit}})
            return False
        return True
