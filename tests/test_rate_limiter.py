import asyncio
from unittest.mock import AsyncMock, Mock

from redis.exceptions import ConnectionError as RedisConnectionError

from cartrecovery.services.idempotency import claim_webhook_message
from cartrecovery.services.rate_limiter import RateLimiter


def _redis(count=1):
    redis = Mock()
    redis.incr = AsyncMock(return_value=count)
    redis.expire = AsyncMock()
    return redis


class TestRateLimiter:
    def test_first_hit_sets_window(self):
        redis = _redis(count=1)
        limiter = RateLimiter(redis, limit=100, window_seconds=60)

        assert asyncio.run(limiter.hit("abandonment:1.2.3.4")) is True
        redis.incr.assert_awaited_once_with("cartrecovery:ratelimit:abandonment:1.2.3.4")
        redis.expire.assert_awaited_once_with("cartrecovery:ratelimit:abandonment:1.2.3.4", 60)

    def test_later_hits_keep_window(self):
        redis = _redis(count=5)
        limiter = RateLimiter(redis, limit=100, window_seconds=60)

        assert asyncio.run(limiter.hit("k")) is True
        redis.expire.assert_not_called()

    def test_over_limit(self):
        limiter = RateLimiter(_redis(count=101), limit=100, window_seconds=60)
        assert asyncio.run(limiter.hit("k")) is False

    def test_at_limit_is_allowed(self):
        limiter = RateLimiter(_redis(count=100), limit=100, window_seconds=60)
        assert asyncio.run(limiter.hit("k")) is True

    def test_redis_outage_allows(self):
        redis = _redis()
        redis.incr.side_effect = RedisConnectionError("down")
        limiter = RateLimiter(redis, limit=1, window_seconds=60)

        assert asyncio.run(limiter.hit("k")) is True

    def test_without_redis(self):
        assert asyncio.run(RateLimiter(None, limit=1, window_seconds=60).hit("k")) is True


class TestWebhookDedup:
    def test_first_delivery_is_claimed(self):
        redis = Mock()
        redis.set = AsyncMock(return_value=True)

        assert asyncio.run(claim_webhook_message(redis, "wamid.1", 86400)) is True
        redis.set.assert_awaited_once_with("cartrecovery:dedup:wamid.1", "1", ex=86400, nx=True)

    def test_redelivery_is_rejected(self):
        redis = Mock()
        redis.set = AsyncMock(return_value=None)

        assert asyncio.run(claim_webhook_message(redis, "wamid.1", 86400)) is False

    def test_redis_outage_falls_through(self):
        redis = Mock()
        redis.set = AsyncMock(side_effect=RedisConnectionError("down"))

        assert asyncio.run(claim_webhook_message(redis, "wamid.1", 86400)) is True

    def test_no_redis(self):
        assert asyncio.run(claim_webhook_message(None, "wamid.1", 86400)) is True
