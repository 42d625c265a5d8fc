"""Tests for the per-scope rate limiter.

The limiter must refuse requests when its own backend fails rather than
admitting them.
"""

from unittest.mock import AsyncMock

import pytest

from itemtraxx.config import RateLimitScope, Settings
from itemtraxx.service.errors import RateLimitCheckFailedError, RateLimitedError
from itemtraxx.service.rate_limit import RateLimiter
from itemtraxx.storage.redis_cache import RedisCache


@pytest.fixture
def settings():
    return Settings(jwt_secret="x" * 40, test_mode=True)


class TestLocalCounter:
    """Process-local fallback used when Redis is absent."""

    async def test_allows_up_to_limit_then_denies(self, settings):
        limiter = RateLimiter(None, settings)
        for _ in range(3):
            decision = await limiter.consume(RateLimitScope.ADMIN, "t1:u1", limit=3)
            assert decision.allowed is True
        denied = await limiter.consume(RateLimitScope.ADMIN, "t1:u1", limit=3)
        assert denied.allowed is False
        assert denied.retry_after_seconds >= 1

    async def test_subjects_are_independent(self, settings):
        limiter = RateLimiter(None, settings)
        await limiter.consume(RateLimitScope.TENANT, "t1", limit=1)
        decision = await limiter.consume(RateLimitScope.TENANT, "t2", limit=1)
        assert decision.allowed is True

    async def test_scopes_are_independent(self, settings):
        limiter = RateLimiter(None, settings)
        await limiter.consume(RateLimitScope.TENANT, "t1", limit=1)
        decision = await limiter.consume(RateLimitScope.ADMIN, "t1", limit=1)
        assert decision.allowed is True

    async def test_default_limits_come_from_settings(self):
        settings = Settings(jwt_secret="x" * 40, rate_limit_super_admin=2)
        limiter = RateLimiter(None, settings)
        await limiter.consume(RateLimitScope.SUPER_ADMIN, "s1")
        await limiter.consume(RateLimitScope.SUPER_ADMIN, "s1")
        decision = await limiter.consume(RateLimitScope.SUPER_ADMIN, "s1")
        assert decision.allowed is False

    async def test_enforce_raises_rate_limited(self, settings):
        limiter = RateLimiter(None, settings)
        await limiter.enforce(RateLimitScope.ADMIN, "t1:u1", limit=1)
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce(RateLimitScope.ADMIN, "t1:u1", limit=1)
        assert excinfo.value.status_code == 429
        assert excinfo.value.retry_after_seconds >= 1


class TestFailClosed:
    """Scenario C: a limiter failure is a hard error."""

    async def test_backend_error_raises(self, settings):
        cache = AsyncMock()
        cache.consume_rate_limit = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(cache, settings)
        with pytest.raises(RateLimitCheckFailedError) as excinfo:
            await limiter.consume(RateLimitScope.ADMIN, "t1:u1")
        assert excinfo.value.status_code == 500
        assert excinfo.value.message == "Rate limit check failed"

    async def test_enforce_does_not_swallow_backend_error(self, settings):
        cache = AsyncMock()
        cache.consume_rate_limit = AsyncMock(side_effect=RuntimeError("lua error"))
        limiter = RateLimiter(cache, settings)
        with pytest.raises(RateLimitCheckFailedError):
            await limiter.enforce(RateLimitScope.TENANT, "t1")

    async def test_missing_subject_is_refused(self, settings):
        limiter = RateLimiter(None, settings)
        with pytest.raises(RateLimitCheckFailedError):
            await limiter.consume(RateLimitScope.TENANT, "")

    async def test_cache_deny_passes_retry_after(self, settings):
        cache = AsyncMock()
        cache.consume_rate_limit = AsyncMock(return_value=(False, 21, 17))
        limiter = RateLimiter(cache, settings)
        decision = await limiter.consume(RateLimitScope.ADMIN, "t1:u1")
        assert decision.allowed is False
        assert decision.retry_after_seconds == 17
        cache.consume_rate_limit.assert_awaited_once_with("admin", "t1:u1", 20, 60)

    async def test_cache_deny_with_zero_ttl_still_waits(self, settings):
        cache = AsyncMock()
        cache.consume_rate_limit = AsyncMock(return_value=(False, 21, 0))
        limiter = RateLimiter(cache, settings)
        decision = await limiter.consume(RateLimitScope.ADMIN, "t1:u1")
        assert decision.retry_after_seconds == 1


class TestRateKey:
    def test_key_hashes_subject_and_buckets_window(self):
        key = RedisCache.rate_key("admin", "t1:user@example.com", 60, now=125.0)
        assert key.startswith("rate:admin:")
        assert "user@example.com" not in key
        assert key.endswith(":60:2")

    def test_same_window_same_key(self):
        a = RedisCache.rate_key("tenant", "t1", 60, now=61.0)
        b = RedisCache.rate_key("tenant", "t1", 60, now=119.0)
        c = RedisCache.rate_key("tenant", "t1", 60, now=120.0)
        assert a == b
        assert a != c
