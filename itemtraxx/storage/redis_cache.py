from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit counters and token revocation."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window counter: increment, set expiry on first hit, report the
    # remaining window. One script call so check and increment cannot race.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('EXPIRE', key, window)
end
local ttl = redis.call('TTL', key)
if ttl < 0 then
  redis.call('EXPIRE', key, window)
  ttl = window
end
if count > limit then
  return {0, count, ttl}
end
return {1, count, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def rate_key(scope: str, subject: str, window_seconds: int, now: Optional[float] = None) -> str:
        """Key for one (scope, subject, window) counter.

        The subject is hashed so user-supplied values cannot collide across
        delimiters.
        """
        window_start = int((now if now is not None else time.time()) // window_seconds)
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{scope}:{digest}:{window_seconds}:{window_start}"

    async def consume_rate_limit(
        self, scope: str, subject: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Increment and check in one step; returns ``(allowed, count, retry_after)``."""
        key = self.rate_key(scope, subject, window_seconds)
        allowed, count, retry_after = await self._fixed_window(
            keys=[key], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), int(retry_after)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(ttl_seconds, 1))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add access token JTI to denylist with TTL matching token expiry."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable API.

    Used in test mode to avoid binding an async client to the event loop of
    whichever test created the runtime.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def consume_rate_limit(
        self, scope: str, subject: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        key = RedisCache.rate_key(scope, subject, window_seconds)
        allowed, count, retry_after = self._fixed_window(
            keys=[key], args=[limit, window_seconds]
        )
        return bool(int(allowed)), int(count), int(retry_after)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(ttl_seconds, 1))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        self.client.close()
