from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from itemtraxx.config import RateLimitScope, Settings
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import RateLimitCheckFailedError, RateLimitedError
from itemtraxx.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


class RateLimiter:
    """Per-(scope, subject, window) quota gate.

    Every call is a single increment-and-check against the shared counter.
    When the counter backend errors the request is refused with
    :class:`RateLimitCheckFailedError`; it is never admitted by default.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        settings: Settings,
    ) -> None:
        self.cache = cache
        self.settings = settings
        # Process-local counters, used only when running without Redis
        self._local_counters: Dict[str, Tuple[int, float]] = {}
        self._local_lock = asyncio.Lock()

    async def consume(
        self,
        scope: RateLimitScope,
        subject: str,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitDecision:
        scope = RateLimitScope(scope)
        default_limit, default_window = self.settings.rate_limit_for(scope)
        limit = limit if limit is not None else default_limit
        window_seconds = window_seconds if window_seconds is not None else default_window
        if not subject:
            raise RateLimitCheckFailedError(detail={"reason": "missing_subject"})
        try:
            if self.cache is not None:
                allowed, _count, retry_after = await self.cache.consume_rate_limit(
                    scope.value, subject, limit, window_seconds
                )
            else:
                allowed, retry_after = await self._consume_local(
                    scope.value, subject, limit, window_seconds
                )
        except Exception as exc:
            logger.error(
                "rate_limit_check_failed",
                scope=scope.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise RateLimitCheckFailedError() from exc
        if allowed:
            return RateLimitDecision(allowed=True)
        return RateLimitDecision(allowed=False, retry_after_seconds=max(1, retry_after))

    async def enforce(
        self,
        scope: RateLimitScope,
        subject: str,
        *,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> None:
        """Consume one unit or raise :class:`RateLimitedError`."""
        decision = await self.consume(
            scope, subject, limit=limit, window_seconds=window_seconds
        )
        if not decision.allowed:
            logger.warning(
                "rate_limited",
                scope=RateLimitScope(scope).value,
                retry_after_seconds=decision.retry_after_seconds,
            )
            raise RateLimitedError(retry_after_seconds=decision.retry_after_seconds)

    async def _consume_local(
        self, scope: str, subject: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int]:
        now = time.time()
        key = RedisCache.rate_key(scope, subject, window_seconds, now)
        window_end = (int(now // window_seconds) + 1) * window_seconds
        async with self._local_lock:
            count, _expires = self._local_counters.get(key, (0, window_end))
            count += 1
            self._local_counters[key] = (count, window_end)
            # Drop counters from windows that have already closed
            for stale in [k for k, (_, end) in self._local_counters.items() if end <= now]:
                self._local_counters.pop(stale, None)
        if count > limit:
            return False, int(window_end - now) or 1
        return True, 0
