from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from itemtraxx.config import Settings, get_settings, reset_settings_cache
from itemtraxx.logging import get_logger
from itemtraxx.service.actions import ActionServices, AdminOps
from itemtraxx.service.auth import AuthService
from itemtraxx.service.device_sessions import DeviceSessionService
from itemtraxx.service.gate import PrivilegedGate
from itemtraxx.service.guards import OperationalGuards
from itemtraxx.service.profiles import ProfileResolver, StoreProfileSource
from itemtraxx.service.rate_limit import RateLimiter
from itemtraxx.service.suspension import SuspensionCheck
from itemtraxx.service.tenant_login import TenantLoginService
from itemtraxx.storage.memory import MemoryStore
from itemtraxx.storage.postgres import PostgresStore
from itemtraxx.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache]


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***``."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        return "***"
    if not password:
        return url
    return url.replace(f":{password}@", ":***@", 1)


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            return MemoryStore()
        return PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error("runtime_store_init_failed", store_type=kind, error=str(exc))
        raise


def _build_cache(settings: Settings) -> Optional[Cache]:
    """Connect to Redis, or fall back to process-local state where allowed.

    Outside test mode a missing Redis is fatal unless
    ``ALLOW_REDIS_FALLBACK_DEV`` is set.
    """
    error: Optional[Exception] = None
    if settings.redis_url:
        # Sync client in test mode avoids binding to a per-test event loop
        try:
            cache: Cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            error = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared rate limits and token revocation; "
            "set TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true to run without it."
        ) from error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_redact_dsn(settings.redis_url),
        error=str(error) if error else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Wires the store, cache and services behind the HTTP surface."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)

        self.auth = AuthService(self.store, self.cache, self.settings)
        self.rate_limiter = RateLimiter(self.cache, self.settings)
        self.profile_source = StoreProfileSource(self.store)
        self.profiles = ProfileResolver(self.profile_source)
        self.suspension = SuspensionCheck(self.profile_source)
        self.device_sessions = DeviceSessionService(self.store)
        self.guards = OperationalGuards(self.settings)
        self.gate = PrivilegedGate(
            self.auth,
            self.profiles,
            self.suspension,
            self.device_sessions,
            self.rate_limiter,
        )
        self.admin_ops = AdminOps(
            self.gate,
            self.guards,
            ActionServices(
                store=self.store,
                auth=self.auth,
                device_sessions=self.device_sessions,
            ),
        )
        self.tenant_login = TenantLoginService(
            self.store, self.rate_limiter, self.guards, self.settings
        )

        logger.info(
            "runtime_initialized",
            memory_store=self.settings.use_memory_store,
            redis_enabled=self.cache is not None,
            capabilities=self.store.capabilities.as_dict(),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from fresh settings; only allowed in TEST_MODE."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            try:
                runtime.cache.client.close()
            except Exception as exc:
                logger.debug("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
