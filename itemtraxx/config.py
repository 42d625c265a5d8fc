from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from itemtraxx.logging import get_logger

logger = get_logger(__name__)


class RateLimitScope(str, Enum):
    """Quota buckets enforced by the shared rate limiter."""

    TENANT = "tenant"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the server and the API client."""

    database_url: str = env_field(
        "postgresql://localhost:5432/itemtraxx", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows runtime resets and ephemeral secrets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("itemtraxx", "JWT_ISSUER")
    jwt_audience: str = env_field("itemtraxx-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Rate limits (requests per window)
    rate_limit_tenant: int = env_field(25, "RATE_LIMIT_TENANT")
    rate_limit_admin: int = env_field(20, "RATE_LIMIT_ADMIN")
    rate_limit_super_admin: int = env_field(30, "RATE_LIMIT_SUPER_ADMIN")
    rate_limit_tenant_lookup: int = env_field(20, "RATE_LIMIT_TENANT_LOOKUP")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")

    # Client transport
    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")
    edge_function_timeout_ms: int = env_field(10_000, "EDGE_FUNCTION_TIMEOUT_MS")
    read_retry_attempts: int = env_field(
        2,
        "READ_RETRY_ATTEMPTS",
        description="Total attempts for idempotent reads, including the first one.",
    )
    read_retry_delay_ms: int = env_field(250, "READ_RETRY_DELAY_MS")

    # Verification freshness windows used by the route guard
    admin_verification_ttl_minutes: int = env_field(15, "ADMIN_VERIFICATION_TTL_MINUTES")
    super_verification_ttl_minutes: int = env_field(15, "SUPER_VERIFICATION_TTL_MINUTES")

    # Operational guards
    killswitch_enabled: bool = env_field(False, "ITX_ITEMTRAXX_KILLSWITCH_ENABLED")
    maintenance_mode: bool = env_field(False, "MAINTENANCE_MODE")
    maintenance_message: str = env_field(
        "ItemTraxx is undergoing maintenance. Please try again shortly.",
        "MAINTENANCE_MESSAGE",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator(
        "rate_limit_tenant",
        "rate_limit_admin",
        "rate_limit_super_admin",
        "rate_limit_tenant_lookup",
        "rate_limit_window_seconds",
        "edge_function_timeout_ms",
        "read_retry_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str | None:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        return None

    def resolved_jwt_secret(self) -> str:
        """Return the signing secret, generating an ephemeral one in test mode."""
        if self.jwt_secret:
            return self.jwt_secret
        if not self.test_mode:
            raise RuntimeError("JWT_SECRET must be set outside TEST_MODE")
        generated = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_ephemeral", message="generated a per-process JWT secret")
        self.jwt_secret = generated
        return generated

    def rate_limit_for(self, scope: RateLimitScope) -> tuple[int, int]:
        """Return ``(limit, window_seconds)`` for a scope."""
        limits = {
            RateLimitScope.TENANT: self.rate_limit_tenant,
            RateLimitScope.ADMIN: self.rate_limit_admin,
            RateLimitScope.SUPER_ADMIN: self.rate_limit_super_admin,
        }
        return limits[RateLimitScope(scope)], self.rate_limit_window_seconds

    @property
    def edge_function_timeout_seconds(self) -> float:
        return self.edge_function_timeout_ms / 1000.0

    @property
    def read_retry_delay_seconds(self) -> float:
        return self.read_retry_delay_ms / 1000.0


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
