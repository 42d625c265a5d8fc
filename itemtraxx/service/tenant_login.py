from __future__ import annotations

from typing import Optional

from itemtraxx.config import RateLimitScope, Settings
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import (
    AuthenticationError,
    RateLimitCheckFailedError,
    ServiceUnavailableError,
    TenantDisabledError,
    ValidationError,
)
from itemtraxx.service.guards import OperationalGuards
from itemtraxx.service.rate_limit import RateLimiter
from itemtraxx.storage.models import Role

logger = get_logger(__name__)

MAX_ACCESS_CODE_LENGTH = 64


class TenantLoginService:
    """Maps a tenant access code to the auth email the client signs in with."""

    def __init__(
        self,
        store,
        rate_limiter: RateLimiter,
        guards: OperationalGuards,
        settings: Settings,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.guards = guards
        self.settings = settings

    async def lookup(self, access_code: str, *, client_ip: Optional[str] = None) -> dict:
        self.guards.ensure_not_in_maintenance()
        code = (access_code or "").strip()
        if not code or len(code) > MAX_ACCESS_CODE_LENGTH:
            raise ValidationError("Access code is required")
        try:
            await self.rate_limiter.enforce(
                RateLimitScope.TENANT,
                f"tenant-login:{client_ip or 'unknown'}",
                limit=self.settings.rate_limit_tenant_lookup,
            )
        except RateLimitCheckFailedError as exc:
            # Unauthenticated entry point: surface as unavailable, still refused
            raise ServiceUnavailableError("Rate limit check failed") from exc

        tenant = self.store.get_tenant_by_access_code(code)
        if tenant is None:
            logger.warning("tenant_login_unknown_code", client_ip=client_ip)
            raise AuthenticationError("Invalid access code")
        if tenant.is_suspended:
            raise TenantDisabledError()

        profiles = [p for p in self.store.list_profiles(tenant.id) if p.is_active]
        preferred = next((p for p in profiles if p.role is Role.TENANT_USER), None)
        profile = preferred or (profiles[0] if profiles else None)
        if profile is None:
            logger.warning("tenant_login_no_profile", tenant_id=tenant.id)
            raise AuthenticationError("Invalid access code")
        return {"tenant_id": tenant.id, "auth_email": profile.auth_email}
