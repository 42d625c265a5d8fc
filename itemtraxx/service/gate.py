from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from itemtraxx.config import RateLimitScope
from itemtraxx.logging import get_logger
from itemtraxx.service.auth import AuthService
from itemtraxx.service.device_sessions import DeviceSessionService
from itemtraxx.service.errors import ForbiddenError
from itemtraxx.service.profiles import ProfileResolver, ResolvedProfile
from itemtraxx.service.rate_limit import RateLimiter
from itemtraxx.service.suspension import SuspensionCheck
from itemtraxx.storage.models import Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class PrivilegedContext:
    user_id: str
    email: str
    role: Role
    tenant_id: Optional[str]
    auth_session_id: str
    device_id: Optional[str] = None


class PrivilegedGate:
    """Re-validates every privileged request before it reaches domain data.

    Order is fixed: bearer token, profile (role), tenant suspension, device
    session, rate limit. Each step raises its own error type so the caller
    learns which check failed.
    """

    def __init__(
        self,
        auth: AuthService,
        profiles: ProfileResolver,
        suspension: SuspensionCheck,
        device_sessions: DeviceSessionService,
        rate_limiter: RateLimiter,
    ) -> None:
        self.auth = auth
        self.profiles = profiles
        self.suspension = suspension
        self.device_sessions = device_sessions
        self.rate_limiter = rate_limiter

    async def _resolve(self, user_id: str, expected_role: Role) -> ResolvedProfile:
        profile = await self.profiles.resolve(user_id)
        if profile is None or not profile.is_active:
            logger.warning("privileged_profile_missing", user_id=user_id)
            raise ForbiddenError("Access denied")
        if profile.role is not expected_role:
            logger.warning(
                "privileged_role_mismatch",
                user_id=user_id,
                role=profile.role.value,
                expected=expected_role.value,
            )
            raise ForbiddenError("Access denied")
        return profile

    async def authorize_tenant_admin(
        self,
        authorization: Optional[str],
        device_id: Optional[str],
        *,
        scope: RateLimitScope = RateLimitScope.ADMIN,
        session_management: bool = False,
    ) -> PrivilegedContext:
        identity = await self.auth.authenticate(authorization)
        profile = await self._resolve(identity.user_id, Role.TENANT_ADMIN)
        if not profile.tenant_id:
            raise ForbiddenError("Access denied")
        await self.suspension.ensure_active(profile.tenant_id, user_id=profile.id)
        if not session_management:
            self.device_sessions.require_active(profile.tenant_id, profile.id, device_id)
        subject = (
            profile.tenant_id
            if RateLimitScope(scope) is RateLimitScope.TENANT
            else f"{profile.tenant_id}:{profile.id}"
        )
        await self.rate_limiter.enforce(scope, subject)
        return PrivilegedContext(
            user_id=profile.id,
            email=identity.email,
            role=profile.role,
            tenant_id=profile.tenant_id,
            auth_session_id=identity.session_id,
            device_id=device_id,
        )

    async def authorize_super_admin(self, authorization: Optional[str]) -> PrivilegedContext:
        identity = await self.auth.authenticate(authorization)
        profile = await self._resolve(identity.user_id, Role.SUPER_ADMIN)
        await self.rate_limiter.enforce(RateLimitScope.SUPER_ADMIN, profile.id)
        return PrivilegedContext(
            user_id=profile.id,
            email=identity.email,
            role=profile.role,
            tenant_id=profile.tenant_id,
            auth_session_id=identity.session_id,
        )
