"""Tests for the privileged request gate."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from itemtraxx.config import RateLimitScope
from itemtraxx.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitCheckFailedError,
    RateLimitedError,
    SessionRevokedError,
    TenantDisabledError,
)
from itemtraxx.service.gate import PrivilegedGate
from itemtraxx.service.profiles import ResolvedProfile
from itemtraxx.storage.models import Role


def _profile(role=Role.TENANT_ADMIN, tenant_id="t1", **overrides):
    base = dict(id="u1", role=role, tenant_id=tenant_id, auth_email="a@t.test")
    base.update(overrides)
    return ResolvedProfile(**base)


def _build(calls, *, profile=None, suspended=False, device_active=True, limiter_error=None):
    identity = SimpleNamespace(user_id="u1", email="a@t.test", session_id="s1")

    async def authenticate(authorization):
        calls.append("bearer")
        if not authorization:
            raise AuthenticationError("Unauthorized")
        return identity

    async def resolve(user_id):
        calls.append("profile")
        return profile if profile is not None else _profile()

    async def ensure_active(tenant_id, *, user_id=None):
        calls.append("suspension")
        if suspended:
            raise TenantDisabledError()

    def require_active(tenant_id, profile_id, device_id):
        calls.append("device")
        if not device_active:
            raise SessionRevokedError("Session revoked")

    async def enforce(scope, subject, **kwargs):
        calls.append(("rate", RateLimitScope(scope), subject))
        if limiter_error is not None:
            raise limiter_error

    auth = MagicMock()
    auth.authenticate = AsyncMock(side_effect=authenticate)
    profiles = MagicMock()
    profiles.resolve = AsyncMock(side_effect=resolve)
    suspension = MagicMock()
    suspension.ensure_active = AsyncMock(side_effect=ensure_active)
    device_sessions = MagicMock()
    device_sessions.require_active = MagicMock(side_effect=require_active)
    limiter = MagicMock()
    limiter.enforce = AsyncMock(side_effect=enforce)
    return PrivilegedGate(auth, profiles, suspension, device_sessions, limiter)


class TestTenantAdminOrder:
    """bearer, profile, suspension, device session, then rate limit."""

    async def test_all_checks_in_order(self):
        calls = []
        gate = _build(calls)
        ctx = await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert calls == [
            "bearer",
            "profile",
            "suspension",
            "device",
            ("rate", RateLimitScope.ADMIN, "t1:u1"),
        ]
        assert ctx.tenant_id == "t1"
        assert ctx.device_id == "dev-1"
        assert ctx.auth_session_id == "s1"

    async def test_read_scope_uses_tenant_subject(self):
        calls = []
        gate = _build(calls)
        await gate.authorize_tenant_admin("Bearer x", "dev-1", scope=RateLimitScope.TENANT)
        assert calls[-1] == ("rate", RateLimitScope.TENANT, "t1")

    async def test_missing_bearer_stops_first(self):
        calls = []
        gate = _build(calls)
        with pytest.raises(AuthenticationError):
            await gate.authorize_tenant_admin(None, "dev-1")
        assert calls == ["bearer"]

    async def test_wrong_role_is_forbidden_before_suspension(self):
        calls = []
        gate = _build(calls, profile=_profile(role=Role.TENANT_USER))
        with pytest.raises(ForbiddenError) as excinfo:
            await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert excinfo.value.error_code == "forbidden"
        assert calls == ["bearer", "profile"]

    async def test_inactive_profile_is_forbidden(self):
        calls = []
        gate = _build(calls, profile=_profile(is_active=False))
        with pytest.raises(ForbiddenError):
            await gate.authorize_tenant_admin("Bearer x", "dev-1")

    async def test_suspended_tenant_before_device_check(self):
        calls = []
        gate = _build(calls, suspended=True, device_active=False)
        with pytest.raises(TenantDisabledError):
            await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert calls == ["bearer", "profile", "suspension"]

    async def test_revoked_device_before_rate_limit(self):
        calls = []
        gate = _build(calls, device_active=False)
        with pytest.raises(SessionRevokedError) as excinfo:
            await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert excinfo.value.status_code == 401
        assert excinfo.value.error_code == "session_revoked"
        assert "rate" not in [c[0] if isinstance(c, tuple) else c for c in calls]

    async def test_session_management_skips_device_check(self):
        calls = []
        gate = _build(calls, device_active=False)
        await gate.authorize_tenant_admin("Bearer x", None, session_management=True)
        assert "device" not in calls

    async def test_rate_limited(self):
        calls = []
        gate = _build(calls, limiter_error=RateLimitedError(retry_after_seconds=9))
        with pytest.raises(RateLimitedError) as excinfo:
            await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert excinfo.value.retry_after_seconds == 9

    async def test_limiter_failure_refuses_request(self):
        calls = []
        gate = _build(calls, limiter_error=RateLimitCheckFailedError())
        with pytest.raises(RateLimitCheckFailedError) as excinfo:
            await gate.authorize_tenant_admin("Bearer x", "dev-1")
        assert excinfo.value.status_code == 500


class TestSuperAdmin:
    async def test_super_admin_checks(self):
        calls = []
        gate = _build(calls, profile=_profile(role=Role.SUPER_ADMIN, tenant_id=None))
        ctx = await gate.authorize_super_admin("Bearer x")
        assert calls == ["bearer", "profile", ("rate", RateLimitScope.SUPER_ADMIN, "u1")]
        assert ctx.role is Role.SUPER_ADMIN

    async def test_tenant_admin_cannot_use_super_gate(self):
        calls = []
        gate = _build(calls)
        with pytest.raises(ForbiddenError):
            await gate.authorize_super_admin("Bearer x")
