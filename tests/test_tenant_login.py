"""Tenant access-code lookup."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from itemtraxx.config import Settings
from itemtraxx.service.errors import (
    AuthenticationError,
    RateLimitCheckFailedError,
    RateLimitedError,
    ServiceUnavailableError,
    TenantDisabledError,
    ValidationError,
)
from itemtraxx.service.guards import OperationalGuards
from itemtraxx.service.rate_limit import RateLimiter
from itemtraxx.service.tenant_login import TenantLoginService
from itemtraxx.storage.memory import MemoryStore
from itemtraxx.storage.models import Role, TenantStatus


@pytest.fixture
def settings():
    return Settings(rate_limit_tenant_lookup=3, test_mode=True)


@pytest.fixture
def store():
    return MemoryStore()


def _service(store, settings, limiter=None):
    return TenantLoginService(
        store, limiter or RateLimiter(None, settings), OperationalGuards(settings), settings
    )


class TestLookup:
    async def test_prefers_tenant_user_account(self, store, settings):
        tenant = store.create_tenant("Lincoln", access_code="LINC-1")
        store.create_profile("admin@l.test", Role.TENANT_ADMIN, tenant_id=tenant.id)
        store.create_profile("desk@l.test", Role.TENANT_USER, tenant_id=tenant.id)
        result = await _service(store, settings).lookup(" LINC-1 ", client_ip="10.0.0.1")
        assert result == {"tenant_id": tenant.id, "auth_email": "desk@l.test"}

    async def test_blank_code(self, store, settings):
        with pytest.raises(ValidationError):
            await _service(store, settings).lookup("   ")

    async def test_unknown_code(self, store, settings):
        with pytest.raises(AuthenticationError):
            await _service(store, settings).lookup("NOPE")

    async def test_tenant_without_accounts(self, store, settings):
        store.create_tenant("Empty", access_code="EMPTY")
        with pytest.raises(AuthenticationError):
            await _service(store, settings).lookup("EMPTY")

    async def test_suspended(self, store, settings):
        tenant = store.create_tenant("Lincoln", access_code="LINC-1", status=TenantStatus.SUSPENDED)
        store.create_profile("desk@l.test", Role.TENANT_USER, tenant_id=tenant.id)
        with pytest.raises(TenantDisabledError):
            await _service(store, settings).lookup("LINC-1")

    async def test_rate_limited_per_client_ip(self, store, settings):
        tenant = store.create_tenant("Lincoln", access_code="LINC-1")
        store.create_profile("desk@l.test", Role.TENANT_USER, tenant_id=tenant.id)
        service = _service(store, settings)
        for _ in range(3):
            await service.lookup("LINC-1", client_ip="10.0.0.1")
        with pytest.raises(RateLimitedError):
            await service.lookup("LINC-1", client_ip="10.0.0.1")
        await service.lookup("LINC-1", client_ip="10.0.0.2")

    async def test_limiter_failure_is_unavailable(self, store, settings):
        limiter = MagicMock()
        limiter.enforce = AsyncMock(side_effect=RateLimitCheckFailedError())
        with pytest.raises(ServiceUnavailableError):
            await _service(store, settings, limiter).lookup("LINC-1")
