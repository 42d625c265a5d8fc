"""Client sign-in flows run against the real app over an in-process transport."""

from unittest.mock import AsyncMock

import httpx
import pytest

import itemtraxx.app as app_module
from itemtraxx.client.auth import AuthController
from itemtraxx.client.device import DeviceIdentity, load_or_create_device_identity
from itemtraxx.client.errors import ClientError
from itemtraxx.client.guard import PUBLIC_HOME, TENANT_ADMIN_LOGIN, Allow, Redirect, decide_route
from itemtraxx.client.state import AuthPhase
from itemtraxx.client.transport import EdgeClient
from itemtraxx.service.errors import ErrorKind
from itemtraxx.service.runtime import get_runtime
from itemtraxx.storage.models import Role, TenantStatus

ACCESS_CODE = "LINC-1"
DESK_PASSWORD = "desk-pass-1"
ADMIN_EMAIL = "admin@lincoln.test"
ADMIN_PASSWORD = "admin-pass-1"
SUPER_EMAIL = "root@itemtraxx.test"
SUPER_PASSWORD = "super-pass-1"


def _seed():
    runtime = get_runtime()
    tenant = runtime.store.create_tenant("Lincoln High", access_code=ACCESS_CODE)
    runtime.auth.register_profile(
        ADMIN_EMAIL, ADMIN_PASSWORD, Role.TENANT_ADMIN, tenant_id=tenant.id
    )
    runtime.auth.register_profile(
        "desk@lincoln.test", DESK_PASSWORD, Role.TENANT_USER, tenant_id=tenant.id
    )
    runtime.auth.register_profile(SUPER_EMAIL, SUPER_PASSWORD, Role.SUPER_ADMIN)
    return tenant


def _controller(device_id="dev-1") -> AuthController:
    edge = EdgeClient(
        "http://testserver",
        transport=httpx.ASGITransport(app=app_module.app),
        read_retry_delay_seconds=0,
    )
    return AuthController(edge, device=DeviceIdentity(device_id, "Chrome on macOS"))


class TestHydration:
    async def test_hydrate_without_session(self):
        controller = _controller()
        state = await controller.hydrate()
        assert state.is_initialized is True
        assert state.is_authenticated is False
        assert state.phase is AuthPhase.ANONYMOUS
        await controller.edge.aclose()

    async def test_hydrate_restores_signed_in_identity(self):
        tenant = _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        state = await controller.hydrate()
        assert state.is_authenticated is True
        assert state.role is Role.TENANT_USER
        assert state.session_tenant_id == tenant.id
        await controller.edge.aclose()

    async def test_unexpected_error_still_settles_hydration(self):
        controller = _controller()
        controller.credentials.get_session = AsyncMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await controller.hydrate()
        state = controller.state.state
        assert state.is_initialized is True
        assert state.phase is AuthPhase.ANONYMOUS
        assert controller.state.begin_hydration() is False
        await controller.edge.aclose()

    async def test_malformed_tenant_status_still_settles_hydration(self):
        _seed()
        controller = _controller()
        await controller.credentials.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD)
        controller.suspension.is_suspended = AsyncMock(side_effect=ValueError("'paused'"))
        with pytest.raises(ValueError):
            await controller.hydrate()
        assert controller.state.state.is_initialized is True
        await controller.edge.aclose()


class TestSignInFlows:
    async def test_tenant_login_sets_context(self):
        tenant = _seed()
        controller = _controller()
        state = await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        assert state.is_authenticated is True
        assert state.tenant_context_id == tenant.id
        assert state.is_admin is False
        assert decide_route("tenant-checkout", state) == Allow()
        assert decide_route("tenant-admin-home", state) == Redirect(PUBLIC_HOME)
        await controller.edge.aclose()

    async def test_bad_access_code(self):
        _seed()
        controller = _controller()
        with pytest.raises(ClientError) as excinfo:
            await controller.tenant_login("WRONG", DESK_PASSWORD)
        assert excinfo.value.kind is ErrorKind.UNAUTHENTICATED
        assert controller.state.state.is_authenticated is False
        await controller.edge.aclose()

    async def test_admin_login_after_tenant_login(self):
        tenant = _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        state = await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert state.role is Role.TENANT_ADMIN
        assert state.is_admin is True
        assert state.admin_verified_at is not None
        assert decide_route("tenant-admin-gear", state) == Allow()

        rows = get_runtime().store.list_device_sessions(tenant.id, state.user_id)
        assert [row.device_id for row in rows] == ["dev-1"]

        settings = await controller.admin_ops("get_tenant_settings")
        assert settings["tenant_id"] == tenant.id
        await controller.edge.aclose()

    async def test_admin_login_for_other_tenant_is_denied(self):
        _seed()
        runtime = get_runtime()
        other = runtime.store.create_tenant("Other School", access_code="OTHER-1")
        runtime.auth.register_profile(
            "desk@other.test", "other-pass-1", Role.TENANT_USER, tenant_id=other.id
        )
        controller = _controller()
        await controller.tenant_login("OTHER-1", "other-pass-1")
        with pytest.raises(ClientError) as excinfo:
            await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert excinfo.value.kind is ErrorKind.ACCESS_DENIED
        assert controller.state.state.is_authenticated is False
        assert controller.credentials.session is None
        await controller.edge.aclose()

    async def test_non_admin_cannot_step_up(self):
        _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        with pytest.raises(ClientError) as excinfo:
            await controller.admin_login("desk@lincoln.test", DESK_PASSWORD)
        assert excinfo.value.kind is ErrorKind.ACCESS_DENIED
        await controller.edge.aclose()

    async def test_super_admin_login(self):
        _seed()
        controller = _controller()
        state = await controller.super_admin_login(SUPER_EMAIL, SUPER_PASSWORD)
        assert state.is_super_admin is True
        assert state.has_secondary_auth is True
        assert decide_route("super-admin-tenants", state) == Allow()
        tenants = await controller.super_ops("list_tenants")
        assert len(tenants["tenants"]) == 1
        await controller.edge.aclose()

    async def test_sign_out_clears_everything(self):
        _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)
        state = await controller.sign_out()
        assert state.is_authenticated is False
        assert state.admin_verified_at is None
        assert state.tenant_context_id is None
        assert controller.credentials.session is None
        await controller.edge.aclose()


class TestTeardown:
    """Session-ending server errors clear the local identity."""

    async def test_suspension_during_admin_session(self):
        tenant = _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)

        get_runtime().store.set_tenant_status(tenant.id, TenantStatus.SUSPENDED)

        with pytest.raises(ClientError) as excinfo:
            await controller.admin_ops("get_tenant_settings")
        assert excinfo.value.kind is ErrorKind.TENANT_DISABLED
        assert excinfo.value.user_message == "Tenant disabled"

        state = controller.state.state
        assert state.is_initialized is True
        assert state.is_authenticated is False
        assert state.admin_verified_at is None
        assert state.has_secondary_auth is False
        assert state.tenant_context_id is None
        assert state.session_tenant_id is None
        assert controller.credentials.session is None
        assert decide_route("tenant-admin-home", state) == Redirect(PUBLIC_HOME)
        await controller.edge.aclose()

    async def test_hydrate_signs_out_suspended_tenant(self):
        tenant = _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        get_runtime().store.set_tenant_status(tenant.id, TenantStatus.SUSPENDED)

        state = await controller.hydrate()
        assert state.is_initialized is True
        assert state.is_authenticated is False
        assert controller.credentials.session is None
        await controller.edge.aclose()

    async def test_revoked_device_signs_out(self):
        tenant = _seed()
        controller = _controller("tablet")
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        state = await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)

        get_runtime().store.revoke_all_device_sessions(
            tenant.id, state.user_id, revoked_by=state.user_id
        )
        with pytest.raises(ClientError) as excinfo:
            await controller.admin_ops("get_tenant_settings")
        assert excinfo.value.kind is ErrorKind.SESSION_REVOKED
        assert controller.state.state.is_authenticated is False
        assert controller.state.state.admin_verified_at is None
        await controller.edge.aclose()


class TestStaleResults:
    async def test_profile_arriving_after_sign_out_is_discarded(self):
        _seed()
        controller = _controller()
        await controller.credentials.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD)
        real_resolve = controller.profiles.resolve

        async def resolve_then_sign_out(user_id):
            profile = await real_resolve(user_id)
            await controller.credentials.sign_out()
            return profile

        controller.profiles.resolve = resolve_then_sign_out
        state = await controller.refresh_from_session()
        assert state.is_initialized is True
        assert state.is_authenticated is False
        assert state.role is None
        await controller.edge.aclose()

    async def test_sign_out_during_hydration_still_initializes(self):
        _seed()
        controller = _controller()
        await controller.credentials.sign_in(ADMIN_EMAIL, ADMIN_PASSWORD)
        real_resolve = controller.profiles.resolve

        async def resolve_then_sign_out(user_id):
            profile = await real_resolve(user_id)
            await controller.sign_out()
            return profile

        controller.profiles.resolve = resolve_then_sign_out
        state = await controller.hydrate()
        assert state.is_initialized is True
        assert state.phase is AuthPhase.ANONYMOUS
        assert state.role is None
        assert decide_route("public-home", state) == Allow()
        assert decide_route("tenant-admin-home", state) == Redirect(PUBLIC_HOME)
        assert controller.state.begin_hydration() is False
        await controller.edge.aclose()

    async def test_failed_profile_read_keeps_tenant_context(self):
        tenant = _seed()
        controller = _controller()
        await controller.tenant_login(ACCESS_CODE, DESK_PASSWORD)
        await controller.admin_login(ADMIN_EMAIL, ADMIN_PASSWORD)

        controller.profiles.resolve = AsyncMock(return_value=None)
        state = await controller.refresh_from_session()
        assert state.is_authenticated is True
        assert state.tenant_context_id == tenant.id
        assert state.role is None
        assert state.is_admin is False
        assert decide_route("tenant-admin-home", state) == Redirect(PUBLIC_HOME)
        assert decide_route(TENANT_ADMIN_LOGIN, state) == Allow()
        await controller.edge.aclose()


class TestDeviceIdentity:
    def test_created_once_and_reused(self, tmp_path):
        path = tmp_path / "device.json"
        first = load_or_create_device_identity(path, user_agent="Mozilla/5.0 (iPad; CPU OS 17_0)")
        second = load_or_create_device_identity(path)
        assert first == second
        assert first.device_id

    def test_unreadable_file_is_replaced(self, tmp_path):
        path = tmp_path / "device.json"
        path.write_text("{not json")
        identity = load_or_create_device_identity(path)
        assert identity.device_id
        assert load_or_create_device_identity(path) == identity
