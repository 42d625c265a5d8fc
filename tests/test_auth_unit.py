"""Unit tests for the credential service.

Covers password hashing, JWT issue and verification, refresh rotation and
session revocation.
"""

import base64
import json

import pytest

from itemtraxx.config import Settings
from itemtraxx.service.auth import AuthService
from itemtraxx.service.errors import AuthenticationError, InvalidTokenError
from itemtraxx.storage.memory import MemoryStore
from itemtraxx.storage.models import Role


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, cache=None, settings=settings)


@pytest.fixture
def admin(memory_store, auth_service):
    tenant = memory_store.create_tenant("Lincoln High")
    return auth_service.register_profile(
        "Admin@Lincoln.test", "TestPassword123!", Role.TENANT_ADMIN, tenant_id=tenant.id
    )


class TestPasswords:
    def test_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("TestPassword123!")
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert "TestPassword123!" not in pwd_hash

    def test_verify(self, auth_service, admin):
        assert auth_service.verify_password(admin.id, "TestPassword123!") is True
        assert auth_service.verify_password(admin.id, "wrong") is False

    def test_unknown_user(self, auth_service):
        assert auth_service.verify_password("missing", "anything") is False


class TestLogin:
    async def test_login_returns_token_pair(self, auth_service, admin):
        profile, session, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        assert profile.id == admin.id
        assert session.tenant_id == admin.tenant_id
        assert tokens["token_type"] == "bearer"
        assert tokens["access_token"] != tokens["refresh_token"]

    async def test_wrong_password(self, auth_service, admin):
        profile, session, tokens = await auth_service.login("admin@lincoln.test", "nope")
        assert profile is None and session is None and tokens == {}

    async def test_inactive_profile_cannot_sign_in(self, auth_service, memory_store, admin):
        memory_store.profiles[admin.id].is_active = False
        profile, _, _ = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        assert profile is None


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service, admin):
        _, session, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        ctx = await auth_service.authenticate(f"Bearer {tokens['access_token']}")
        assert ctx.user_id == admin.id
        assert ctx.session_id == session.id
        assert ctx.email == "admin@lincoln.test"

    async def test_missing_bearer(self, auth_service):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.authenticate(None)
        assert not isinstance(excinfo.value, InvalidTokenError)

    async def test_refresh_token_is_not_an_access_token(self, auth_service, admin):
        _, _, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        with pytest.raises(InvalidTokenError) as excinfo:
            await auth_service.authenticate(f"Bearer {tokens['refresh_token']}")
        assert excinfo.value.detail["reason"] == "invalid_token"

    async def test_tampered_signature(self, auth_service, admin):
        _, _, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        token = tokens["access_token"][:-2] + ("AA" if not tokens["access_token"].endswith("AA") else "BB")
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {token}")

    async def test_alg_none_rejected(self, auth_service, admin):
        _, _, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        _, payload, _ = tokens["access_token"].split(".")
        header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).decode().rstrip("=")
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {header}.{payload}.")

    async def test_token_from_other_secret(self, memory_store, auth_service, admin):
        other = AuthService(
            memory_store,
            None,
            Settings(jwt_secret="another-secret-key-that-is-long-enough-123", test_mode=True),
        )
        _, _, tokens = await other.login("admin@lincoln.test", "TestPassword123!")
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {tokens['access_token']}")


class TestRefreshAndRevoke:
    async def test_refresh_rotates(self, auth_service, admin):
        _, _, first = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        profile, _, second = await auth_service.refresh_tokens(first["refresh_token"])
        assert profile.id == admin.id
        assert second["refresh_token"] != first["refresh_token"]

        again, _, _ = await auth_service.refresh_tokens(first["refresh_token"])
        assert again is None

    async def test_access_token_cannot_refresh(self, auth_service, admin):
        _, _, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        profile, _, _ = await auth_service.refresh_tokens(tokens["access_token"])
        assert profile is None

    async def test_revoke_denylists_tokens(self, auth_service, admin):
        _, session, tokens = await auth_service.login("admin@lincoln.test", "TestPassword123!")
        await auth_service.revoke(session.id)
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {tokens['access_token']}")
        profile, _, _ = await auth_service.refresh_tokens(tokens["refresh_token"])
        assert profile is None
