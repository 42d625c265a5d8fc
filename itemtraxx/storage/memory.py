from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional

from itemtraxx.logging import get_logger
from itemtraxx.storage.capabilities import FULL_CAPABILITIES, StoreCapabilities
from itemtraxx.storage.errors import CapabilityMissing, ConstraintViolation
from itemtraxx.storage.models import (
    AuthSession,
    DeviceSession,
    Profile,
    Role,
    Tenant,
    TenantStatus,
    TouchResult,
    utcnow,
)


class MemoryStore:
    """In-process backing store used by tests and local development."""

    def __init__(self, *, capabilities: StoreCapabilities = FULL_CAPABILITIES) -> None:
        self.logger = get_logger(__name__)
        self.capabilities = capabilities
        self.tenants: Dict[str, Tenant] = {}
        self.profiles: Dict[str, Profile] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, AuthSession] = {}
        self.device_sessions: Dict[str, DeviceSession] = {}
        # RLock for all data operations; nested acquisitions happen in helpers
        self._data_lock = threading.RLock()

    # -- tenants ---------------------------------------------------------

    def create_tenant(
        self,
        name: str,
        *,
        access_code: Optional[str] = None,
        tenant_id: Optional[str] = None,
        status: TenantStatus = TenantStatus.ACTIVE,
    ) -> Tenant:
        with self._data_lock:
            if access_code and self.get_tenant_by_access_code(access_code):
                raise ConstraintViolation(
                    "access code already in use", {"access_code": access_code}
                )
            tenant = Tenant(
                id=tenant_id or str(uuid.uuid4()),
                name=name,
                access_code=access_code,
                status=status,
                feature_flags={} if self.capabilities.supports_feature_flags else None,
            )
            self.tenants[tenant.id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_access_code(self, access_code: str) -> Optional[Tenant]:
        with self._data_lock:
            return next(
                (t for t in self.tenants.values() if t.access_code == access_code), None
            )

    def list_tenants(self, limit: int = 100) -> List[Tenant]:
        with self._data_lock:
            return sorted(self.tenants.values(), key=lambda t: t.created_at)[:limit]

    def set_tenant_status(self, tenant_id: str, status: TenantStatus) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.status = TenantStatus(status)
            return tenant

    def update_tenant_settings(
        self,
        tenant_id: str,
        *,
        checkout_due_hours: Optional[int] = None,
        feature_flags: Optional[dict] = None,
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            if feature_flags is not None:
                if not self.capabilities.supports_feature_flags:
                    raise CapabilityMissing("feature_flags")
                tenant.feature_flags = {**(tenant.feature_flags or {}), **feature_flags}
            if checkout_due_hours is not None:
                tenant.checkout_due_hours = checkout_due_hours
            return tenant

    # -- profiles & credentials -----------------------------------------

    def create_profile(
        self,
        auth_email: str,
        role: Role,
        *,
        tenant_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Profile:
        email = auth_email.strip().lower()
        with self._data_lock:
            if self.get_profile_by_email(email):
                raise ConstraintViolation("email already registered", {"email": email})
            if tenant_id and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            profile = Profile(
                id=profile_id or str(uuid.uuid4()),
                role=Role(role),
                auth_email=email,
                tenant_id=tenant_id,
                is_active=is_active,
            )
            self.profiles[profile.id] = profile
            return profile

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._data_lock:
            return self.profiles.get(user_id)

    def get_my_profile_rpc(self, user_id: str) -> Optional[Profile]:
        # Same rows as the direct read; mirrors the SECURITY DEFINER function
        with self._data_lock:
            profile = self.profiles.get(user_id)
            return replace(profile) if profile else None

    def get_profile_by_email(self, email: str) -> Optional[Profile]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (p for p in self.profiles.values() if p.auth_email == normalized), None
            )

    def list_profiles(
        self, tenant_id: str, *, role: Optional[Role] = None
    ) -> List[Profile]:
        with self._data_lock:
            rows = [
                p
                for p in self.profiles.values()
                if p.tenant_id == tenant_id and (role is None or p.role == Role(role))
            ]
            return sorted(rows, key=lambda p: p.created_at)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.profiles:
                raise ConstraintViolation("profile does not exist", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- credential sessions ---------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> AuthSession:
        with self._data_lock:
            if user_id not in self.profiles:
                raise ConstraintViolation("profile does not exist", {"user_id": user_id})
            sess = AuthSession.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                tenant_id=tenant_id,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[AuthSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked_at is not None:
                return None
            return sess

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = meta

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.revoked_at is None:
                sess.revoked_at = utcnow()

    def revoke_user_sessions(self, user_id: str) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.revoked_at is None:
                    sess.revoked_at = now
                    revoked += 1
        return revoked

    # -- device sessions -------------------------------------------------

    def _active_device_row(
        self, tenant_id: str, profile_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        return next(
            (
                row
                for row in self.device_sessions.values()
                if row.revoked_at is None
                and row.tenant_id == tenant_id
                and row.profile_id == profile_id
                and row.device_id == device_id
            ),
            None,
        )

    def touch_device_session(
        self,
        tenant_id: str,
        profile_id: str,
        device_id: str,
        *,
        device_label: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TouchResult:
        if not self.capabilities.supports_session_table:
            return TouchResult.MISSING_TABLE
        with self._data_lock:
            now = utcnow()
            row = self._active_device_row(tenant_id, profile_id, device_id)
            if row is None:
                row = DeviceSession(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    profile_id=profile_id,
                    device_id=device_id,
                    device_label=device_label,
                    user_agent=user_agent,
                    created_at=now,
                    last_seen_at=now,
                )
                self.device_sessions[row.id] = row
            else:
                row.last_seen_at = now
                row.device_label = device_label or row.device_label
                row.user_agent = user_agent or row.user_agent
            return TouchResult.OK

    def find_active_device_session(
        self, tenant_id: str, profile_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        if not self.capabilities.supports_session_table:
            raise CapabilityMissing("session_table")
        with self._data_lock:
            return self._active_device_row(tenant_id, profile_id, device_id)

    def list_device_sessions(self, tenant_id: str, profile_id: str) -> List[DeviceSession]:
        if not self.capabilities.supports_session_table:
            raise CapabilityMissing("session_table")
        with self._data_lock:
            rows = [
                row
                for row in self.device_sessions.values()
                if row.revoked_at is None
                and row.tenant_id == tenant_id
                and row.profile_id == profile_id
            ]
            return sorted(rows, key=lambda r: r.last_seen_at, reverse=True)

    def revoke_device_session(
        self, tenant_id: str, profile_id: str, session_id: str, *, revoked_by: str
    ) -> bool:
        if not self.capabilities.supports_session_table:
            raise CapabilityMissing("session_table")
        with self._data_lock:
            row = self.device_sessions.get(session_id)
            if (
                row is None
                or row.revoked_at is not None
                or row.tenant_id != tenant_id
                or row.profile_id != profile_id
            ):
                return False
            row.revoked_at = utcnow()
            row.revoked_by = revoked_by
            return True

    def revoke_all_device_sessions(
        self,
        tenant_id: str,
        profile_id: str,
        *,
        revoked_by: str,
        except_device_id: Optional[str] = None,
    ) -> int:
        if not self.capabilities.supports_session_table:
            raise CapabilityMissing("session_table")
        revoked = 0
        with self._data_lock:
            now = utcnow()
            for row in self.device_sessions.values():
                if (
                    row.revoked_at is not None
                    or row.tenant_id != tenant_id
                    or row.profile_id != profile_id
                ):
                    continue
                if except_device_id and row.device_id == except_device_id:
                    continue
                row.revoked_at = now
                row.revoked_by = revoked_by
                revoked += 1
        return revoked
