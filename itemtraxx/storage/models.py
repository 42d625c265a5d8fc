from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    TENANT_USER = "tenant_user"
    TENANT_ADMIN = "tenant_admin"
    SUPER_ADMIN = "super_admin"


class TenantStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TouchResult(str, Enum):
    """Outcome of a device-session heartbeat."""

    OK = "ok"
    MISSING_DEVICE = "missing_device"
    MISSING_TABLE = "missing_table"


@dataclass
class Tenant:
    id: str
    name: str
    access_code: Optional[str] = None
    status: TenantStatus = TenantStatus.ACTIVE
    feature_flags: Dict | None = None
    checkout_due_hours: int = 72
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_suspended(self) -> bool:
        return TenantStatus(self.status) is TenantStatus.SUSPENDED


@dataclass
class Profile:
    """Identity-to-tenant binding; super admins have no tenant."""

    id: str
    role: Role
    auth_email: str
    tenant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthSession:
    """Credential session backing issued access/refresh tokens."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    tenant_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        tenant_id: Optional[str] = None,
        meta: Dict | None = None,
    ) -> "AuthSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            tenant_id=tenant_id,
            meta=meta,
        )


@dataclass
class DeviceSession:
    id: str
    tenant_id: str
    profile_id: str
    device_id: str
    device_label: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def to_public(self, *, current_device_id: Optional[str] = None) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "device_label": self.device_label,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "is_current": bool(current_device_id) and self.device_id == current_device_id,
        }
