from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Union

from itemtraxx.client.state import AuthState
from itemtraxx.config import Settings
from itemtraxx.storage.models import Role

PUBLIC_HOME = "public-home"
SUPER_AUTH = "super-auth"
TENANT_ADMIN_LOGIN = "tenant-admin-login"

DEFAULT_VERIFICATION_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class RouteMeta:
    public: bool = False
    requires_session: bool = False
    requires_tenant: bool = False
    requires_role: Optional[Role] = None
    requires_tenant_match: bool = False
    requires_super_auth: bool = False
    requires_fresh_admin_verification: bool = False
    requires_fresh_super_verification: bool = False


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Hold:
    """Stay put until hydration finishes; never a redirect."""


@dataclass(frozen=True)
class Redirect:
    route: str


Decision = Union[Allow, Hold, Redirect]


def _is_fresh(verified_at: Optional[datetime], now: datetime, ttl: timedelta) -> bool:
    if verified_at is None:
        return False
    return now - verified_at <= ttl


def decide(
    meta: RouteMeta,
    state: AuthState,
    *,
    now: datetime,
    admin_ttl: timedelta = DEFAULT_VERIFICATION_TTL,
    super_ttl: timedelta = DEFAULT_VERIFICATION_TTL,
) -> Decision:
    """Decide a navigation. Rules are evaluated in order; the first match wins.

    The result depends only on the arguments; ``now`` is the instant that
    verification freshness is measured against.
    """
    if meta.public:
        return Allow()
    if not state.is_initialized:
        return Hold()
    if meta.requires_session and not state.is_authenticated:
        return Redirect(PUBLIC_HOME)
    if meta.requires_tenant and state.tenant_context_id is None:
        return Redirect(PUBLIC_HOME)
    if meta.requires_role is not None and state.role != meta.requires_role:
        return Redirect(PUBLIC_HOME)
    if (
        meta.requires_tenant_match
        and state.session_tenant_id is not None
        and state.tenant_context_id is not None
        and state.session_tenant_id != state.tenant_context_id
    ):
        return Redirect(PUBLIC_HOME)

    if meta.requires_fresh_admin_verification and not _is_fresh(
        state.admin_verified_at, now, admin_ttl
    ):
        return Redirect(TENANT_ADMIN_LOGIN)
    if meta.requires_super_auth and not state.has_secondary_auth:
        return Redirect(SUPER_AUTH)
    if meta.requires_fresh_super_verification and not _is_fresh(
        state.super_verified_at, now, super_ttl
    ):
        return Redirect(SUPER_AUTH)
    return Allow()


_PUBLIC = RouteMeta(public=True)
_TENANT = RouteMeta(requires_session=True, requires_tenant=True)
_TENANT_ADMIN = RouteMeta(
    requires_session=True,
    requires_tenant=True,
    requires_role=Role.TENANT_ADMIN,
    requires_tenant_match=True,
    requires_fresh_admin_verification=True,
)
_SUPER_ADMIN = RouteMeta(
    requires_session=True,
    requires_role=Role.SUPER_ADMIN,
    requires_super_auth=True,
    requires_fresh_super_verification=True,
)

ROUTES: Dict[str, RouteMeta] = {
    PUBLIC_HOME: _PUBLIC,
    "public-login": _PUBLIC,
    "public-reset-password": _PUBLIC,
    SUPER_AUTH: _PUBLIC,
    "not-found": _PUBLIC,
    "tenant-home": _TENANT,
    "tenant-checkout": _TENANT,
    TENANT_ADMIN_LOGIN: _TENANT,
    "tenant-admin-home": _TENANT_ADMIN,
    "tenant-admin-students": _TENANT_ADMIN,
    "tenant-admin-gear": _TENANT_ADMIN,
    "tenant-admin-logs": _TENANT_ADMIN,
    "tenant-admin-return": _TENANT_ADMIN,
    "tenant-admin-stats": _TENANT_ADMIN,
    "tenant-admin-audit-logs": _TENANT_ADMIN,
    "super-admin-home": _SUPER_ADMIN,
    "super-admin-tenants": _SUPER_ADMIN,
    "super-admin-admins": _SUPER_ADMIN,
    "super-admin-gear": _SUPER_ADMIN,
    "super-admin-students": _SUPER_ADMIN,
    "super-admin-logs": _SUPER_ADMIN,
    "super-admin-broadcasts": _SUPER_ADMIN,
}


def decide_route(
    name: str,
    state: AuthState,
    *,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Decision:
    """Look up a named route; unknown names resolve like ``not-found``.

    Freshness windows come from ``settings`` when given, else the defaults;
    ``now`` defaults to the current time.
    """
    ttls = {}
    if settings is not None:
        ttls = {
            "admin_ttl": timedelta(minutes=settings.admin_verification_ttl_minutes),
            "super_ttl": timedelta(minutes=settings.super_verification_ttl_minutes),
        }
    return decide(
        ROUTES.get(name, _PUBLIC), state, now=now or datetime.now(timezone.utc), **ttls
    )
