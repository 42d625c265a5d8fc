from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Type, TypeVar

from itemtraxx.config import RateLimitScope
from itemtraxx.logging import get_logger
from itemtraxx.service.auth import AuthService
from itemtraxx.service.device_sessions import DeviceSessionService
from itemtraxx.service.errors import (
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    SessionRevokedError,
    ValidationError,
)
from itemtraxx.service.gate import PrivilegedContext, PrivilegedGate
from itemtraxx.service.guards import OperationalGuards
from itemtraxx.storage.errors import CapabilityMissing
from itemtraxx.storage.models import Tenant, TenantStatus

logger = get_logger(__name__)


class AdminAction(str, Enum):
    TOUCH_SESSION = "touch_session"
    VALIDATE_SESSION = "validate_session"
    LIST_SESSIONS = "list_sessions"
    REVOKE_SESSION = "revoke_session"
    REVOKE_ALL_SESSIONS = "revoke_all_sessions"
    GET_TENANT_SETTINGS = "get_tenant_settings"
    UPDATE_TENANT_SETTINGS = "update_tenant_settings"


class SuperAction(str, Enum):
    LIST_TENANTS = "list_tenants"
    SET_TENANT_STATUS = "set_tenant_status"


@dataclass(frozen=True)
class RequestMeta:
    """Transport details the handlers need besides the payload."""

    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    origin: Optional[str] = None


@dataclass
class ActionServices:
    store: Any
    auth: AuthService
    device_sessions: DeviceSessionService


Handler = Callable[[PrivilegedContext, dict, RequestMeta, ActionServices], Awaitable[Any]]


@dataclass(frozen=True)
class ActionSpec:
    handler: Handler
    mutating: bool = False
    # Session-management actions skip the device-session check in the gate
    session_management: bool = False

    @property
    def scope(self) -> RateLimitScope:
        return RateLimitScope.ADMIN if self.mutating else RateLimitScope.TENANT


E = TypeVar("E", bound=Enum)


def _ensure_exhaustive(registry: Mapping[E, ActionSpec], actions: Type[E]) -> Mapping[E, ActionSpec]:
    missing = set(actions) - set(registry)
    if missing:
        names = ", ".join(sorted(a.value for a in missing))
        raise RuntimeError(f"{actions.__name__} has no handler for: {names}")
    return registry


def parse_action(raw: Any, actions: Type[E]) -> E:
    try:
        return actions(raw)
    except ValueError as exc:
        raise ValidationError("Invalid action", detail={"action": raw}) from exc


def _payload_str(payload: dict, key: str, *, required: bool = True, max_length: int = 256) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    if len(value) > max_length:
        raise ValidationError(f"{key} is too long")
    return value


def _tenant_settings(tenant: Tenant, *, feature_flags_supported: bool) -> dict:
    data = {
        "tenant_id": tenant.id,
        "name": tenant.name,
        "status": TenantStatus(tenant.status).value,
        "checkout_due_hours": tenant.checkout_due_hours,
    }
    if feature_flags_supported:
        data["feature_flags"] = dict(tenant.feature_flags or {})
    return data


# -- tenant-admin handlers ------------------------------------------------


async def _touch_session(ctx, payload, meta, services):
    device_id = _payload_str(payload, "device_id", required=False) or meta.device_id
    result = services.device_sessions.touch(
        ctx.tenant_id,
        ctx.user_id,
        device_id,
        device_label=_payload_str(payload, "device_label", required=False),
        user_agent=meta.user_agent,
    )
    return {"status": result.value}


async def _validate_session(ctx, payload, meta, services):
    device_id = _payload_str(payload, "device_id", required=False) or meta.device_id
    if services.device_sessions.enabled and not services.device_sessions.find_active(
        ctx.tenant_id, ctx.user_id, device_id
    ):
        raise SessionRevokedError("Session revoked")
    return {"active": True}


async def _list_sessions(ctx, payload, meta, services):
    device_id = _payload_str(payload, "device_id", required=False) or meta.device_id
    return {
        "sessions": services.device_sessions.list(
            ctx.tenant_id, ctx.user_id, current_device_id=device_id
        )
    }


async def _revoke_session(ctx, payload, meta, services):
    session_id = _payload_str(payload, "session_id")
    services.device_sessions.revoke(
        ctx.tenant_id, ctx.user_id, session_id, revoked_by=ctx.user_id
    )
    return {"revoked": True}


async def _revoke_all_sessions(ctx, payload, meta, services):
    except_current = payload.get("except_current", True)
    if not isinstance(except_current, bool):
        raise ValidationError("except_current must be a boolean")
    device_id = _payload_str(payload, "device_id", required=False) or meta.device_id
    count = services.device_sessions.revoke_all(
        ctx.tenant_id,
        ctx.user_id,
        revoked_by=ctx.user_id,
        except_current=except_current,
        current_device_id=device_id,
    )
    return {"revoked_count": count}


async def _get_tenant_settings(ctx, payload, meta, services):
    tenant = services.store.get_tenant(ctx.tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    return _tenant_settings(
        tenant, feature_flags_supported=services.store.capabilities.supports_feature_flags
    )


async def _update_tenant_settings(ctx, payload, meta, services):
    due_hours = payload.get("checkout_due_hours")
    flags = payload.get("feature_flags")
    if due_hours is not None and (
        not isinstance(due_hours, int) or isinstance(due_hours, bool) or not 1 <= due_hours <= 24 * 30
    ):
        raise ValidationError("checkout_due_hours must be between 1 and 720")
    if flags is not None:
        if not isinstance(flags, dict) or not all(
            isinstance(k, str) and isinstance(v, bool) for k, v in flags.items()
        ):
            raise ValidationError("feature_flags must map names to booleans")
    if due_hours is None and flags is None:
        raise ValidationError("No settings to update")
    try:
        tenant = services.store.update_tenant_settings(
            ctx.tenant_id, checkout_due_hours=due_hours, feature_flags=flags
        )
    except CapabilityMissing as exc:
        raise ValidationError("Feature flags are not supported yet") from exc
    if tenant is None:
        raise NotFoundError("Tenant not found")
    logger.info("tenant_settings_updated", tenant_id=ctx.tenant_id, user_id=ctx.user_id)
    return _tenant_settings(
        tenant, feature_flags_supported=services.store.capabilities.supports_feature_flags
    )


ADMIN_ACTIONS: Mapping[AdminAction, ActionSpec] = _ensure_exhaustive(
    {
        AdminAction.TOUCH_SESSION: ActionSpec(_touch_session, mutating=True, session_management=True),
        AdminAction.VALIDATE_SESSION: ActionSpec(_validate_session, session_management=True),
        AdminAction.LIST_SESSIONS: ActionSpec(_list_sessions, session_management=True),
        AdminAction.REVOKE_SESSION: ActionSpec(_revoke_session, mutating=True, session_management=True),
        AdminAction.REVOKE_ALL_SESSIONS: ActionSpec(
            _revoke_all_sessions, mutating=True, session_management=True
        ),
        AdminAction.GET_TENANT_SETTINGS: ActionSpec(_get_tenant_settings),
        AdminAction.UPDATE_TENANT_SETTINGS: ActionSpec(_update_tenant_settings, mutating=True),
    },
    AdminAction,
)


# -- super-admin handlers -------------------------------------------------


async def _list_tenants(ctx, payload, meta, services):
    flags_supported = services.store.capabilities.supports_feature_flags
    return {
        "tenants": [
            _tenant_settings(t, feature_flags_supported=flags_supported)
            for t in services.store.list_tenants()
        ]
    }


async def _set_tenant_status(ctx, payload, meta, services):
    tenant_id = _payload_str(payload, "tenant_id")
    raw_status = _payload_str(payload, "status")
    super_password = _payload_str(payload, "super_password")
    try:
        status = TenantStatus(raw_status)
    except ValueError as exc:
        raise ValidationError("status must be 'active' or 'suspended'") from exc
    if not services.auth.verify_password(ctx.user_id, super_password):
        raise ForbiddenError("Super admin re-authentication failed")
    tenant = services.store.set_tenant_status(tenant_id, status)
    if tenant is None:
        raise NotFoundError("Tenant not found")
    logger.info(
        "tenant_status_changed",
        tenant_id=tenant_id,
        status=status.value,
        changed_by=ctx.user_id,
    )
    return {"tenant_id": tenant.id, "status": status.value}


SUPER_ACTIONS: Mapping[SuperAction, ActionSpec] = _ensure_exhaustive(
    {
        SuperAction.LIST_TENANTS: ActionSpec(_list_tenants),
        SuperAction.SET_TENANT_STATUS: ActionSpec(_set_tenant_status, mutating=True),
    },
    SuperAction,
)


class AdminOps:
    """Executes ``{action, payload}`` envelopes for tenant admins and super admins."""

    def __init__(
        self,
        gate: PrivilegedGate,
        guards: OperationalGuards,
        services: ActionServices,
        *,
        admin_actions: Mapping[AdminAction, ActionSpec] = ADMIN_ACTIONS,
        super_actions: Mapping[SuperAction, ActionSpec] = SUPER_ACTIONS,
    ) -> None:
        self.gate = gate
        self.guards = guards
        self.services = services
        self.admin_actions: Dict[AdminAction, ActionSpec] = dict(admin_actions)
        self.super_actions: Dict[SuperAction, ActionSpec] = dict(super_actions)

    async def run_admin(
        self,
        raw_action: Any,
        payload: Optional[dict],
        *,
        authorization: Optional[str],
        meta: RequestMeta,
    ) -> Any:
        action = parse_action(raw_action, AdminAction)
        spec = self.admin_actions[action]
        self.guards.ensure_not_in_maintenance()
        if spec.mutating:
            self.guards.ensure_writes_allowed(meta.origin)
        ctx = await self.gate.authorize_tenant_admin(
            authorization,
            meta.device_id,
            scope=spec.scope,
            session_management=spec.session_management,
        )
        return await spec.handler(ctx, payload or {}, meta, self.services)

    async def run_super(
        self,
        raw_action: Any,
        payload: Optional[dict],
        *,
        authorization: Optional[str],
        meta: RequestMeta,
    ) -> Any:
        action = parse_action(raw_action, SuperAction)
        spec = self.super_actions[action]
        if spec.mutating:
            self.guards.ensure_writes_allowed(meta.origin)
        ctx = await self.gate.authorize_super_admin(authorization)
        try:
            return await spec.handler(ctx, payload or {}, meta, self.services)
        except CapabilityMissing as exc:
            raise ServiceUnavailableError("Storage feature unavailable") from exc
