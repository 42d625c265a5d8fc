from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Path, Request

from itemtraxx.api.schemas import (
    ActionRequest,
    Envelope,
    LoginRequest,
    ProfileResponse,
    RefreshRequest,
    SessionResponse,
    SignInResponse,
    TenantLookupRequest,
    TenantLookupResponse,
    TenantStatusResponse,
)
from itemtraxx.config import RateLimitScope
from itemtraxx.logging import get_logger
from itemtraxx.service.actions import RequestMeta
from itemtraxx.service.runtime import get_runtime
from itemtraxx.storage.models import Profile, Role, TenantStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or None
    return request.client.host if request.client else None


def _profile_response(profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        role=Role(profile.role).value,
        tenant_id=profile.tenant_id,
        auth_email=profile.auth_email,
        is_active=profile.is_active,
    )


# -- credential store -----------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """Sign in with email and password.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await runtime.rate_limiter.enforce(
        RateLimitScope.TENANT,
        f"login:{body.email}",
        limit=runtime.settings.rate_limit_tenant,
    )
    profile, session, tokens = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=user_agent,
        ip_addr=_client_ip(request),
    )
    if not profile or not session:
        raise _http_error("unauthorized", "Invalid login credentials", status_code=401)
    return Envelope(
        status="ok",
        data=SignInResponse(
            user_id=profile.id,
            email=profile.auth_email,
            session_id=session.id,
            signed_in_at=session.created_at,
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    profile, session, tokens = await runtime.auth.refresh_tokens(body.refresh_token)
    if not profile or not session:
        raise _http_error("unauthorized", "Invalid refresh token", status_code=401)
    return Envelope(
        status="ok",
        data=SignInResponse(
            user_id=profile.id,
            email=profile.auth_email,
            session_id=session.id,
            signed_in_at=session.created_at,
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    await runtime.auth.revoke(ctx.session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def get_session(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=ctx.user_id,
            email=ctx.email,
            session_id=ctx.session_id,
            signed_in_at=ctx.signed_in_at,
            expires_at=ctx.expires_at,
        ),
    )


@router.post("/auth/tenant-lookup", response_model=Envelope, tags=["auth"])
async def tenant_lookup(body: TenantLookupRequest, request: Request):
    """Resolve a tenant access code to the auth email used for sign-in."""
    runtime = get_runtime()
    result = await runtime.tenant_login.lookup(body.access_code, client_ip=_client_ip(request))
    return Envelope(status="ok", data=TenantLookupResponse(**result))


# -- profile and tenant reads ---------------------------------------------


@router.get("/profiles/me", response_model=Envelope, tags=["profiles"])
async def get_my_profile(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    profile = runtime.store.get_profile(ctx.user_id)
    if profile is None:
        raise _http_error("not_found", "Profile not found", status_code=404)
    return Envelope(status="ok", data=_profile_response(profile))


@router.post("/rpc/get_my_profile", response_model=Envelope, tags=["profiles"])
async def get_my_profile_rpc(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    profile = runtime.store.get_my_profile_rpc(ctx.user_id)
    if profile is None:
        raise _http_error("not_found", "Profile not found", status_code=404)
    return Envelope(status="ok", data=_profile_response(profile))


@router.get("/tenants/{tenant_id}/status", response_model=Envelope, tags=["tenants"])
async def get_tenant_status(
    tenant_id: str = Path(..., max_length=64),
    authorization: Optional[str] = Header(None),
):
    """Return a tenant's status to its own members or to a super admin."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    profile = runtime.store.get_profile(ctx.user_id)
    if profile is None:
        raise _http_error("forbidden", "Access denied", status_code=403)
    if profile.role != Role.SUPER_ADMIN and profile.tenant_id != tenant_id:
        raise _http_error("forbidden", "Access denied", status_code=403)
    tenant = runtime.store.get_tenant(tenant_id)
    if tenant is None:
        raise _http_error("not_found", "Tenant not found", status_code=404)
    return Envelope(
        status="ok",
        data=TenantStatusResponse(tenant_id=tenant.id, status=TenantStatus(tenant.status).value),
    )


# -- privileged action envelopes ------------------------------------------


def _request_meta(
    device_id: Optional[str], user_agent: Optional[str], origin: Optional[str]
) -> RequestMeta:
    return RequestMeta(device_id=device_id, user_agent=user_agent, origin=origin)


@router.post("/admin-ops", response_model=Envelope, tags=["admin"])
async def admin_ops(
    body: ActionRequest,
    authorization: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None, convert_underscores=False, alias="X-Device-ID"),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
    origin: Optional[str] = Header(None),
):
    """Run a tenant-admin action behind the privileged gate."""
    runtime = get_runtime()
    data = await runtime.admin_ops.run_admin(
        body.action,
        body.payload,
        authorization=authorization,
        meta=_request_meta(x_device_id, user_agent, origin),
    )
    return Envelope(status="ok", data=data)


@router.post("/super-ops", response_model=Envelope, tags=["admin"])
async def super_ops(
    body: ActionRequest,
    authorization: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None, convert_underscores=False, alias="X-Device-ID"),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
    origin: Optional[str] = Header(None),
):
    runtime = get_runtime()
    data = await runtime.admin_ops.run_super(
        body.action,
        body.payload,
        authorization=authorization,
        meta=_request_meta(x_device_id, user_agent, origin),
    )
    return Envelope(status="ok", data=data)
