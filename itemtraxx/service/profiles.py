from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from itemtraxx.logging import get_logger
from itemtraxx.storage.models import Profile, Role, TenantStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedProfile:
    id: str
    role: Role
    tenant_id: Optional[str]
    auth_email: str
    is_active: bool = True
    via_rpc: bool = False

    @classmethod
    def from_profile(cls, profile: Profile, *, via_rpc: bool = False) -> "ResolvedProfile":
        return cls(
            id=profile.id,
            role=Role(profile.role),
            tenant_id=profile.tenant_id,
            auth_email=profile.auth_email,
            is_active=profile.is_active,
            via_rpc=via_rpc,
        )


class ProfileSource(Protocol):
    """Where profile and tenant rows come from (the store, or the HTTP API)."""

    async def fetch_profile(self, user_id: str) -> Optional[Profile]: ...

    async def fetch_profile_rpc(self, user_id: str) -> Optional[Profile]: ...

    async def fetch_tenant_status(self, tenant_id: str) -> Optional[TenantStatus]: ...


class StoreProfileSource:
    """Adapter exposing a synchronous store through the async source API."""

    def __init__(self, store) -> None:
        self._store = store

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        return self._store.get_profile(user_id)

    async def fetch_profile_rpc(self, user_id: str) -> Optional[Profile]:
        return self._store.get_my_profile_rpc(user_id)

    async def fetch_tenant_status(self, tenant_id: str) -> Optional[TenantStatus]:
        tenant = self._store.get_tenant(tenant_id)
        return TenantStatus(tenant.status) if tenant else None


class ProfileResolver:
    """Resolve ``{role, tenant_id}`` for an identity.

    The direct row read is tried first; if it errors or returns nothing the
    ``get_my_profile`` RPC is consulted. ``None`` means neither path produced
    a profile.
    """

    def __init__(self, source: ProfileSource) -> None:
        self.source = source

    async def resolve(self, user_id: Optional[str]) -> Optional[ResolvedProfile]:
        if not user_id:
            return None
        try:
            profile = await self.source.fetch_profile(user_id)
        except Exception as exc:
            logger.warning(
                "profile_direct_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            profile = None
        if profile is not None:
            return ResolvedProfile.from_profile(profile)

        try:
            profile = await self.source.fetch_profile_rpc(user_id)
        except Exception as exc:
            logger.warning(
                "profile_rpc_lookup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if profile is None:
            logger.info("profile_not_found", user_id=user_id)
            return None
        logger.info("profile_resolved_via_rpc", user_id=user_id)
        return ResolvedProfile.from_profile(profile, via_rpc=True)
