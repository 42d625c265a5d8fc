from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from itemtraxx.client.errors import ClientError
from itemtraxx.client.transport import EdgeClient
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import ErrorKind
from itemtraxx.storage.models import Profile, Role, TenantStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class CredentialSession:
    user_id: str
    email: str
    signed_in_at: datetime
    access_token: str
    refresh_token: str
    expires_at: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> "CredentialSession":
        return cls(
            user_id=data["user_id"],
            email=data["email"],
            signed_in_at=datetime.fromisoformat(data["signed_in_at"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=data.get("expires_at"),
        )


class HttpCredentialStore:
    """Credential store over the ``/v1/auth`` endpoints.

    Holds the current token pair in memory. ``get_session`` and
    ``refresh_session`` return ``None`` when the backend no longer accepts
    the credentials.
    """

    def __init__(self, edge: EdgeClient) -> None:
        self.edge = edge
        self._session: Optional[CredentialSession] = None

    @property
    def session(self) -> Optional[CredentialSession]:
        return self._session

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    async def sign_in(self, email: str, password: str) -> CredentialSession:
        data = await self.edge.request(
            "POST", "/v1/auth/login", json={"email": email, "password": password}
        )
        self._session = CredentialSession.from_payload(data)
        return self._session

    async def get_session(self) -> Optional[CredentialSession]:
        """Confirm the held session with the backend (refreshing once if needed)."""
        if self._session is None:
            return None
        try:
            data = await self.edge.call("GET", "/v1/auth/session", credentials=self)
        except ClientError as exc:
            if exc.kind is ErrorKind.UNAUTHENTICATED:
                self._session = None
                return None
            raise
        if self._session is None or data.get("user_id") != self._session.user_id:
            return None
        return self._session

    async def refresh_session(self) -> Optional[CredentialSession]:
        if self._session is None:
            return None
        try:
            data = await self.edge.request(
                "POST",
                "/v1/auth/refresh",
                json={"refresh_token": self._session.refresh_token},
            )
        except ClientError as exc:
            if exc.kind is ErrorKind.UNAUTHENTICATED:
                logger.info("credential_refresh_rejected", request_id=exc.request_id)
                self._session = None
                return None
            raise
        self._session = CredentialSession.from_payload(data)
        return self._session

    async def refresh_access_token(self) -> Optional[str]:
        session = await self.refresh_session()
        return session.access_token if session else None

    async def sign_out(self) -> None:
        """Revoke the backend session; local credentials are dropped regardless."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await self.edge.request("POST", "/v1/auth/logout", token=session.access_token)
        except ClientError as exc:
            logger.warning("sign_out_remote_failed", kind=exc.kind.value, request_id=exc.request_id)


def _profile_from_payload(data: Optional[dict]) -> Optional[Profile]:
    if not data:
        return None
    return Profile(
        id=data["id"],
        role=Role(data["role"]),
        auth_email=data.get("auth_email") or "",
        tenant_id=data.get("tenant_id"),
        is_active=data.get("is_active", True),
    )


class HttpProfileSource:
    """Profile and tenant reads over HTTP, for :class:`ProfileResolver`."""

    def __init__(self, edge: EdgeClient, credentials: HttpCredentialStore) -> None:
        self.edge = edge
        self.credentials = credentials

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        data = await self.edge.call("GET", "/v1/profiles/me", credentials=self.credentials)
        profile = _profile_from_payload(data)
        if profile is not None and profile.id != user_id:
            return None
        return profile

    async def fetch_profile_rpc(self, user_id: str) -> Optional[Profile]:
        data = await self.edge.call(
            "POST",
            "/v1/rpc/get_my_profile",
            credentials=self.credentials,
            json={},
            idempotent=True,
        )
        profile = _profile_from_payload(data)
        if profile is not None and profile.id != user_id:
            return None
        return profile

    async def fetch_tenant_status(self, tenant_id: str) -> Optional[TenantStatus]:
        data = await self.edge.call(
            "GET", f"/v1/tenants/{tenant_id}/status", credentials=self.credentials
        )
        if not data:
            return None
        return TenantStatus(data["status"])
