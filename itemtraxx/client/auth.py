from __future__ import annotations

from typing import Any, Optional

from itemtraxx.client.credentials import CredentialSession, HttpCredentialStore, HttpProfileSource
from itemtraxx.client.device import DeviceIdentity
from itemtraxx.client.errors import ClientError
from itemtraxx.client.state import AuthState, AuthStateStore
from itemtraxx.client.transport import EdgeClient
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import ErrorKind
from itemtraxx.service.profiles import ProfileResolver
from itemtraxx.service.suspension import SuspensionCheck
from itemtraxx.storage.models import Role

logger = get_logger(__name__)


class AuthController:
    """Client sign-in flows driving a single :class:`AuthStateStore`.

    Every await is a point where another flow (usually a sign-out) may have
    changed the identity; results are applied only if the identity that
    started the request is still the one holding credentials.
    """

    def __init__(
        self,
        edge: EdgeClient,
        *,
        state: Optional[AuthStateStore] = None,
        credentials: Optional[HttpCredentialStore] = None,
        device: Optional[DeviceIdentity] = None,
    ) -> None:
        self.edge = edge
        self.state = state or AuthStateStore()
        self.credentials = credentials or HttpCredentialStore(edge)
        source = HttpProfileSource(edge, self.credentials)
        self.profiles = ProfileResolver(source)
        self.suspension = SuspensionCheck(source)
        self.device = device
        edge.add_teardown_listener(self._on_teardown)

    # -- hydration -------------------------------------------------------

    async def hydrate(self) -> AuthState:
        """First-load session restore; always leaves the state initialized.

        Errors still propagate, but only after the first attempt is settled.
        """
        self.state.begin_hydration()
        try:
            await self.refresh_from_session()
        finally:
            self.state.finish_hydration()
        return self.state.snapshot()

    async def refresh_from_session(self) -> AuthState:
        try:
            session = await self.credentials.get_session()
        except ClientError as exc:
            logger.warning("session_lookup_failed", kind=exc.kind.value, request_id=exc.request_id)
            session = None
        if session is None:
            return self.state.clear(mark_initialized=True)
        try:
            return await self._apply_session(session)
        except ClientError as exc:
            if exc.kind is not ErrorKind.TENANT_DISABLED:
                raise
            return self.state.snapshot()

    def _is_current(self, user_id: str) -> bool:
        session = self.credentials.session
        return session is not None and session.user_id == user_id

    async def _apply_session(self, session: CredentialSession) -> AuthState:
        user_id = session.user_id
        profile = await self.profiles.resolve(user_id)
        if not self._is_current(user_id):
            logger.info("stale_profile_discarded", user_id=user_id)
            return self.state.finish_hydration()

        tenant_id = profile.tenant_id if profile else None
        try:
            suspended = await self.suspension.is_suspended(tenant_id)
        except ClientError as exc:
            # Privileged requests are re-checked on the server
            logger.warning("tenant_status_lookup_failed", tenant_id=tenant_id, kind=exc.kind.value)
            suspended = False
        if not self._is_current(user_id):
            logger.info("stale_tenant_status_discarded", user_id=user_id)
            return self.state.finish_hydration()
        if suspended:
            await self._suspension_cascade()
            raise ClientError(ErrorKind.TENANT_DISABLED, "Tenant disabled", status=403)

        current = self.state.snapshot()
        # A failed profile read keeps the previously selected tenant context
        tenant_context_id = (
            current.tenant_context_id if current.tenant_context_id is not None else tenant_id
        )
        return self.state.set_from_backend(
            is_initialized=True,
            is_authenticated=True,
            user_id=user_id,
            email=session.email,
            signed_in_at=session.signed_in_at,
            role=profile.role if profile else None,
            session_tenant_id=tenant_id,
            tenant_context_id=tenant_context_id,
            has_secondary_auth=current.has_secondary_auth,
        )

    # -- teardown --------------------------------------------------------

    async def _suspension_cascade(self) -> None:
        logger.warning("tenant_suspended_signing_out", user_id=self.state.snapshot().user_id)
        await self.credentials.sign_out()
        self.state.set_secondary_auth(False)
        self.state.clear_admin_verification()
        self.state.clear(mark_initialized=True)

    async def _on_teardown(self, error: ClientError) -> None:
        if error.kind is ErrorKind.TENANT_DISABLED:
            await self._suspension_cascade()
            return
        logger.info("device_session_revoked_signing_out", request_id=error.request_id)
        await self.credentials.sign_out()
        self.state.clear_admin_verification()
        self.state.clear(mark_initialized=True)

    # -- sign-in flows ---------------------------------------------------

    async def tenant_login(self, access_code: str, password: str) -> AuthState:
        """Sign in to a tenant with its access code and the shared password."""
        data = await self.edge.request(
            "POST", "/v1/auth/tenant-lookup", json={"access_code": access_code}
        )
        auth_email = (data or {}).get("auth_email")
        if not auth_email:
            raise ClientError(ErrorKind.UNAUTHENTICATED, "Invalid tenant access code.", status=401)
        session = await self.credentials.sign_in(auth_email, password)
        state = await self._apply_session(session)
        return self.state.set_tenant_context(state.session_tenant_id)

    async def admin_login(self, email: str, password: str) -> AuthState:
        """Step up to tenant admin inside the tenant currently in context."""
        prior_tenant_context_id = self.state.snapshot().tenant_context_id
        session = await self.credentials.sign_in(email, password)
        state = await self._apply_session(session)
        if state.role is not Role.TENANT_ADMIN:
            await self.sign_out()
            raise ClientError(ErrorKind.ACCESS_DENIED, "Access denied.", status=403)
        if prior_tenant_context_id and state.session_tenant_id != prior_tenant_context_id:
            await self.sign_out()
            raise ClientError(ErrorKind.ACCESS_DENIED, "Access denied.", status=403)
        if state.tenant_context_id is None:
            self.state.set_tenant_context(state.session_tenant_id)
        self.state.mark_admin_verified()
        await self.touch_device_session()
        return self.state.snapshot()

    async def super_admin_login(self, email: str, password: str) -> AuthState:
        session = await self.credentials.sign_in(email, password)
        state = await self._apply_session(session)
        if state.role is not Role.SUPER_ADMIN:
            await self.sign_out()
            raise ClientError(ErrorKind.ACCESS_DENIED, "Access denied.", status=403)
        return self.state.set_secondary_auth(True)

    async def sign_out(self) -> AuthState:
        await self.credentials.sign_out()
        return self.state.clear()

    # -- privileged calls ------------------------------------------------

    def _device_headers(self) -> dict:
        if self.device is None:
            return {}
        return {"X-Device-ID": self.device.device_id}

    async def admin_ops(self, action: str, payload: Optional[dict] = None) -> Any:
        return await self.edge.call(
            "POST",
            "/v1/admin-ops",
            credentials=self.credentials,
            json={"action": action, "payload": payload or {}},
            headers=self._device_headers(),
        )

    async def super_ops(self, action: str, payload: Optional[dict] = None) -> Any:
        return await self.edge.call(
            "POST",
            "/v1/super-ops",
            credentials=self.credentials,
            json={"action": action, "payload": payload or {}},
            headers=self._device_headers(),
        )

    async def touch_device_session(self) -> Optional[str]:
        if self.device is None:
            return None
        data = await self.admin_ops(
            "touch_session",
            {"device_id": self.device.device_id, "device_label": self.device.device_label},
        )
        return (data or {}).get("status")
