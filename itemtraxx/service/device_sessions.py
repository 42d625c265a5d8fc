from __future__ import annotations

from typing import List, Optional, Protocol

from itemtraxx.logging import get_logger
from itemtraxx.service.errors import (
    NotFoundError,
    ServiceUnavailableError,
    SessionRevokedError,
)
from itemtraxx.storage.errors import CapabilityMissing
from itemtraxx.storage.models import DeviceSession, TouchResult

logger = get_logger(__name__)

MAX_DEVICE_ID_LENGTH = 128
MAX_DEVICE_LABEL_LENGTH = 120
MAX_USER_AGENT_LENGTH = 512


def detect_device_label(user_agent: Optional[str]) -> str:
    """Human-readable device name derived from a user agent string."""
    ua = (user_agent or "").lower()
    if "iphone" in ua:
        return "iPhone"
    if "ipad" in ua:
        return "iPad"
    if "android" in ua:
        return "Android device"
    if "macintosh" in ua or "mac os" in ua:
        return "Mac"
    if "windows" in ua:
        return "Windows PC"
    if "linux" in ua:
        return "Linux device"
    return "Unknown device"


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value[:limit] or None


class DeviceSessionStore(Protocol):
    capabilities: object

    def touch_device_session(
        self,
        tenant_id: str,
        profile_id: str,
        device_id: str,
        *,
        device_label: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TouchResult: ...

    def find_active_device_session(
        self, tenant_id: str, profile_id: str, device_id: str
    ) -> Optional[DeviceSession]: ...

    def list_device_sessions(self, tenant_id: str, profile_id: str) -> List[DeviceSession]: ...

    def revoke_device_session(
        self, tenant_id: str, profile_id: str, session_id: str, *, revoked_by: str
    ) -> bool: ...

    def revoke_all_device_sessions(
        self,
        tenant_id: str,
        profile_id: str,
        *,
        revoked_by: str,
        except_device_id: Optional[str] = None,
    ) -> int: ...


class DeviceSessionService:
    """Server-side authority over tenant-admin device sessions.

    Rows are soft-revoked only. Uniqueness of the active row per
    ``(tenant, profile, device)`` is the store's responsibility (partial
    unique index in Postgres, the data lock in memory).
    """

    def __init__(self, store: DeviceSessionStore) -> None:
        self.store = store

    @property
    def enabled(self) -> bool:
        caps = getattr(self.store, "capabilities", None)
        return bool(getattr(caps, "supports_session_table", False))

    def touch(
        self,
        tenant_id: str,
        profile_id: str,
        device_id: Optional[str],
        *,
        device_label: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TouchResult:
        device_id = _clip(device_id, MAX_DEVICE_ID_LENGTH)
        if not device_id:
            return TouchResult.MISSING_DEVICE
        user_agent = _clip(user_agent, MAX_USER_AGENT_LENGTH)
        label = _clip(device_label, MAX_DEVICE_LABEL_LENGTH) or detect_device_label(user_agent)
        result = self.store.touch_device_session(
            tenant_id,
            profile_id,
            device_id,
            device_label=label,
            user_agent=user_agent,
        )
        if result is TouchResult.MISSING_TABLE:
            logger.warning("device_session_touch_skipped", reason="session_table_missing")
        return result

    def find_active(self, tenant_id: str, profile_id: str, device_id: Optional[str]) -> bool:
        device_id = _clip(device_id, MAX_DEVICE_ID_LENGTH)
        if not device_id:
            return False
        return (
            self.store.find_active_device_session(tenant_id, profile_id, device_id)
            is not None
        )

    def require_active(
        self, tenant_id: str, profile_id: str, device_id: Optional[str]
    ) -> None:
        """Raise :class:`SessionRevokedError` unless the device has an active row.

        Enforcement is skipped, with a warning, while the backend lacks the
        session table.
        """
        if not self.enabled:
            logger.warning(
                "device_session_enforcement_skipped",
                tenant_id=tenant_id,
                reason="session_table_missing",
            )
            return
        if not self.find_active(tenant_id, profile_id, device_id):
            logger.warning(
                "device_session_inactive",
                tenant_id=tenant_id,
                profile_id=profile_id,
            )
            raise SessionRevokedError("Session revoked")

    def list(
        self, tenant_id: str, profile_id: str, *, current_device_id: Optional[str] = None
    ) -> List[dict]:
        try:
            rows = self.store.list_device_sessions(tenant_id, profile_id)
        except CapabilityMissing:
            return []
        rows = sorted(rows, key=lambda r: r.last_seen_at, reverse=True)
        return [row.to_public(current_device_id=current_device_id) for row in rows]

    def revoke(
        self, tenant_id: str, profile_id: str, session_id: str, *, revoked_by: str
    ) -> None:
        if not session_id:
            raise NotFoundError("Session not found")
        try:
            revoked = self.store.revoke_device_session(
                tenant_id, profile_id, session_id, revoked_by=revoked_by
            )
        except CapabilityMissing as exc:
            raise ServiceUnavailableError("Device sessions are not available") from exc
        if not revoked:
            raise NotFoundError("Session not found")
        logger.info("device_session_revoked", tenant_id=tenant_id, session_id=session_id)

    def revoke_all(
        self,
        tenant_id: str,
        profile_id: str,
        *,
        revoked_by: str,
        except_current: bool = False,
        current_device_id: Optional[str] = None,
    ) -> int:
        except_device_id = _clip(current_device_id, MAX_DEVICE_ID_LENGTH) if except_current else None
        try:
            count = self.store.revoke_all_device_sessions(
                tenant_id,
                profile_id,
                revoked_by=revoked_by,
                except_device_id=except_device_id,
            )
        except CapabilityMissing as exc:
            raise ServiceUnavailableError("Device sessions are not available") from exc
        logger.info(
            "device_sessions_revoked_all",
            tenant_id=tenant_id,
            count=count,
            except_current=bool(except_device_id),
        )
        return count
