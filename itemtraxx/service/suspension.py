from __future__ import annotations

from typing import Optional

from itemtraxx.logging import get_logger
from itemtraxx.service.errors import TenantDisabledError
from itemtraxx.service.profiles import ProfileSource
from itemtraxx.storage.models import TenantStatus

logger = get_logger(__name__)


class SuspensionCheck:
    """Tenant-status check applied on hydration and on every privileged request.

    There is no background sweep: a suspended tenant's sessions are rejected
    lazily, the next time anything reads through this check.
    """

    def __init__(self, source: ProfileSource) -> None:
        self.source = source

    async def is_suspended(self, tenant_id: Optional[str]) -> bool:
        if not tenant_id:
            return False
        status = await self.source.fetch_tenant_status(tenant_id)
        return status is not None and TenantStatus(status) is TenantStatus.SUSPENDED

    async def ensure_active(self, tenant_id: Optional[str], *, user_id: Optional[str] = None) -> None:
        if await self.is_suspended(tenant_id):
            logger.warning("tenant_suspended_request_rejected", tenant_id=tenant_id, user_id=user_id)
            raise TenantDisabledError()
