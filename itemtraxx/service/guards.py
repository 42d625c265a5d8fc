from __future__ import annotations

import ipaddress
from typing import Optional
from urllib.parse import urlparse

from itemtraxx.config import Settings
from itemtraxx.logging import get_logger
from itemtraxx.service.errors import ServiceUnavailableError

logger = get_logger(__name__)

_LOCAL_HOSTNAMES = {"localhost", "127.0.0.1", "::1"}


def is_local_origin(origin: Optional[str]) -> bool:
    """True for localhost and private-network origins."""
    if not origin:
        return False
    try:
        host = urlparse(origin).hostname
    except ValueError:
        return False
    if not host:
        return False
    if host in _LOCAL_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback


class OperationalGuards:
    """Kill switch and maintenance mode."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def ensure_writes_allowed(self, origin: Optional[str]) -> None:
        if not self.settings.killswitch_enabled:
            return
        if is_local_origin(origin):
            return
        logger.warning("killswitch_blocked_write", origin=origin)
        raise ServiceUnavailableError(
            "ItemTraxx is temporarily read-only.",
            detail={"reason": "killswitch"},
        )

    def ensure_not_in_maintenance(self) -> None:
        if self.settings.maintenance_mode:
            raise ServiceUnavailableError(
                self.settings.maintenance_message,
                detail={"reason": "maintenance"},
            )
