from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CapabilityMissing(Exception):
    """Raised when an operation needs a schema feature the backend lacks."""

    def __init__(self, capability: str):
        super().__init__(f"storage capability missing: {capability}")
        self.capability = capability


__all__ = ["ConstraintViolation", "CapabilityMissing"]
