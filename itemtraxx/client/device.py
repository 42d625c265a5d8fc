from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from itemtraxx.logging import get_logger
from itemtraxx.service.device_sessions import detect_device_label

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    device_label: str


def load_or_create_device_identity(
    path: Path, *, user_agent: Optional[str] = None
) -> DeviceIdentity:
    """Read the persisted device id and label, creating and saving them on first use."""
    data: dict = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("device_identity_unreadable", path=str(path), error=str(exc))
            data = {}
    device_id = data.get("device_id") or str(uuid.uuid4())
    device_label = data.get("device_label") or detect_device_label(user_agent)
    if data.get("device_id") != device_id or data.get("device_label") != device_label:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"device_id": device_id, "device_label": device_label}))
    return DeviceIdentity(device_id=device_id, device_label=device_label)
