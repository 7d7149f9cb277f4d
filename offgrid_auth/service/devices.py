from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from offgrid_auth.logging import get_logger
from offgrid_auth.service.stores import DeviceRepository
from offgrid_auth.storage.models import Device, DeviceType, utcnow

logger = get_logger(__name__)

UNKNOWN_DEVICE_NAME = "unknown"


@dataclass(frozen=True)
class DeviceInfo:
    """Client-declared device descriptor; identity is (user, type, name)."""

    type: DeviceType
    name: Optional[str] = None

    @property
    def resolved_name(self) -> str:
        return self.name or UNKNOWN_DEVICE_NAME


class DeviceRegistry:
    """Tracks client devices by their loose (user_id, type, name) identity."""

    def __init__(
        self, store: DeviceRepository, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def upsert_device(
        self, user_id: str, device_type: DeviceType | str, name: str, *, tx: Any = None
    ) -> Device:
        device = self.store.upsert_device(
            user_id, DeviceType(device_type), name, seen_at=self._clock(), tx=tx
        )
        logger.debug("device_upserted", user_id=user_id, device_id=device.id)
        return device

    def register(self, user_id: str, info: DeviceInfo, *, tx: Any = None) -> Device:
        return self.upsert_device(user_id, info.type, info.resolved_name, tx=tx)

    def touch(self, device_id: str, *, tx: Any = None) -> Optional[Device]:
        return self.store.touch_device(device_id, seen_at=self._clock(), tx=tx)
