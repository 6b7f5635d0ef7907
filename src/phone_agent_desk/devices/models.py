from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

ONLINE_STATE = "device"


@dataclass(frozen=True)
class DeviceInfo:
    """One row of a device enumeration, as reported by the discovery tool."""

    device_id: str
    status: str
    manufacturer: str = ""
    model: str = ""
    android_version: str = ""

    @property
    def is_online(self) -> bool:
        return self.status == ONLINE_STATE


@dataclass(frozen=True)
class DeviceSnapshot:
    device_id: str
    display_name: str
    online: bool
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_info(cls, info: DeviceInfo) -> DeviceSnapshot:
        name = " ".join(part for part in (info.manufacturer, info.model) if part).strip()
        return cls(
            device_id=info.device_id,
            display_name=name or info.device_id,
            online=info.is_online,
            metadata={
                "manufacturer": info.manufacturer,
                "model": info.model,
                "android_version": info.android_version,
                "status": info.status,
            },
        )

    def as_absent(self) -> DeviceSnapshot:
        return replace(self, online=False, metadata={**self.metadata, "status": "absent"})
