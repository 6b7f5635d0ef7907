from __future__ import annotations

from typing import Protocol

from loguru import logger

from phone_agent_desk.devices.models import DeviceInfo, DeviceSnapshot
from phone_agent_desk.errors import DiscoveryError
from phone_agent_desk.events import DEVICES_UPDATED, SessionEvents


class DeviceEnumerator(Protocol):
    async def list_devices(self) -> list[DeviceInfo]: ...


class DeviceRegistry:
    """Latest discovery snapshot plus every device seen since startup.

    Each refresh replaces the visible list wholesale. Devices that drop out are
    kept as absent so their identity (and the transcripts keyed by it) stays
    resolvable when they come back.
    """

    def __init__(self, enumerator: DeviceEnumerator, events: SessionEvents | None = None):
        self._enumerator = enumerator
        self._events = events
        self._visible: dict[str, DeviceSnapshot] = {}
        self._known: dict[str, DeviceSnapshot] = {}

    async def refresh(self) -> list[DeviceSnapshot]:
        try:
            infos = await self._enumerator.list_devices()
        except DiscoveryError as ex:
            logger.warning(f"Device discovery failed: {ex}")
            infos = []
        except Exception as ex:
            logger.error(f"Unexpected device discovery error: {ex}")
            infos = []
        return self.apply([DeviceSnapshot.from_info(info) for info in infos])

    def apply(self, snapshots: list[DeviceSnapshot]) -> list[DeviceSnapshot]:
        visible = {snapshot.device_id: snapshot for snapshot in snapshots}
        for device_id in self._visible:
            if device_id not in visible:
                logger.info(f"Device {device_id} is no longer reported")
        for device_id in visible:
            if device_id not in self._known:
                logger.info(f"Discovered device {device_id}")

        self._visible = visible
        for device_id, snapshot in list(self._known.items()):
            if device_id not in visible:
                self._known[device_id] = snapshot.as_absent()
        self._known.update(visible)

        if self._events is not None:
            self._events.emit(DEVICES_UPDATED, devices=list(visible.values()))
        return list(visible.values())

    def devices(self) -> list[DeviceSnapshot]:
        return list(self._visible.values())

    def get(self, device_id: str) -> DeviceSnapshot | None:
        return self._known.get(device_id)

    def is_visible(self, device_id: str) -> bool:
        return device_id in self._visible

    def is_online(self, device_id: str) -> bool:
        snapshot = self._visible.get(device_id)
        return snapshot is not None and snapshot.online
