from phone_agent_desk.devices.adb import AdbDeviceEnumerator
from phone_agent_desk.devices.models import DeviceInfo, DeviceSnapshot
from phone_agent_desk.devices.poller import DiscoveryPoller
from phone_agent_desk.devices.registry import DeviceEnumerator, DeviceRegistry

__all__ = [
    "AdbDeviceEnumerator",
    "DeviceEnumerator",
    "DeviceInfo",
    "DeviceRegistry",
    "DeviceSnapshot",
    "DiscoveryPoller",
]
