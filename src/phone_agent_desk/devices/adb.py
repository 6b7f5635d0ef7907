from __future__ import annotations

import asyncio
import re

from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from phone_agent_desk.devices.models import DeviceInfo
from phone_agent_desk.errors import DiscoveryError

_GETPROP_LINE = re.compile(r"^\[(?P<key>[^\]]+)\]:\s*\[(?P<value>.*)\]\s*$")

_PROP_MANUFACTURER = "ro.product.manufacturer"
_PROP_MODEL = "ro.product.model"
_PROP_ANDROID_VERSION = "ro.build.version.release"


class AdbCommandError(Exception):
    pass


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"adb call failed ({exc}). Retrying in {wait:.1f}s (attempt {attempt}/3)...")


def parse_adb_devices(output: str) -> list[DeviceInfo]:
    """Parse ``adb devices -l`` output. Unknown lines are skipped."""
    devices: dict[str, DeviceInfo] = {}
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("*") or line.lower().startswith("list of devices"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        attrs: dict[str, str] = {}
        for token in parts[2:]:
            key, sep, value = token.partition(":")
            if sep:
                attrs[key] = value
        devices[serial] = DeviceInfo(
            device_id=serial,
            status=state,
            model=attrs.get("model", "").replace("_", " "),
        )
    return list(devices.values())


def parse_getprop(output: str) -> dict[str, str]:
    props: dict[str, str] = {}
    for line in output.splitlines():
        match = _GETPROP_LINE.match(line.strip())
        if match:
            props[match.group("key")] = match.group("value")
    return props


class AdbDeviceEnumerator:
    def __init__(self, adb_path: str = "adb", timeout_seconds: float = 10.0):
        self._adb_path = adb_path
        self._timeout_seconds = timeout_seconds

    async def list_devices(self) -> list[DeviceInfo]:
        try:
            output = await self._list_raw()
        except (AdbCommandError, OSError) as ex:
            raise DiscoveryError(f"adb device enumeration failed: {ex}") from ex

        devices: list[DeviceInfo] = []
        for device in parse_adb_devices(output):
            if device.is_online:
                device = await self._with_properties(device)
            devices.append(device)
        return devices

    @retry(
        retry=retry_if_exception_type(AdbCommandError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        stop=stop_after_attempt(3),
        before_sleep=_on_retry,
        reraise=True,
    )
    async def _list_raw(self) -> str:
        return await self._run("devices", "-l")

    async def _with_properties(self, device: DeviceInfo) -> DeviceInfo:
        try:
            props = parse_getprop(await self._run("-s", device.device_id, "shell", "getprop"))
        except (AdbCommandError, OSError) as ex:
            logger.debug(f"getprop failed for {device.device_id}: {ex}")
            return device
        return DeviceInfo(
            device_id=device.device_id,
            status=device.status,
            manufacturer=props.get(_PROP_MANUFACTURER, ""),
            model=props.get(_PROP_MODEL, device.model),
            android_version=props.get(_PROP_ANDROID_VERSION, ""),
        )

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self._adb_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            try:
                await asyncio.wait_for(proc.communicate(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                pass
            raise AdbCommandError(f"timed out after {self._timeout_seconds}s") from None

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise AdbCommandError(detail)
        return stdout.decode(errors="replace")
