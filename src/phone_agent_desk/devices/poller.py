from __future__ import annotations

import asyncio

from loguru import logger

from phone_agent_desk.devices.registry import DeviceRegistry

_MIN_INTERVAL_SECONDS = 0.05


class DiscoveryPoller:
    def __init__(self, registry: DeviceRegistry, *, interval_seconds: float = 30.0):
        self._registry = registry
        self._interval_seconds = max(_MIN_INTERVAL_SECONDS, interval_seconds)
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            devices = await self._registry.refresh()
            logger.debug(f"Device refresh: {len(devices)} device(s) visible")
            await asyncio.sleep(self._interval_seconds)
