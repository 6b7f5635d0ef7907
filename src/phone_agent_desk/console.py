from __future__ import annotations

from loguru import logger

from phone_agent_desk.commands.router import CommandRouter
from phone_agent_desk.conversation import ConversationStore
from phone_agent_desk.credentials import ApiKeyStore
from phone_agent_desk.devices import DeviceRegistry, DeviceSnapshot
from phone_agent_desk.errors import NotConnectedError, WriteError
from phone_agent_desk.events import DEVICES_UPDATED, ENTRY_APPENDED, SessionEvent, SessionEvents
from phone_agent_desk.services.session_controller import SessionController
from phone_agent_desk.services.transcript_formatter import TranscriptFormatter


class DeskConsole:
    """Line-oriented front-end: one selected device, slash commands for the rest."""

    _LINE_PREFIX = "desk> "

    def __init__(
        self,
        *,
        controller: SessionController,
        devices: DeviceRegistry,
        store: ConversationStore,
        events: SessionEvents,
        api_keys: ApiKeyStore,
    ):
        self._controller = controller
        self._devices = devices
        self._store = store
        self._api_keys = api_keys
        self._active_device_id: str | None = None
        self._last_visible: set[str] = set()
        self._formatter = TranscriptFormatter(line_prefix=self._LINE_PREFIX)
        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_devices=self._handle_devices_command,
            on_select=self._handle_select_command,
            on_connect=self._handle_connect_command,
            on_disconnect=self._handle_disconnect_command,
            on_cancel=self._handle_cancel_command,
            on_history=self._handle_history_command,
            on_key=self._handle_key_command,
            on_unknown=self._on_unknown_command,
        )
        events.subscribe(self._on_event)

    @property
    def active_device_id(self) -> str | None:
        return self._active_device_id

    async def handle_input(self, user_message: str) -> None:
        if await self._command_router.try_handle(user_message):
            return

        if self._active_device_id is None:
            print(f"{self._LINE_PREFIX}Select a device first (/devices, /select <id>)")
            return
        try:
            await self._controller.send(self._active_device_id, user_message)
        except NotConnectedError:
            print(f"{self._LINE_PREFIX}Use /connect to start an agent for this device")
        except WriteError as ex:
            logger.warning(f"Send to {self._active_device_id} failed: {ex}")
        except ValueError:
            return

    def _on_event(self, event: SessionEvent) -> None:
        if event.kind == ENTRY_APPENDED and event.device_id == self._active_device_id:
            entry = event.payload["entry"]
            print(self._formatter.format_entry(entry))
        elif event.kind == DEVICES_UPDATED:
            visible = {d.device_id for d in event.payload.get("devices", [])}
            if visible != self._last_visible:
                print(f"{self._LINE_PREFIX}Devices updated: {len(visible)} attached")
            self._last_visible = visible

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /devices")
        print(f"{self._LINE_PREFIX}- /select <id-or-number>")
        print(f"{self._LINE_PREFIX}- /connect [id-or-number]")
        print(f"{self._LINE_PREFIX}- /disconnect [id-or-number]")
        print(f"{self._LINE_PREFIX}- /cancel")
        print(f"{self._LINE_PREFIX}- /history [id-or-number]")
        print(f"{self._LINE_PREFIX}- /key [api-key]")
        print(f"{self._LINE_PREFIX}Anything else is sent to the selected device's agent.")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    def _listed_devices(self) -> list[DeviceSnapshot]:
        listed = self._devices.devices()
        seen = {d.device_id for d in listed}
        # Absent devices with a transcript stay listed so their history is reachable.
        for device_id in self._store.device_ids():
            if device_id in seen:
                continue
            snapshot = self._devices.get(device_id)
            if snapshot is not None:
                listed.append(snapshot)
        return listed

    def _resolve_device(self, argument: str) -> str | None:
        target = argument.strip()
        if not target:
            return self._active_device_id
        listed = self._listed_devices()
        if target.isdigit() and 1 <= int(target) <= len(listed):
            return listed[int(target) - 1].device_id
        for snapshot in listed:
            if snapshot.device_id == target:
                return target
        return None

    async def _handle_devices_command(self, argument: str) -> None:
        listed = self._listed_devices()
        if not listed:
            print(f"{self._LINE_PREFIX}No devices detected. Check the USB connection and that USB debugging is on.")
            return
        print(f"{self._LINE_PREFIX}Devices:")
        for index, snapshot in enumerate(listed, start=1):
            print(
                self._formatter.format_device_line(
                    index,
                    snapshot,
                    active_device_id=self._active_device_id,
                    connected=self._controller.is_connected(snapshot.device_id),
                    message_count=self._store.count(snapshot.device_id),
                )
            )

    async def _handle_select_command(self, argument: str) -> None:
        if not argument:
            print(f"{self._LINE_PREFIX}Usage: /select <id-or-number>")
            return
        device_id = self._resolve_device(argument)
        if device_id is None:
            print(f"{self._LINE_PREFIX}Device not found: {argument}")
            return
        self._active_device_id = device_id
        snapshot = self._devices.get(device_id)
        name = snapshot.display_name if snapshot is not None else device_id
        print(f"{self._LINE_PREFIX}Selected {name} ({device_id})")
        await self._handle_history_command("")

    async def _handle_connect_command(self, argument: str) -> None:
        device_id = self._resolve_device(argument)
        if device_id is None:
            print(f"{self._LINE_PREFIX}Usage: /connect [id-or-number] (or /select a device first)")
            return
        if self._active_device_id is None:
            self._active_device_id = device_id
        await self._controller.connect(device_id)

    async def _handle_disconnect_command(self, argument: str) -> None:
        device_id = self._resolve_device(argument)
        if device_id is None:
            print(f"{self._LINE_PREFIX}Usage: /disconnect [id-or-number]")
            return
        if not await self._controller.disconnect(device_id):
            print(f"{self._LINE_PREFIX}No agent running for {device_id}")

    async def _handle_cancel_command(self, argument: str) -> None:
        device_id = self._resolve_device(argument)
        if device_id is not None:
            await self._controller.cancel(device_id)

    async def _handle_history_command(self, argument: str) -> None:
        device_id = self._resolve_device(argument)
        if device_id is None:
            print(f"{self._LINE_PREFIX}Usage: /history [id-or-number]")
            return
        entries = self._controller.history(device_id)
        if not entries:
            print(f"{self._LINE_PREFIX}No messages yet for {device_id}")
            return
        for entry in entries:
            print(self._formatter.format_entry(entry))

    async def _handle_key_command(self, argument: str) -> None:
        if not argument:
            state = "set" if self._api_keys.get() else "not set"
            print(f"{self._LINE_PREFIX}API key is {state}. Usage: /key <api-key>")
            return
        self._api_keys.set(argument)
        print(f"{self._LINE_PREFIX}API key saved; it is used for the next /connect")
