from __future__ import annotations

from dataclasses import dataclass

from phone_agent_desk.agent_config import AgentLaunchConfig
from phone_agent_desk.app_config import AppConfig, RuntimeEnv
from phone_agent_desk.console import DeskConsole
from phone_agent_desk.conversation import ConversationStore
from phone_agent_desk.credentials import FileApiKeyStore
from phone_agent_desk.devices import AdbDeviceEnumerator, DeviceRegistry, DiscoveryPoller
from phone_agent_desk.events import SessionEvents
from phone_agent_desk.logging_config import setup_logging
from phone_agent_desk.output_router import OutputRouter, PromptMarkerClassifier
from phone_agent_desk.services.session_controller import SessionController
from phone_agent_desk.sessions import SessionRegistry


@dataclass
class AppRuntime:
    controller: SessionController
    devices: DeviceRegistry
    poller: DiscoveryPoller
    console: DeskConsole
    api_keys: FileApiKeyStore
    log_descriptions: list[str]

    async def shutdown(self) -> None:
        await self.poller.stop()
        await self.controller.shutdown()


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    events = SessionEvents()
    store = ConversationStore()
    router = OutputRouter(store, events, PromptMarkerClassifier(app.prompt_markers))
    registry = SessionRegistry(
        settle_timeout=app.session_settle_timeout_seconds,
        shutdown_timeout=app.shutdown_timeout_seconds,
    )
    devices = DeviceRegistry(AdbDeviceEnumerator(app.adb_path), events)
    api_keys = FileApiKeyStore(app.credentials_path, fallback_key=env.api_key)

    controller = SessionController(
        registry=registry,
        router=router,
        store=store,
        events=events,
        api_keys=api_keys,
        launch=AgentLaunchConfig(
            command=app.agent_command,
            base_url=app.base_url,
            model=app.model,
            lang=app.lang,
            working_directory=app.agent_working_directory,
        ),
        devices=devices,
        send_timeout_seconds=app.send_timeout_seconds,
    )
    console = DeskConsole(
        controller=controller,
        devices=devices,
        store=store,
        events=events,
        api_keys=api_keys,
    )

    poller = DiscoveryPoller(devices, interval_seconds=app.refresh_interval_seconds)
    await poller.start()

    return AppRuntime(
        controller=controller,
        devices=devices,
        poller=poller,
        console=console,
        api_keys=api_keys,
        log_descriptions=log_descriptions,
    )
