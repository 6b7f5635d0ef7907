import asyncio
import unittest

from phone_agent_desk.agent_config import AgentLaunchConfig
from phone_agent_desk.conversation import ConversationStore, Role
from phone_agent_desk.credentials import MemoryApiKeyStore
from phone_agent_desk.devices import DeviceRegistry, DeviceSnapshot
from phone_agent_desk.errors import NotConnectedError
from phone_agent_desk.events import CONNECT_FAILED, CONNECTED, DISCONNECTED, SENDING_CHANGED, SessionEvents
from phone_agent_desk.output_router import OutputRouter
from phone_agent_desk.services.session_controller import SessionController
from phone_agent_desk.sessions import SessionRegistry
from tests.fakes import FAKE_AGENT, PYTHON, FakeSpawner, wait_until


class _NoDevices:
    async def list_devices(self):
        return []


def _build(spawner, *, devices=None, send_timeout: float = 0.0, command=None, settle_timeout: float = 1.0):
    store = ConversationStore()
    events = SessionEvents()
    controller = SessionController(
        registry=SessionRegistry(spawner=spawner, settle_timeout=settle_timeout, shutdown_timeout=1.0),
        router=OutputRouter(store, events),
        store=store,
        events=events,
        api_keys=MemoryApiKeyStore("secret"),
        launch=AgentLaunchConfig(command=command or ["agent"]),
        devices=devices,
        send_timeout_seconds=send_timeout,
    )
    return controller, store, events


class SessionControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.spawner = FakeSpawner()
        self.controller, self.store, self.events = _build(self.spawner)
        self.seen: list = []
        self.events.subscribe(self.seen.append)

    def _kinds(self) -> list[str]:
        return [e.kind for e in self.seen if e.kind != "entry_appended"]

    def test_send_writes_line_and_reply_becomes_agent_entry(self) -> None:
        async def scenario() -> None:
            self.assertTrue(await self.controller.connect("dev1"))
            await self.controller.send("dev1", "hello")
            handle = self.spawner.handles[0]
            self.assertEqual(["hello\n"], handle.writes)
            handle.emit("> ")
            handle.emit("AI: hi\n")

        asyncio.run(scenario())
        agent_entries = [e for e in self.store.history("dev1") if e.role is Role.AGENT]
        self.assertEqual(["AI: hi"], [e.text for e in agent_entries])
        self.assertEqual("dev1", agent_entries[0].device_id)

    def test_launch_arguments_carry_device_and_key(self) -> None:
        asyncio.run(self.controller.connect("dev1"))
        executable, args = self.spawner.calls[0]
        self.assertEqual("agent", executable)
        self.assertEqual("dev1", args[args.index("--device-id") + 1])
        self.assertEqual("secret", args[args.index("--apikey") + 1])

    def test_send_without_session_fails_and_spawns_nothing(self) -> None:
        async def scenario() -> None:
            with self.assertRaises(NotConnectedError):
                await self.controller.send("dev1", "hello")

        asyncio.run(scenario())
        self.assertEqual([], self.spawner.calls)
        history = self.store.history("dev1")
        self.assertEqual([Role.SYSTEM], [e.role for e in history])

    def test_blank_message_without_session_is_not_connected(self) -> None:
        async def scenario() -> None:
            with self.assertRaises(NotConnectedError):
                await self.controller.send("dev1", "   ")

        asyncio.run(scenario())
        self.assertEqual([], self.spawner.calls)

    def test_blank_message_with_session_is_rejected(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev1")
            with self.assertRaises(ValueError):
                await self.controller.send("dev1", " \n ")
            self.assertFalse(self.controller.is_sending("dev1"))

        asyncio.run(scenario())
        self.assertEqual([], self.spawner.handles[0].writes)

    def test_replaced_process_output_never_reaches_new_session(self) -> None:
        controller, store, events = _build(self.spawner, settle_timeout=0.1)
        disconnects: list = []
        events.subscribe(lambda e: disconnects.append(e.payload) if e.kind == DISCONNECTED else None)

        async def scenario() -> None:
            await controller.connect("dev1")
            old, = self.spawner.handles
            old.ignore_kill = True
            self.assertTrue(await controller.connect("dev1"))
            await controller.send("dev1", "hello")

            old.emit("stale line from replaced process\n")
            self.assertTrue(controller.is_sending("dev1"))
            old.finish(0)

            self.spawner.handles[1].emit("AI: hello\n")
            self.assertFalse(controller.is_sending("dev1"))

        asyncio.run(scenario())
        agent_texts = [e.text for e in store.history("dev1") if e.role is Role.AGENT]
        self.assertEqual(["AI: hello"], agent_texts)
        self.assertEqual([{"code": None, "requested": True}], disconnects)

    def test_cancel_without_session_is_silent(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev2")
            self.assertFalse(await self.controller.cancel("dev1"))
            self.assertTrue(self.controller.is_connected("dev2"))

        asyncio.run(scenario())
        self.assertEqual(0, self.spawner.handles[0].interrupts)
        self.assertEqual([], self.store.history("dev1"))

    def test_cancel_interrupts_and_clears_sending_state(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev1")
            await self.controller.send("dev1", "open settings")
            self.assertTrue(self.controller.is_sending("dev1"))
            self.assertTrue(await self.controller.cancel("dev1"))
            self.assertFalse(self.controller.is_sending("dev1"))
            self.assertTrue(self.controller.is_connected("dev1"))

        asyncio.run(scenario())
        self.assertEqual(1, self.spawner.handles[0].interrupts)
        self.assertEqual("Current operation cancelled", self.store.history("dev1")[-1].text)

    def test_first_output_clears_sending_state(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev1")
            await self.controller.send("dev1", "hello")
            self.spawner.handles[0].emit("AI: working\n")
            self.assertFalse(self.controller.is_sending("dev1"))

        asyncio.run(scenario())
        changes = [e.payload for e in self.seen if e.kind == SENDING_CHANGED]
        self.assertEqual([True, False], [c["sending"] for c in changes])
        self.assertEqual("output", changes[-1]["reason"])

    def test_stale_timeout_does_not_reset_newer_send(self) -> None:
        controller, _, events = _build(self.spawner, send_timeout=0.3)
        reasons: list[str] = []
        events.subscribe(lambda e: reasons.append(e.payload.get("reason")) if e.kind == SENDING_CHANGED else None)

        async def scenario() -> None:
            await controller.connect("dev1")
            await controller.send("dev1", "first")
            await asyncio.sleep(0.2)
            await controller.send("dev1", "second")
            await asyncio.sleep(0.2)
            self.assertTrue(controller.is_sending("dev1"))
            self.assertTrue(await wait_until(lambda: not controller.is_sending("dev1"), timeout=1.0))

        asyncio.run(scenario())
        self.assertEqual([None, None, "timeout"], reasons)

    def test_reconnect_records_disconnect_then_connect(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev1")
            await self.controller.connect("dev1")

        asyncio.run(scenario())
        self.assertEqual([CONNECTED, DISCONNECTED, CONNECTED], self._kinds())
        self.assertEqual(1, len(self.spawner.live_handles()))

    def test_spawn_failure_becomes_connect_failed_entry(self) -> None:
        self.spawner.fail_with = "No such file or directory"

        async def scenario() -> bool:
            return await self.controller.connect("dev1")

        self.assertFalse(asyncio.run(scenario()))
        self.assertEqual([CONNECT_FAILED], self._kinds())
        self.assertIn("No such file", self.store.history("dev1")[-1].text)

    def test_offline_device_is_not_eligible(self) -> None:
        devices = DeviceRegistry(_NoDevices())
        devices.apply([
            DeviceSnapshot("dev1", "Pixel", online=False),
            DeviceSnapshot("dev2", "Galaxy", online=True),
        ])
        controller, store, _ = _build(self.spawner, devices=devices)

        async def scenario() -> None:
            self.assertFalse(await controller.connect("dev1"))
            self.assertFalse(await controller.connect("ghost"))
            self.assertTrue(await controller.connect("dev2"))

        asyncio.run(scenario())
        self.assertEqual(1, len(self.spawner.calls))

    def test_unexpected_exit_is_noted_in_that_device_only(self) -> None:
        async def scenario() -> None:
            await self.controller.connect("dev1")
            await self.controller.connect("dev2")
            self.spawner.handles[0].finish(1)
            self.assertFalse(self.controller.is_connected("dev1"))
            self.assertTrue(self.controller.is_connected("dev2"))

        asyncio.run(scenario())
        self.assertEqual("Agent exited unexpectedly (code 1)", self.store.history("dev1")[-1].text)
        self.assertNotIn("exited", self.store.history("dev2")[-1].text)

    def test_shutdown_kills_all_sessions_once(self) -> None:
        async def scenario() -> None:
            for device_id in ("a", "b", "c"):
                await self.controller.connect(device_id)
            await self.controller.shutdown()
            await self.controller.shutdown()
            self.assertFalse(await self.controller.connect("d"))

        asyncio.run(scenario())
        self.assertEqual([], self.spawner.live_handles())
        self.assertEqual(3, sum(1 for e in self.seen if e.kind == DISCONNECTED))


class SessionControllerProcessTests(unittest.TestCase):
    def test_round_trip_through_real_agent_process(self) -> None:
        controller, store, events = _build_real()
        disconnected: list = []
        events.subscribe(lambda e: disconnected.append(e) if e.kind == DISCONNECTED else None)

        async def scenario() -> None:
            self.assertTrue(await controller.connect("dev1"))
            await controller.send("dev1", "hello")
            self.assertTrue(await wait_until(lambda: any(e.text == "AI: hello" for e in store.history("dev1"))))
            await controller.send("dev1", "count 5")
            self.assertTrue(await wait_until(lambda: any(e.text == "line 5" for e in store.history("dev1"))))
            await controller.shutdown()

        asyncio.run(scenario())
        agent_texts = [e.text for e in store.history("dev1") if e.role is Role.AGENT]
        self.assertEqual(["AI: hello", "line 1", "line 2", "line 3", "line 4", "line 5"], agent_texts)
        self.assertEqual(1, len(disconnected))


def _build_real():
    store = ConversationStore()
    events = SessionEvents()
    controller = SessionController(
        registry=SessionRegistry(settle_timeout=5.0, shutdown_timeout=5.0),
        router=OutputRouter(store, events),
        store=store,
        events=events,
        api_keys=MemoryApiKeyStore(),
        launch=AgentLaunchConfig(command=[PYTHON, FAKE_AGENT]),
        send_timeout_seconds=0,
    )
    return controller, store, events


if __name__ == "__main__":
    unittest.main()
