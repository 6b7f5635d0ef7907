from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from loguru import logger

from phone_agent_desk.agent_config import AgentLaunchConfig
from phone_agent_desk.conversation import ConversationEntry, ConversationStore, Role
from phone_agent_desk.credentials import ApiKeyStore
from phone_agent_desk.devices import DeviceRegistry
from phone_agent_desk.errors import NotConnectedError, SpawnError, WriteError
from phone_agent_desk.events import (
    CONNECT_FAILED,
    CONNECTED,
    DISCONNECTED,
    ENTRY_APPENDED,
    SENDING_CHANGED,
    SessionEvents,
)
from phone_agent_desk.output_router import DeviceOutputStream, OutputRouter
from phone_agent_desk.process_handle import OutputChannel
from phone_agent_desk.sessions import Session, SessionRegistry


@dataclass
class _InFlightSend:
    seq: int
    session: Session
    timer: asyncio.TimerHandle | None = None


class _DeviceSessionListener:
    def __init__(self, controller: SessionController, stream: DeviceOutputStream):
        self._controller = controller
        self._stream = stream
        self.session: Session | None = None

    def on_output(self, channel: OutputChannel, text: str) -> None:
        if self._stream.feed(channel, text) and self.session is not None:
            self._controller._handle_session_output(self._stream.device_id, self.session)

    def on_exit(self, code: int | None, requested: bool) -> None:
        self._stream.close()
        self._controller._handle_session_exit(self._stream.device_id, self, code, requested)


class SessionController:
    """Command surface for per-device agent sessions.

    Replies are not correlated with individual sends: whichever agent output
    arrives first after a send clears that device's in-flight state, exactly
    like a terminal would. Each send still gets a sequence number so a stale
    timeout can never reset a newer request.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        router: OutputRouter,
        store: ConversationStore,
        events: SessionEvents,
        api_keys: ApiKeyStore,
        launch: AgentLaunchConfig,
        devices: DeviceRegistry | None = None,
        send_timeout_seconds: float = 5.0,
    ):
        self._registry = registry
        self._router = router
        self._store = store
        self._events = events
        self._api_keys = api_keys
        self._launch = launch
        self._devices = devices
        self._send_timeout_seconds = send_timeout_seconds
        self._in_flight: dict[str, _InFlightSend] = {}
        self._seq = itertools.count(1)
        self._shut_down = False

    def is_connected(self, device_id: str) -> bool:
        return self._registry.is_live(device_id)

    def is_sending(self, device_id: str) -> bool:
        return device_id in self._in_flight

    def history(self, device_id: str) -> list[ConversationEntry]:
        return self._store.history(device_id)

    async def connect(self, device_id: str) -> bool:
        if self._shut_down:
            self._connect_failed(device_id, "application is shutting down")
            return False
        if self._devices is not None and not self._devices.is_online(device_id):
            self._connect_failed(device_id, "device is offline or not attached")
            return False

        api_key = self._api_keys.get() or ""
        if not api_key:
            logger.warning(f"No API key configured; launching agent for {device_id} without one")

        listener = _DeviceSessionListener(self, self._router.open_stream(device_id))
        try:
            params = self._launch.build(device_id, api_key)
            session = await self._registry.connect(device_id, params, listener)
        except SpawnError as ex:
            self._connect_failed(device_id, ex.cause)
            return False
        listener.session = session

        if self._registry.get(device_id) is not session:
            self._connect_failed(device_id, "agent exited during startup")
            return False

        pid = session.handle.pid if session.handle is not None else None
        self._append_system(device_id, f"Connected to agent (pid={pid})")
        self._events.emit(CONNECTED, device_id, pid=pid)
        return True

    async def disconnect(self, device_id: str) -> bool:
        closed = await self._registry.disconnect(device_id)
        self._finish_send(device_id, "disconnected")
        return closed

    async def send(self, device_id: str, message: str) -> int:
        session = self._registry.get(device_id)
        if session is None or session.handle is None:
            self._append_system(device_id, "Not connected to an agent; message was not sent")
            raise NotConnectedError(device_id)

        text = " ".join(message.splitlines()).strip()
        if not text:
            raise ValueError("Message is empty")

        self._append(device_id, Role.USER, text)
        try:
            await session.handle.write(text + "\n")
        except WriteError as ex:
            self._append_system(device_id, f"Message was not delivered: {ex}")
            raise

        token = self._begin_send(device_id, session)
        logger.debug(f"Sent message #{token.seq} to device {device_id}")
        return token.seq

    async def cancel(self, device_id: str) -> bool:
        self._finish_send(device_id, "cancelled")
        session = self._registry.get(device_id)
        if session is None or session.handle is None:
            logger.debug(f"Cancel ignored for device {device_id}: no live session")
            return False
        await session.handle.signal_interrupt()
        self._append_system(device_id, "Current operation cancelled")
        return True

    async def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        for device_id in list(self._in_flight):
            self._finish_send(device_id, "shutdown")
        await self._registry.teardown_all()

    def _begin_send(self, device_id: str, session: Session) -> _InFlightSend:
        previous = self._in_flight.pop(device_id, None)
        if previous is not None and previous.timer is not None:
            previous.timer.cancel()

        token = _InFlightSend(seq=next(self._seq), session=session)
        if self._send_timeout_seconds > 0:
            loop = asyncio.get_running_loop()
            token.timer = loop.call_later(self._send_timeout_seconds, self._on_send_timeout, device_id, token)
        self._in_flight[device_id] = token
        self._events.emit(SENDING_CHANGED, device_id, sending=True, seq=token.seq)
        return token

    def _on_send_timeout(self, device_id: str, token: _InFlightSend) -> None:
        if self._in_flight.get(device_id) is token:
            self._finish_send(device_id, "timeout")

    def _finish_send(self, device_id: str, reason: str, *, session: Session | None = None) -> bool:
        token = self._in_flight.get(device_id)
        if token is None or (session is not None and token.session is not session):
            return False
        del self._in_flight[device_id]
        if token.timer is not None:
            token.timer.cancel()
        self._events.emit(SENDING_CHANGED, device_id, sending=False, seq=token.seq, reason=reason)
        return True

    def _handle_session_output(self, device_id: str, session: Session) -> None:
        self._finish_send(device_id, "output", session=session)

    def _handle_session_exit(
        self,
        device_id: str,
        listener: _DeviceSessionListener,
        code: int | None,
        requested: bool,
    ) -> None:
        if listener.session is not None:
            self._finish_send(device_id, "exited", session=listener.session)
        if requested:
            self._append_system(device_id, "Disconnected from agent")
        else:
            self._append_system(device_id, f"Agent exited unexpectedly (code {code})")
        self._events.emit(DISCONNECTED, device_id, code=code, requested=requested)

    def _connect_failed(self, device_id: str, cause: str) -> None:
        logger.error(f"Connection to agent for device {device_id} failed: {cause}")
        self._append_system(device_id, f"Connection failed: {cause}")
        self._events.emit(CONNECT_FAILED, device_id, cause=cause)

    def _append_system(self, device_id: str, text: str) -> None:
        self._append(device_id, Role.SYSTEM, text)

    def _append(self, device_id: str, role: Role, text: str) -> None:
        entry = self._store.append(device_id, role, text)
        self._events.emit(ENTRY_APPENDED, device_id, entry=entry)
