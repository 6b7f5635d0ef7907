from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loguru import logger

from phone_agent_desk.conversation import utc_now
from phone_agent_desk.errors import SpawnError
from phone_agent_desk.process_handle import AgentProcess, OutputChannel

_DEFAULT_SETTLE_TIMEOUT = 5.0
_DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class ProcessHandle(Protocol):
    @property
    def pid(self) -> int: ...

    @property
    def is_running(self) -> bool: ...

    async def write(self, text: str) -> None: ...

    async def signal_interrupt(self) -> None: ...

    def kill(self) -> None: ...

    async def wait_closed(self, timeout: float | None = None) -> int | None: ...


Spawner = Callable[..., Awaitable[ProcessHandle]]


class SessionListener(Protocol):
    def on_output(self, channel: OutputChannel, text: str) -> None: ...

    def on_exit(self, code: int | None, requested: bool) -> None: ...


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    CLOSING = "closing"
    EXITED = "exited"


@dataclass(frozen=True)
class LaunchParams:
    executable: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None


@dataclass
class Session:
    device_id: str
    launch: LaunchParams
    handle: ProcessHandle | None = None
    state: SessionState = SessionState.STARTING
    started_at: str = field(default_factory=utc_now)
    return_code: int | None = None
    listener: SessionListener | None = field(default=None, repr=False, compare=False)


class SessionRegistry:
    """Owns the device id -> live agent session mapping.

    At most one session exists per device. ``connect`` on a device that already
    has a session kills the old process and waits for it to settle before the
    replacement is spawned.
    """

    def __init__(
        self,
        *,
        spawner: Spawner = AgentProcess.spawn,
        settle_timeout: float = _DEFAULT_SETTLE_TIMEOUT,
        shutdown_timeout: float = _DEFAULT_SHUTDOWN_TIMEOUT,
    ):
        self._spawner = spawner
        self._settle_timeout = settle_timeout
        self._shutdown_timeout = shutdown_timeout
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._torn_down = False

    def get(self, device_id: str) -> Session | None:
        session = self._sessions.get(device_id)
        if session is None or session.state is not SessionState.RUNNING:
            return None
        return session

    def is_live(self, device_id: str) -> bool:
        return self.get(device_id) is not None

    def live_device_ids(self) -> list[str]:
        return [device_id for device_id in self._sessions if self.is_live(device_id)]

    async def connect(self, device_id: str, params: LaunchParams, listener: SessionListener) -> Session:
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        async with lock:
            if self._torn_down:
                raise SpawnError(params.executable, "session registry has been shut down")
            if await self._close(device_id):
                logger.info(f"Replaced previous agent session for device {device_id}")

            session = Session(device_id=device_id, launch=params, listener=listener)

            def _on_output(channel: OutputChannel, text: str) -> None:
                # An abandoned process may keep writing; it no longer owns the transcript.
                if session.state is not SessionState.EXITED:
                    listener.on_output(channel, text)

            def _on_exit(code: int | None) -> None:
                self._handle_exit(session, code)

            handle = await self._spawner(
                params.executable,
                params.args,
                on_output=_on_output,
                on_exit=_on_exit,
                cwd=params.cwd,
                env=params.env,
            )
            session.handle = handle
            if self._torn_down:
                session.state = SessionState.CLOSING
                handle.kill()
                raise SpawnError(params.executable, "session registry was shut down during launch")
            if session.state is not SessionState.STARTING:
                # Exited before it could be registered.
                return session
            session.state = SessionState.RUNNING
            self._sessions[device_id] = session
            logger.info(f"Agent session started for device {device_id} (pid={handle.pid})")
            return session

    async def disconnect(self, device_id: str) -> bool:
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        async with lock:
            return await self._close(device_id)

    async def teardown_all(self) -> int:
        """Kill every live session. Runs once; later calls do nothing."""
        if self._torn_down:
            logger.warning("Session teardown requested more than once; ignoring")
            return 0
        self._torn_down = True

        sessions = list(self._sessions.values())
        for session in sessions:
            session.state = SessionState.CLOSING
            try:
                if session.handle is not None:
                    session.handle.kill()
            except Exception as ex:
                logger.error(f"Failed to kill agent for device {session.device_id}: {ex}")

        if sessions and self._shutdown_timeout > 0:
            waits = [s.handle.wait_closed(self._shutdown_timeout) for s in sessions if s.handle is not None]
            results = await asyncio.gather(*waits, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Agent teardown error: {result}")
            for session in sessions:
                if session.state is not SessionState.EXITED:
                    self._abandon(session)

        self._sessions.clear()
        logger.info(f"Session teardown complete ({len(sessions)} session(s) killed)")
        return len(sessions)

    async def _close(self, device_id: str) -> bool:
        session = self._sessions.get(device_id)
        if session is None:
            return False
        session.state = SessionState.CLOSING
        if session.handle is not None:
            session.handle.kill()
            await session.handle.wait_closed(self._settle_timeout)
        if session.state is not SessionState.EXITED:
            self._abandon(session)
        if self._sessions.get(device_id) is session:
            del self._sessions[device_id]
        return True

    def _abandon(self, session: Session) -> None:
        """Detach a process that outlived its kill; its later output and exit are dropped."""
        pid = session.handle.pid if session.handle is not None else None
        logger.warning(f"Agent for device {session.device_id} (pid={pid}) did not exit after kill; detaching it")
        self._handle_exit(session, None)

    def _handle_exit(self, session: Session, code: int | None) -> None:
        if session.state is SessionState.EXITED:
            logger.debug(f"Late exit (code={code}) from detached agent for device {session.device_id}")
            return
        requested = session.state is SessionState.CLOSING
        session.state = SessionState.EXITED
        session.return_code = code
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]
        if not requested:
            logger.warning(f"Agent for device {session.device_id} exited unexpectedly (code={code})")
        if session.listener is None:
            return
        try:
            session.listener.on_exit(code, requested)
        except Exception as ex:
            logger.error(f"Exit listener failed for device {session.device_id}: {ex}")
