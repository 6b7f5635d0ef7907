import asyncio
import contextlib
import sys
import time
from pathlib import Path

from phone_agent_desk.errors import SpawnError
from phone_agent_desk.process_handle import OutputChannel

FAKE_AGENT = str(Path(__file__).resolve().parent / "fixtures" / "fake_agent.py")
PYTHON = sys.executable


async def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


class FakeHandle:
    def __init__(self, name: str, log: list, on_output, on_exit):
        self.name = name
        self.pid = 1000 + len(log)
        self.writes: list[str] = []
        self.interrupts = 0
        self.kill_calls = 0
        self._log = log
        self._on_output = on_output
        self._on_exit = on_exit
        self._exited = asyncio.Event()
        self._killed = False
        self.return_code = None
        self.ignore_kill = False

    @property
    def is_running(self) -> bool:
        return not self._exited.is_set() and not self._killed

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    async def write(self, text: str) -> None:
        self.writes.append(text)

    async def signal_interrupt(self) -> None:
        self.interrupts += 1

    def kill(self) -> None:
        self.kill_calls += 1
        if self._killed or self._exited.is_set():
            return
        self._killed = True
        self._log.append(("kill", self.name))
        if self.ignore_kill:
            return
        asyncio.get_running_loop().call_soon(self.finish, -9)

    async def wait_closed(self, timeout=None):
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._exited.wait(), timeout)
        return self.return_code

    def emit(self, text: str, channel: OutputChannel = OutputChannel.PRIMARY) -> None:
        self._on_output(channel, text)

    def finish(self, code) -> None:
        if self._exited.is_set():
            return
        self.return_code = code
        self._exited.set()
        self._log.append(("exited", self.name))
        self._on_exit(code)


class FakeSpawner:
    def __init__(self) -> None:
        self.log: list = []
        self.handles: list[FakeHandle] = []
        self.calls: list[tuple[str, list[str]]] = []
        self.fail_with: str | None = None

    def live_handles(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.has_exited]

    async def __call__(self, executable, args, *, on_output, on_exit, cwd=None, env=None):
        self.calls.append((executable, list(args)))
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise SpawnError(executable, self.fail_with)
        handle = FakeHandle(f"h{len(self.handles) + 1}", self.log, on_output, on_exit)
        self.handles.append(handle)
        self.log.append(("spawned", handle.name))
        return handle


class RecordingListener:
    def __init__(self) -> None:
        self.output: list[tuple[OutputChannel, str]] = []
        self.exits: list[tuple[int | None, bool]] = []

    def on_output(self, channel: OutputChannel, text: str) -> None:
        self.output.append((channel, text))

    def on_exit(self, code, requested: bool) -> None:
        self.exits.append((code, requested))
