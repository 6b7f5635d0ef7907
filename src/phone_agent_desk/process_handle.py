from __future__ import annotations

import asyncio
import codecs
import contextlib
import platform
import subprocess
from collections.abc import Callable
from enum import Enum
from typing import Any

from loguru import logger

from phone_agent_desk.errors import SpawnError, WriteError

_IS_WINDOWS = platform.system() == "Windows"
_READ_CHUNK_BYTES = 4096
_DRAIN_TIMEOUT = 1.0

INTERRUPT_BYTE = b"\x03"


class OutputChannel(str, Enum):
    PRIMARY = "stdout"
    DIAGNOSTIC = "stderr"


OutputCallback = Callable[[OutputChannel, str], None]
ExitCallback = Callable[[int | None], None]


class AgentProcess:
    """One spawned agent executable with piped stdin/stdout/stderr.

    Output chunks are delivered to ``on_output`` in the order the process wrote
    them, per channel. ``on_exit`` fires exactly once, after both channels are
    drained; nothing is delivered after it.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        executable: str,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        self._proc = proc
        self._executable = executable
        self._on_output = on_output
        self._on_exit = on_exit
        self._exited = asyncio.Event()
        self._return_code: int | None = None
        self._kill_requested = False
        self._readers = [
            asyncio.create_task(self._pump(proc.stdout, OutputChannel.PRIMARY)),
            asyncio.create_task(self._pump(proc.stderr, OutputChannel.DIAGNOSTIC)),
        ]
        self._waiter = asyncio.create_task(self._wait())

    @classmethod
    async def spawn(
        cls,
        executable: str,
        args: list[str],
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> AgentProcess:
        kwargs: dict[str, Any] = {}
        if _IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Keep terminal Ctrl+C away from the agents; they are interrupted through stdin.
            kwargs["start_new_session"] = True
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                **kwargs,
            )
        except (OSError, ValueError) as ex:
            raise SpawnError(executable, str(ex)) from ex

        logger.debug(f"Spawned agent '{executable}' (pid={proc.pid})")
        return cls(proc, executable=executable, on_output=on_output, on_exit=on_exit)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def is_running(self) -> bool:
        return not self._exited.is_set() and not self._kill_requested and self._proc.returncode is None

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    @property
    def return_code(self) -> int | None:
        return self._return_code

    async def write(self, text: str) -> None:
        stdin = self._proc.stdin
        if not self.is_running or stdin is None or stdin.is_closing():
            raise WriteError(f"Agent process {self.pid} is not running")
        try:
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as ex:
            raise WriteError(f"Agent process {self.pid} closed its input: {ex}") from ex

    async def signal_interrupt(self) -> None:
        """Ask the agent to stop its current operation. The process keeps running."""
        stdin = self._proc.stdin
        if not self.is_running or stdin is None or stdin.is_closing():
            return
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.write(INTERRUPT_BYTE)
            await stdin.drain()

    def kill(self) -> None:
        if self._kill_requested or self._exited.is_set():
            return
        self._kill_requested = True
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass
        logger.debug(f"Kill issued to agent pid={self.pid}")

    async def wait_closed(self, timeout: float | None = None) -> int | None:
        try:
            await asyncio.wait_for(asyncio.shield(self._exited.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Agent pid={self.pid} did not exit within {timeout}s")
        return self._return_code

    async def _pump(self, stream: asyncio.StreamReader | None, channel: OutputChannel) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = await stream.read(_READ_CHUNK_BYTES)
            except (ConnectionResetError, BrokenPipeError):
                chunk = b""
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._deliver(channel, text)
            if not chunk:
                return

    def _deliver(self, channel: OutputChannel, text: str) -> None:
        try:
            self._on_output(channel, text)
        except Exception as ex:
            logger.error(f"Output handler failed for agent pid={self.pid}: {ex}")

    async def _wait(self) -> None:
        code = await self._proc.wait()
        # A grandchild may still hold the pipes open; do not wait on it forever.
        _, pending = await asyncio.wait(self._readers, timeout=_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._proc.stdin is not None:
            self._proc.stdin.close()

        self._return_code = code
        self._exited.set()
        logger.debug(f"Agent '{self._executable}' pid={self.pid} exited with code {code}")
        try:
            self._on_exit(code)
        except Exception as ex:
            logger.error(f"Exit handler failed for agent pid={self.pid}: {ex}")
