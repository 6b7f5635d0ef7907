import asyncio
import sys
import threading

from dotenv import load_dotenv
from loguru import logger

from phone_agent_desk.app_config import load_json_config, parse_app_config, resolve_runtime_env
from phone_agent_desk.bootstrap import bootstrap_runtime

_PROMPT = "you> "


class _StdinReader:
    """Reads stdin on a daemon thread so agent output keeps flowing while we wait for input."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._thread.start()

    async def readline(self) -> str | None:
        return await self._queue.get()

    def _run(self) -> None:
        while True:
            try:
                line = sys.stdin.readline()
            except (OSError, ValueError):
                line = ""
            if not line:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
                return
            self._loop.call_soon_threadsafe(self._queue.put_nowait, line.rstrip("\n"))


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = await bootstrap_runtime(app, env)

    print("phone-agent-desk (type 'exit' to quit, '/help' for commands)")
    print(f"Agent: {' '.join(app.agent_command)} (model={app.model}, base_url={app.base_url})")
    print(f"Device refresh: every {app.refresh_interval_seconds:g}s via {app.adb_path}")
    if not runtime.api_keys.get():
        print(f"API key: not set (use /key <value> or {env.api_key_env_var})")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    reader = _StdinReader(asyncio.get_running_loop())
    reader.start()
    try:
        while True:
            print(_PROMPT, end="", flush=True)
            user_input = await reader.readline()
            if user_input is None:
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await runtime.console.handle_input(trimmed)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        try:
            await runtime.shutdown()
        except Exception as ex:
            logger.error(f"Shutdown error: {ex}")


def _install_transport_cleanup_hook() -> None:
    """Suppress 'unclosed transport' noise from asyncio subprocess cleanup on Windows.

    Agent pipes may already be closed when proactor transport __del__ methods
    run at exit, producing harmless tracebacks.
    """
    _default_hook = sys.unraisablehook

    def _hook(unraisable) -> None:
        obj_str = str(unraisable.object) if unraisable.object is not None else ""
        if "Transport" in obj_str and isinstance(unraisable.exc_value, (ResourceWarning, ValueError)):
            return  # suppress
        _default_hook(unraisable)

    sys.unraisablehook = _hook


def run() -> None:
    _install_transport_cleanup_hook()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
