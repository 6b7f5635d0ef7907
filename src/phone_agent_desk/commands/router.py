from __future__ import annotations

from collections.abc import Awaitable, Callable

Handler = Callable[[str], Awaitable[None]]


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_devices: Handler,
        on_select: Handler,
        on_connect: Handler,
        on_disconnect: Handler,
        on_cancel: Handler,
        on_history: Handler,
        on_key: Handler,
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_unknown = on_unknown
        self._handlers: dict[str, Handler] = {
            "/devices": on_devices,
            "/select": on_select,
            "/connect": on_connect,
            "/disconnect": on_disconnect,
            "/cancel": on_cancel,
            "/history": on_history,
            "/key": on_key,
        }

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        name, _, argument = trimmed.partition(" ")
        if name == "/help":
            await self._on_help()
            return True
        handler = self._handlers.get(name)
        if handler is not None:
            await handler(argument.strip())
            return True

        self._on_unknown(trimmed)
        return True
