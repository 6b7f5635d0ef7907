from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

CONNECTED = "connected"
CONNECT_FAILED = "connect_failed"
DISCONNECTED = "disconnected"
ENTRY_APPENDED = "entry_appended"
SENDING_CHANGED = "sending_changed"
DEVICES_UPDATED = "devices_updated"


@dataclass(frozen=True)
class SessionEvent:
    kind: str
    device_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[SessionEvent], None]


class SessionEvents:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def emit(self, kind: str, device_id: str | None = None, **payload: Any) -> None:
        event = SessionEvent(kind=kind, device_id=device_id, payload=payload)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as ex:
                logger.warning(f"Event subscriber failed on '{kind}': {ex}")
