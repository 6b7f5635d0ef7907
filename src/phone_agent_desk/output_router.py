from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Protocol, runtime_checkable

from loguru import logger

from phone_agent_desk.conversation import ConversationEntry, ConversationStore, Role
from phone_agent_desk.events import ENTRY_APPENDED, SessionEvents
from phone_agent_desk.process_handle import OutputChannel

DEFAULT_PROMPT_MARKERS = (">",)


@runtime_checkable
class LineClassifier(Protocol):
    def strip_prompt(self, unit: str) -> str: ...

    def is_prompt(self, unit: str) -> bool: ...


class PromptMarkerClassifier:
    """Removes interactive-prompt noise from completed output lines.

    The agent prints its prompt (``"> "``) without a newline and the reply then
    lands on the same line, so a leading marker followed by whitespace is a
    prompt token to strip, not a reason to drop the line. A marker glued to
    text (``">waiting"``) marks the whole line as prompt output.
    """

    def __init__(self, markers: Iterable[str] = DEFAULT_PROMPT_MARKERS):
        # Longest first so ">>>" is not read as ">" followed by ">>".
        cleaned = {m for m in (str(m).strip() for m in markers) if m}
        self._markers = tuple(sorted(cleaned, key=len, reverse=True))

    @property
    def markers(self) -> tuple[str, ...]:
        return self._markers

    def strip_prompt(self, unit: str) -> str:
        stripped = True
        while stripped:
            stripped = False
            for marker in self._markers:
                rest = unit[len(marker) :]
                if unit.startswith(marker) and (not rest or rest[0].isspace()):
                    unit = rest.lstrip()
                    stripped = True
                    break
        return unit

    def is_prompt(self, unit: str) -> bool:
        return any(unit.startswith(marker) for marker in self._markers)


class LineBuffer:
    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return rest


class DeviceOutputStream:
    """Reassembles the output of one agent process. Create one per spawned process.

    Prompt filtering only ever sees completed lines, so the recorded entries do
    not depend on how the pipe happened to split the output.
    """

    def __init__(self, router: OutputRouter, device_id: str):
        self._router = router
        self._device_id = device_id
        self._buffers = {channel: LineBuffer() for channel in OutputChannel}
        self._closed = False

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, channel: OutputChannel, chunk: str) -> list[ConversationEntry]:
        if self._closed:
            return []
        routed = []
        for line in self._buffers[channel].feed(chunk):
            entry = self._router.route(self._device_id, channel, line)
            if entry is not None:
                routed.append(entry)
        return routed

    def close(self) -> list[ConversationEntry]:
        if self._closed:
            return []
        self._closed = True
        routed = []
        for channel, buffer in self._buffers.items():
            rest = buffer.flush()
            entry = self._router.route(self._device_id, channel, rest) if rest else None
            if entry is not None:
                routed.append(entry)
        return routed


class OutputRouter:
    def __init__(
        self,
        store: ConversationStore,
        events: SessionEvents,
        classifier: LineClassifier | None = None,
    ):
        self._store = store
        self._events = events
        self._classifier = classifier or PromptMarkerClassifier()
        self._listeners: list[Callable[[ConversationEntry], None]] = []

    @property
    def classifier(self) -> LineClassifier:
        return self._classifier

    def add_listener(self, listener: Callable[[ConversationEntry], None]) -> None:
        self._listeners.append(listener)

    def open_stream(self, device_id: str) -> DeviceOutputStream:
        return DeviceOutputStream(self, device_id)

    def route(self, device_id: str, channel: OutputChannel, raw: str) -> ConversationEntry | None:
        unit = self._classifier.strip_prompt(raw.strip()).strip()
        if not unit or self._classifier.is_prompt(unit):
            return None
        if channel is OutputChannel.DIAGNOSTIC:
            logger.debug(f"[{device_id}] stderr: {unit}")

        entry = self._store.append(device_id, Role.AGENT, unit)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as ex:
                logger.warning(f"Output listener failed for device {device_id}: {ex}")
        self._events.emit(ENTRY_APPENDED, device_id, entry=entry)
        return entry
