from __future__ import annotations

from datetime import datetime

from phone_agent_desk.conversation import ConversationEntry, Role
from phone_agent_desk.devices import DeviceSnapshot

_ROLE_LABELS = {
    Role.USER: "you",
    Role.AGENT: "agent",
    Role.SYSTEM: "system",
}


class TranscriptFormatter:
    def __init__(self, *, line_prefix: str, short_id_len: int = 12):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_entry(self, entry: ConversationEntry, *, show_device: bool = False) -> str:
        label = _ROLE_LABELS.get(entry.role, entry.role.value)
        device = f"[{self.short_id(entry.device_id)}] " if show_device else ""
        return f"{self._line_prefix}{device}{_local_time(entry.timestamp)} {label}: {entry.text}"

    def format_device_line(
        self,
        index: int,
        snapshot: DeviceSnapshot,
        *,
        active_device_id: str | None,
        connected: bool,
        message_count: int,
    ) -> str:
        marker = "*" if snapshot.device_id == active_device_id else " "
        status = snapshot.metadata.get("status") or ("online" if snapshot.online else "offline")
        version = snapshot.metadata.get("android_version")
        version_text = f", Android {version}" if version else ""
        session_text = ", agent connected" if connected else ""
        return (
            f"{self._line_prefix}{marker} {index}. {snapshot.display_name} (id={snapshot.device_id}"
            f"{version_text}, status={status}{session_text}, messages={message_count})"
        )


def _local_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).astimezone().strftime("%H:%M")
    except ValueError:
        return timestamp
