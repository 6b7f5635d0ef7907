from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConversationEntry:
    device_id: str
    role: Role
    text: str
    timestamp: str = field(default_factory=utc_now)


class ConversationStore:
    """Append-only transcripts keyed by device id.

    Transcripts are independent of session lifetime and of device visibility;
    nothing here is ever removed while the application runs.
    """

    def __init__(self) -> None:
        self._transcripts: dict[str, list[ConversationEntry]] = {}

    def append(self, device_id: str, role: Role, text: str) -> ConversationEntry:
        entry = ConversationEntry(device_id=device_id, role=role, text=text)
        self._transcripts.setdefault(device_id, []).append(entry)
        return entry

    def history(self, device_id: str) -> list[ConversationEntry]:
        return list(self._transcripts.get(device_id, []))

    def count(self, device_id: str) -> int:
        return len(self._transcripts.get(device_id, []))

    def device_ids(self) -> list[str]:
        return list(self._transcripts)
