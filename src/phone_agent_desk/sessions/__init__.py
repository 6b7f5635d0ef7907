from phone_agent_desk.sessions.registry import (
    LaunchParams,
    ProcessHandle,
    Session,
    SessionListener,
    SessionRegistry,
    SessionState,
)

__all__ = [
    "LaunchParams",
    "ProcessHandle",
    "Session",
    "SessionListener",
    "SessionRegistry",
    "SessionState",
]
