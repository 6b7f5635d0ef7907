from __future__ import annotations


class PhoneAgentError(Exception):
    """Base class for all errors raised by phone_agent_desk."""


class SpawnError(PhoneAgentError):
    def __init__(self, executable: str, cause: str):
        super().__init__(f"Failed to launch agent '{executable}': {cause}")
        self.executable = executable
        self.cause = cause


class WriteError(PhoneAgentError):
    pass


class NotConnectedError(WriteError):
    def __init__(self, device_id: str):
        super().__init__(f"No live agent session for device {device_id}")
        self.device_id = device_id


class DiscoveryError(PhoneAgentError):
    pass
