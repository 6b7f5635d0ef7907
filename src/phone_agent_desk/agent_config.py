from __future__ import annotations

import os
from dataclasses import dataclass, field

from phone_agent_desk.errors import SpawnError
from phone_agent_desk.sessions import LaunchParams


@dataclass
class AgentLaunchConfig:
    command: list[str] = field(default_factory=lambda: ["python", "main.py"])
    base_url: str = "http://localhost:8000/v1"
    model: str = "autoglm-phone-9b"
    lang: str = "cn"
    working_directory: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def build(self, device_id: str, api_key: str) -> LaunchParams:
        if not self.command:
            raise SpawnError("<unset>", "no agent command configured")
        executable, *prefix = self.command
        args = [
            *prefix,
            "--base-url", self.base_url,
            "--model", self.model,
            "--device-id", device_id,
            "--apikey", api_key,
            "--lang", self.lang,
        ]
        # Piped Python agents block-buffer stdout unless told otherwise.
        merged_env = dict(os.environ)
        merged_env["PYTHONUNBUFFERED"] = "1"
        merged_env.setdefault("PYTHONIOENCODING", "utf-8")
        merged_env.update(self.env)
        return LaunchParams(executable=executable, args=args, cwd=self.working_directory, env=merged_env)
