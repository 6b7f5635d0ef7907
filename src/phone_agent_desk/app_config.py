from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from phone_agent_desk.credentials import API_KEY_ENV_VAR


@dataclass
class RuntimeEnv:
    api_key: str | None
    api_key_env_var: str


@dataclass
class AppConfig:
    agent_command: list[str]
    base_url: str
    model: str
    lang: str
    agent_working_directory: str | None
    adb_path: str
    refresh_interval_seconds: float
    send_timeout_seconds: float
    session_settle_timeout_seconds: float
    shutdown_timeout_seconds: float
    prompt_markers: list[str]
    credentials_path: str
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _to_str_list(value: object, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    return list(default)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        agent_command=_to_str_list(config.get("AgentCommand"), ["python", "main.py"]),
        base_url=str(config.get("BaseUrl", "http://localhost:8000/v1")),
        model=str(config.get("Model", "autoglm-phone-9b")),
        lang=str(config.get("Lang", "cn")),
        agent_working_directory=config.get("AgentWorkingDirectory"),
        adb_path=str(config.get("AdbPath", "adb")),
        refresh_interval_seconds=float(config.get("RefreshIntervalSeconds", 30)),
        send_timeout_seconds=max(0.0, float(config.get("SendTimeoutSeconds", 5))),
        session_settle_timeout_seconds=float(config.get("SessionSettleTimeoutSeconds", 5)),
        shutdown_timeout_seconds=max(0.0, float(config.get("ShutdownTimeoutSeconds", 5))),
        prompt_markers=_to_str_list(config.get("PromptMarkers"), [">"]),
        credentials_path=str(config.get("CredentialsPath", "~/.phone_agent_desk/credentials.json")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_key=os.environ.get(API_KEY_ENV_VAR) or None,
        api_key_env_var=API_KEY_ENV_VAR,
    )
