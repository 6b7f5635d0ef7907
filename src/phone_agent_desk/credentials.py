from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Protocol

from loguru import logger

API_KEY_ENV_VAR = "PHONE_AGENT_API_KEY"


class ApiKeyStore(Protocol):
    def get(self) -> str | None: ...

    def set(self, api_key: str) -> None: ...


class FileApiKeyStore:
    """Single global API key kept in a small JSON file.

    ``fallback_key`` (usually the environment's key) is used until a key is saved.
    """

    def __init__(self, path: str, *, fallback_key: str | None = None):
        self._path = Path(path).expanduser()
        self._fallback_key = fallback_key or None

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> str | None:
        return self._read_file() or self._fallback_key

    def set(self, api_key: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"api_key": api_key.strip()}), encoding="utf-8")
        with contextlib.suppress(OSError, NotImplementedError):
            os.chmod(self._path, 0o600)
        logger.info(f"API key saved to {self._path}")

    def _read_file(self) -> str | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as ex:
            logger.warning(f"Could not read credentials file {self._path}: {ex}")
            return None
        if not isinstance(data, dict):
            return None
        value = str(data.get("api_key", "")).strip()
        return value or None


class MemoryApiKeyStore:
    def __init__(self, api_key: str | None = None):
        self._api_key = api_key

    def get(self) -> str | None:
        return self._api_key

    def set(self, api_key: str) -> None:
        self._api_key = api_key.strip()
