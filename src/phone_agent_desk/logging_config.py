import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_PATH = "logs/phone_agent_desk.log"

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
    " - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {process.id} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def _scope(only: str | None) -> str | None:
    """Map a short area name ("sessions", "devices") to the module prefix loguru filters on."""
    if not only:
        return None
    return only if only.startswith("phone_agent_desk") else f"phone_agent_desk.{only}"


class ConsoleLogConsumer:
    """Logs to stderr so the conversation printed on stdout stays readable."""

    def __init__(self, colorize: bool | None = None, only: str | None = None):
        self._colorize = colorize
        self._filter = _scope(only)

    def register(self, level: str) -> None:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=self._colorize, filter=self._filter)

    def describe(self, level: str) -> str:
        scope = f", {self._filter}" if self._filter else ""
        return f"console (stderr, {level}{scope})"


class FileLogConsumer:
    """Rotating log file. ``only`` narrows it to one area, e.g. a sessions-only lifecycle log."""

    def __init__(
        self,
        path: str = DEFAULT_LOG_PATH,
        rotation: str = "10 MB",
        retention: int = 3,
        only: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._filter = _scope(only)

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            filter=self._filter,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        scope = f", {self._filter}" if self._filter else ""
        return f"file ({self._path}, {level}{scope})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Console shows warnings only; agent replies share the terminal.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Configure logging sinks from the ``LogConsumers`` config list.

    Returns a description of each registered consumer. Entries with an unknown
    type or unknown options are reported and skipped.
    """
    logger.remove()

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
        sink_type = str(config.get("type", "")).lower()
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = str(config.get("level", level)).upper()

        try:
            consumer = cls(**kwargs)
        except TypeError as ex:
            logger.warning(f"Invalid options for {sink_type} log consumer: {ex}")
            continue
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
