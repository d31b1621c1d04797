import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[instance_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[instance_id]} | "
    "{name}:{function}:{line} - {message}"
)


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def _instance_filter(instance_id: str | None):
    if not instance_id:
        return None

    def _filter(record: dict) -> bool:
        return record["extra"].get("instance_id") == instance_id

    return _filter


class ConsoleLogConsumer:
    def __init__(self, instance: str | None = None):
        self._instance = instance

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format=_CONSOLE_FORMAT,
            filter=_instance_filter(self._instance),
        )

    def describe(self, level: str) -> str:
        scope = f", instance={self._instance}" if self._instance else ""
        return f"console (stderr, {level}{scope})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "session_sync.log",
        rotation: str = "10 MB",
        retention: int = 3,
        instance: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._instance = instance

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            filter=_instance_filter(self._instance),
        )

    def describe(self, level: str) -> str:
        scope = f", instance={self._instance}" if self._instance else ""
        return f"file ({self._path}, {level}{scope})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "session_sync.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Configure logging sinks. Returns a description of each registered consumer.

    Records emitted outside an instance context carry ``instance_id="-"`` so the
    formats above never fail on a missing extra key.
    """
    logger.remove()
    logger.configure(extra={"instance_id": "-"})

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        # Separate known keys from consumer-specific kwargs
        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
