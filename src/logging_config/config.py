"""Logging Configuration.

Log level, output format and tracing options for the approval service.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LogLevel(str, Enum):
    """Log level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output format."""
    JSON = "json"
    CONSOLE = "console"


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    include_caller: bool = True
    exclude_paths: list[str] = field(default_factory=lambda: ["/health"])
    noisy_loggers: tuple[str, ...] = ("urllib3", "asyncio", "httpx", "sqlalchemy.engine")
    service_name: str = "approval-engine"

    @classmethod
    def from_settings(cls, settings: Any) -> "LoggingConfig":
        """Build from a ``src.settings.Settings`` instance."""
        level = str(settings.log_level).upper()
        fmt = str(settings.log_format).lower()
        return cls(
            level=LogLevel(level) if level in LogLevel.__members__ else LogLevel.INFO,
            format=LogFormat(fmt) if fmt in [f.value for f in LogFormat] else LogFormat.JSON,
        )


DEFAULT_LOGGING_CONFIG = LoggingConfig()
