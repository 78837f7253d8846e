"""Logging Setup.

One-call configuration for the approval service: JSON lines in
production, a coloured console format for local work.
"""

import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import get_context_dict

LEVEL_ENV_VAR = "APPROVALS_LOG_LEVEL"
FORMAT_ENV_VAR = "APPROVALS_LOG_FORMAT"

# Attributes passed through ``extra=`` that are copied into JSON entries
_EXTRA_FIELDS = ("duration_ms", "status_code", "method", "path", "event_type", "extra_data")


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    One object per line: timestamp, level, logger, message and service,
    plus whatever tracing context is bound.
    """

    def __init__(self, service_name: str = "approval-engine", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if self.include_caller:
            log_entry["module"] = record.module
            log_entry["function"] = record.funcName
            log_entry["line"] = record.lineno

        log_entry.update(get_context_dict())

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable, colour-coded log lines."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]

        ctx = get_context_dict()
        ctx_str = f" [{', '.join(f'{k}={v}' for k, v in ctx.items())}]" if ctx else ""

        line = (
            f"{color}{timestamp} {record.levelname:8s}{self.RESET} "
            f"{record.name}: {record.getMessage()}{ctx_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def resolve_config(config: Optional[LoggingConfig] = None) -> LoggingConfig:
    """Apply APPROVALS_LOG_LEVEL / APPROVALS_LOG_FORMAT overrides."""
    config = config or DEFAULT_LOGGING_CONFIG

    env_level = os.environ.get(LEVEL_ENV_VAR, "").upper()
    if env_level in LogLevel.__members__:
        config = replace(config, level=LogLevel(env_level))

    env_format = os.environ.get(FORMAT_ENV_VAR, "").lower()
    if env_format in [f.value for f in LogFormat]:
        config = replace(config, format=LogFormat(env_format))
    return config


def configure_logging(config: Optional[LoggingConfig] = None) -> LoggingConfig:
    """Configure the root logger for the approval service.

    Call once at process startup (CLI or API factory). Environment
    variables take precedence over ``config``.

    Returns:
        The effective configuration.
    """
    config = resolve_config(config)

    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=config.service_name,
            include_caller=config.include_caller,
        )
    else:
        formatter = ConsoleFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.value))

    for noisy in config.noisy_loggers:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return config


def get_logger(name: str) -> logging.Logger:
    """Return a standard library logger; output follows configure_logging()."""
    return logging.getLogger(name)
