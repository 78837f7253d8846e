"""Structured Logging & Request Tracing.

JSON logging, tracing context propagation and an ASGI middleware for the
approval service.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import RequestContext, generate_request_id, get_context_dict
from src.logging_config.middleware import RequestTracingMiddleware
from src.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "RequestContext",
    "RequestTracingMiddleware",
    "configure_logging",
    "generate_request_id",
    "get_context_dict",
    "get_logger",
]
