"""ASGI Request Tracing Middleware.

Propagates request/correlation ids, binds the calling actor from the
``X-Actor-ID`` header and logs each API call with its duration.
"""

import logging
import time
from typing import Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG, LoggingConfig
from src.logging_config.context import RequestContext, generate_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"
ACTOR_ID_HEADER = "X-Actor-ID"


class RequestTracingMiddleware:
    """Wraps every HTTP call in a ``RequestContext``.

    Usage:
        app.add_middleware(RequestTracingMiddleware)
    """

    def __init__(self, app, config: Optional[LoggingConfig] = None):
        self.app = app
        self.config = config or DEFAULT_LOGGING_CONFIG

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = self._get_header(headers, REQUEST_ID_HEADER) or generate_request_id()
        correlation_id = self._get_header(headers, CORRELATION_ID_HEADER) or request_id
        actor_id = self._get_header(headers, ACTOR_ID_HEADER) or ""

        method = scope.get("method", "")
        path = scope.get("path", "")
        should_log = path not in self.config.exclude_paths
        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
                response_headers = list(message.get("headers", []))
                response_headers.append((REQUEST_ID_HEADER.lower().encode(), request_id.encode()))
                response_headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        with RequestContext(request_id=request_id, correlation_id=correlation_id, actor_id=actor_id):
            try:
                await self.app(scope, receive, send_wrapper)
            finally:
                if should_log:
                    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
                    logger.log(
                        logging.WARNING if status_code >= 400 else logging.INFO,
                        "%s %s -> %d",
                        method,
                        path,
                        status_code,
                        extra={
                            "method": method,
                            "path": path,
                            "status_code": status_code,
                            "duration_ms": duration_ms,
                        },
                    )

    @staticmethod
    def _get_header(headers: dict, name: str) -> Optional[str]:
        value = headers.get(name.lower().encode())
        if value:
            return value.decode("utf-8", errors="replace")
        return None
