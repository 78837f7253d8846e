"""Translate engine errors into the structured error envelope."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.approval_engine import ApprovalEngineError, ResolutionError, WorkflowValidationError
from src.logging_config.context import get_request_id

logger = logging.getLogger(__name__)

# Org-structure gaps are reported to administrators, not callers
RESOLUTION_PENDING_MESSAGE = "Approver resolution is pending administrative review"


def error_body(exc: ApprovalEngineError) -> Dict[str, Any]:
    message = RESOLUTION_PENDING_MESSAGE if isinstance(exc, ResolutionError) else exc.message
    body: Dict[str, Any] = {
        "error": {
            "code": exc.error_code.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }
    if isinstance(exc, WorkflowValidationError) and exc.errors:
        body["error"]["details"] = [{"issue": e} for e in exc.errors]
    if exc.request_id:
        body["error"]["approval_request_id"] = exc.request_id
    request_id = get_request_id()
    if request_id:
        body["error"]["request_id"] = request_id
    return body


async def handle_engine_error(request: Request, exc: ApprovalEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Engine error on %s: %s", request.url.path, exc.message)
    else:
        logger.info("Refused %s: %s (%s)", request.url.path, exc.message, exc.error_code.value)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApprovalEngineError, handle_engine_error)
