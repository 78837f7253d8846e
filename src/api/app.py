"""FastAPI Application Factory.

Creates the approval engine API with its middleware stack: security
headers, request tracing and CORS, plus the engine error handlers.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from src.api.config import DEFAULT_API_CONFIG, APIConfig
from src.api.errors import register_error_handlers
from src.api.models import HealthResponse
from src.api.routes import approvals
from src.approval_engine import (
    EngineConfig,
    EscalationScheduler,
    OrgDirectory,
    SqlRequestRepository,
    WorkflowDefinitionStore,
    WorkflowEngine,
    default_workflows,
)
from src.logging_config import LoggingConfig, RequestTracingMiddleware, configure_logging
from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)


# ── Security Headers Middleware ───────────────────────────────────────


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to all HTTP responses."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if os.environ.get("APPROVALS_ENABLE_HSTS", "").lower() == "true":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


# ── Engine wiring ────────────────────────────────────────────────────


def build_engine(settings: Settings, org: Optional[OrgDirectory] = None) -> WorkflowEngine:
    """Assemble an engine from settings (used when no engine is injected)."""
    definitions = WorkflowDefinitionStore(
        default_workflows() if settings.load_default_workflows else None
    )
    repository = None
    if settings.use_database:
        from src.db import Base, build_engine as build_db_engine, get_sync_session_factory

        db_engine = build_db_engine(settings.database_url)
        Base.metadata.create_all(db_engine)
        repository = SqlRequestRepository(get_sync_session_factory(db_engine))

    engine = WorkflowEngine(
        definitions,
        org or OrgDirectory(),
        config=EngineConfig.from_settings(settings),
        repository=repository,
    )
    if repository is not None:
        engine.rebuild_deadlines()
    return engine


# ── App Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[APIConfig] = None,
    engine: Optional[WorkflowEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Middleware stack (outermost → innermost):
        SecurityHeaders → RequestTracing → CORS → App

    Args:
        config: API configuration. Uses defaults if not provided.
        engine: Engine to serve. Built from settings if not provided.
        settings: Settings used to build the engine and logging.
    """
    config = config or DEFAULT_API_CONFIG
    settings = settings or get_settings()
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LoggingConfig.from_settings(settings))
        scheduler = None
        if config.scheduler_enabled:
            scheduler = EscalationScheduler(engine)
            scheduler.start()
        logger.info("Approval API starting up")
        yield
        if scheduler is not None:
            scheduler.stop()
        logger.info("Approval API shutting down")

    app = FastAPI(
        title=config.title,
        version=config.version,
        description=config.description,
        docs_url=config.docs_url,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # add_middleware prepends, so order here is innermost-first.
    cors_origins = os.environ.get("APPROVALS_CORS_ORIGINS", "").split(",")
    cors_origins = [o.strip() for o in cors_origins if o.strip()] or config.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=config.cors_methods,
        allow_headers=config.cors_headers,
    )
    app.add_middleware(RequestTracingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    register_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(
            status="ok",
            version=config.version,
            components={
                "workflows": str(len(engine.definitions.list_workflows())),
                "active_requests": str(len(engine.repository.list_active())),
                "scheduled_deadlines": str(len(engine.deadlines)),
            },
        )

    app.include_router(approvals.router, prefix=config.prefix)
    return app
