"""
FastAPI application for the Pixlie Analyst service.

Sets up the web server, middleware, routes, error handling and the
objective coordinator that outlives individual requests.
"""

from contextlib import asynccontextmanager
from typing import Optional
import os
import time

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from pixlie_analyst.adapters import make_connector
from pixlie_analyst.core.coordinator import ObjectiveCoordinator
from pixlie_analyst.errors import (
    AnalystError,
    InvalidState,
    ObjectiveNotFound,
    ParameterValidationError,
    WorkspaceNotFound,
)
from pixlie_analyst.log_config import configure_logging
from pixlie_analyst.models.contracts import ErrorResponse
from pixlie_analyst.providers.factory import build_provider_chain
from pixlie_analyst.settings import Settings, settings as default_settings
from pixlie_analyst.storage import SQLWorkspaceStore
from pixlie_analyst.tools import ToolRegistry, build_default_registry

logger = structlog.get_logger(__name__)

# Global state for tracking application startup time
app_start_time: float = 0.0

_STATUS_BY_ERROR = (
    (ObjectiveNotFound, status.HTTP_404_NOT_FOUND),
    (WorkspaceNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ParameterValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def build_registry(cfg: Settings) -> ToolRegistry:
    """Frozen tool registry over the configured data source."""
    if cfg.data_database_url:
        connector = make_connector(
            cfg.data_dialect,
            url=cfg.data_database_url,
            pool_size=cfg.database_pool_size,
        )
        return build_default_registry(
            connector,
            max_rows=cfg.sql_max_rows,
            tool_timeout_seconds=cfg.tool_timeout_seconds,
            max_result_bytes=cfg.tool_max_result_bytes,
        )
    logger.warning("No data source configured; analysis runs without tools")
    registry = ToolRegistry(cfg.tool_timeout_seconds, cfg.tool_max_result_bytes)
    registry.freeze()
    return registry


def build_coordinator(cfg: Settings) -> ObjectiveCoordinator:
    """Wire the data connector, tools, providers and store from settings."""
    return ObjectiveCoordinator(
        registry=build_registry(cfg),
        chain=build_provider_chain(cfg),
        store=SQLWorkspaceStore(),
        settings=cfg,
    )


def _configure_langsmith(cfg: Settings) -> None:
    if not cfg.langsmith_tracing:
        return
    os.environ.setdefault("LANGSMITH_TRACING", "true")
    if cfg.langsmith_api_key:
        os.environ["LANGSMITH_API_KEY"] = cfg.langsmith_api_key
    if cfg.langsmith_project:
        os.environ["LANGCHAIN_PROJECT"] = cfg.langsmith_project


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[ObjectiveCoordinator] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the environment-derived ones
        coordinator: Pre-built coordinator; built from settings at startup
            when omitted
    """
    cfg = settings or default_settings
    configure_logging(cfg.log_level, cfg.log_format)
    _configure_langsmith(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global app_start_time
        app_start_time = time.time()
        logger.info("Starting Pixlie Analyst service", version=cfg.app_version)

        if app.state.coordinator is None:
            app.state.coordinator = build_coordinator(cfg)
        await app.state.coordinator.start()

        yield

        logger.info("Shutting down Pixlie Analyst service")
        await app.state.coordinator.shutdown()

    app = FastAPI(
        title="Pixlie Analyst API",
        description="Conversational LLM data analyst over a read-only data source",
        version=cfg.app_version,
        docs_url="/docs" if cfg.debug else None,
        redoc_url="/redoc" if cfg.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.coordinator = coordinator

    allow_origins = cfg.allowed_origins if not cfg.debug else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AnalystError)
    async def analyst_error_handler(request, exc: AnalystError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        for error_type, error_status in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                code = error_status
                break
        log = logger.warning if code < 500 else logger.error
        log("Request failed", path=request.url.path, method=request.method, reason=exc.reason, error=exc.message)
        return JSONResponse(
            status_code=code,
            content=ErrorResponse(error=exc.reason, message=exc.message, details=exc.details).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="validation_error",
                message="Request validation failed",
                details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
            ).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred",
            ).model_dump(mode="json"),
        )

    from pixlie_analyst.api.routes import health, objectives, tools, workspaces

    app.include_router(health.router, prefix=cfg.api_prefix, tags=["health"])
    app.include_router(objectives.router, prefix=cfg.api_prefix, tags=["objectives"])
    app.include_router(workspaces.router, prefix=cfg.api_prefix, tags=["workspaces"])
    app.include_router(tools.router, prefix=cfg.api_prefix, tags=["tools"])

    return app
