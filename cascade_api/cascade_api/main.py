"""FastAPI application factory and lifespan."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from cascade_engine.config import EngineSettings, load_settings
from cascade_engine.errors import (
    CascadeError,
    ConflictError,
    EntityNotFoundError,
    NetworkOrServerError,
    OperationTimeoutError,
    PermissionDenied,
    RateLimited,
    SuspiciousActivity,
    ValidationError,
)
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from cascade_api import __version__
from cascade_api.config import APISettings, load_api_settings
from cascade_api.container import AppServices, build_services
from cascade_api.middleware.json_formatter import configure_logging
from cascade_api.middleware.logging import RequestLoggingMiddleware
from cascade_api.routers import audit, deletion, health, integrity

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_STATUS_BY_ERROR: tuple[tuple[type[CascadeError], int], ...] = (
    (RateLimited, 429),
    (PermissionDenied, 403),
    (SuspiciousActivity, 403),
    (EntityNotFoundError, 404),
    (ValidationError, 400),
    (ConflictError, 409),
    (OperationTimeoutError, 504),
    (NetworkOrServerError, 503),
)


def status_for(exc: CascadeError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: APISettings | None = None,
    engine_settings: EngineSettings | None = None,
    *,
    services: AppServices | None = None,
) -> FastAPI:
    """Build the application.

    When *services* is supplied (tests, embedding) the lifespan starts and
    stops it but does not create a new one.
    """
    settings = settings or (services.settings if services else load_api_settings())
    engine_settings = engine_settings or (services.engine_settings if services else load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if settings.structured_logging:
            configure_logging(structured=True, debug=settings.debug)
            logger.info("Structured JSON logging enabled")

        current: AppServices | None = getattr(app.state, "services", None)
        if current is None:
            current = await build_services(settings, engine_settings)
            app.state.services = current
        current.start()
        purged = await current.runtime.snapshots.purge_expired()
        if purged:
            logger.info("Purged %d expired snapshots", purged)

        yield

        await current.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Cadenza",
        description="Cascade deletion, integrity and audit service",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # -- Middleware ----------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(deletion.router, prefix="/api/v1")
    app.include_router(integrity.router, prefix="/api/v1")
    app.include_router(audit.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(CascadeError)
    async def cascade_error_handler(request: Request, exc: CascadeError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        else:
            logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
        headers: dict[str, str] = {}
        retry_after = exc.details.get("retry_after_seconds")
        if status == 429 and retry_after is not None:
            headers["Retry-After"] = str(max(int(retry_after) + 1, 1))
        body = exc.to_dict()
        if isinstance(exc, ConflictError) and exc.operation_id:
            body["operation_id"] = exc.operation_id
        return JSONResponse(status_code=status, content={"detail": body}, headers=headers)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app
