"""FastAPI application for job submission and usage lookup.

The login flow calls this service server-side, so no browser-facing
middleware is installed. The mining itself runs in the Celery worker.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.config import get_settings
from app.exceptions import FUMBaseError
from app.logging_config import get_logger, setup_logging
from app.metrics import APP_INFO, HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open Redis and the database, and load detection rules once."""
    from app.dependencies import close_redis, init_redis
    from db.session import close_db, init_db
    from services.framework_rules import get_ruleset

    settings = get_settings()
    setup_logging()
    APP_INFO.info({"version": settings.app_version, "environment": settings.environment.value})

    # A broken rules override fails startup rather than the first job
    rules = get_ruleset()
    await init_redis()
    await init_db()
    logger.info(
        "application_started",
        version=settings.app_version,
        config_files=len(rules.config_rules),
        job_queue=settings.job_queue,
    )

    yield

    await close_redis()
    await close_db()
    logger.info("application_stopped")


async def _track_request(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    started = time.perf_counter()
    response: Response = await call_next(request)
    duration = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    endpoint = request.url.path
    HTTP_REQUESTS_TOTAL.labels(
        method=request.method, endpoint=endpoint, status_code=response.status_code
    ).inc()
    HTTP_REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)
    return response


async def _application_error(_request: Request, exc: FUMBaseError) -> JSONResponse:
    logger.warning("request_failed", code=exc.code, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."}},
    )


def create_app() -> FastAPI:
    """Create the application: frameworks API, health and metrics."""
    from api.v1.router import api_v1_router

    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Mines GitHub activity for per-framework distinct file counts",
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.middleware("http")(_track_request)
    app.add_exception_handler(FUMBaseError, _application_error)
    app.add_exception_handler(Exception, _unexpected_error)

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "job_queue": settings.job_queue,
            "version": settings.app_version,
        }

    return app


app = create_app()
