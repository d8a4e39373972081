"""Capacity Queue: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# structlog caches its processor chain on first use, so it is configured
# before any other package module creates a logger.
from capacity_queue.core.config import get_settings as _get_settings_early
from capacity_queue.core.logging import configure_structlog

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from capacity_queue.api.routes import api_router
from capacity_queue.core.config import get_settings
from capacity_queue.core.exceptions import CapacityQueueError
from capacity_queue.db import close_db, close_redis, init_db, init_redis
from capacity_queue.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and Redis on startup; close them on shutdown."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info(
        "startup_begin",
        app_name=settings.app_name,
        debug=settings.debug,
        max_attempts=settings.max_attempts,
        processing_timeout_minutes=settings.processing_timeout_minutes,
    )

    await init_db()
    await init_redis()
    logger.info("storage_initialized")

    yield

    logger.info("shutdown_begin")
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_response(request: Request, status_code: int, detail: str, event: str, **context) -> JSONResponse:
    """Log server-side with a fresh debug_id; return only detail + debug_id."""
    debug_id = str(uuid.uuid4())
    logger.error(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        **context,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_exception", detail=exc.detail)


async def queue_error_handler(request: Request, exc: CapacityQueueError) -> JSONResponse:
    """Queue storage problems surface as 503 so schedulers retry the call."""
    return _error_response(
        request,
        503,
        "Queue temporarily unavailable",
        "capacity_queue_error",
        error=str(exc),
        error_type=type(exc).__name__,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(
        request,
        500,
        "Internal server error",
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Agent capacity checks, business-hours gating and per-tenant message queueing",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    # Added last so it runs first on incoming requests
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(CapacityQueueError)(queue_error_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("capacity_queue.main:app", host="0.0.0.0", port=8000, reload=True)
