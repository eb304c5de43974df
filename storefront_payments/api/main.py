"""
Main FastAPI application.

Storefront order and payment API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront_payments.config import get_settings
from storefront_payments.core.exceptions import (
    AttemptsBlockedError,
    SignatureError,
    StorefrontError,
    UpstreamTimeoutError,
)
from storefront_payments.database.connection import close_db, init_db
from storefront_payments.monitoring.logging import setup_logging

from .dependencies import get_gateway_client
from .routes import (
    admin_router,
    callback_router,
    monitoring_router,
    order_router,
    payment_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        attempt_guard_backend=settings.attempt_guard_backend,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    await get_gateway_client().aclose()
    await close_db()
    logger.info("database_connections_closed")


app = FastAPI(
    title="Storefront Payments",
    description=(
        "Order checkout and EasyKash payment reconciliation. "
        "Features: server-side pricing, signed callback verification, "
        "exactly-once payment finalization and discrepancy review."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )

        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(StorefrontError)
async def storefront_exception_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map domain errors to their HTTP status and a stable error body."""
    content: dict[str, Any] = {"error": exc.kind, "message": str(exc)}
    headers: dict[str, str] = {}

    if isinstance(exc, SignatureError):
        # Details stay in the logs
        content["message"] = "Callback rejected"
    elif isinstance(exc, UpstreamTimeoutError):
        content["status"] = "unconfirmed"
        content["payment_id"] = exc.payment_id
    elif isinstance(exc, AttemptsBlockedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_error",
        error_kind=exc.kind,
        status_code=exc.status_code,
        error=str(exc),
    )
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# Include routers
app.include_router(order_router)
app.include_router(payment_router)
app.include_router(callback_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "storefront_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
