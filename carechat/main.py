import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from carechat.auth import SignedTokenIdentityProvider
from carechat.config import Settings, get_settings
from carechat.exceptions import MessagingError
from carechat.logging_utils import setup_logging, RequestLoggingMiddleware
from carechat.metrics import get_metrics, get_metrics_content_type
from carechat.routes import router as messaging_router
from carechat.schemas import ErrorResponse, HealthResponse
from carechat.storage import Store


logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    The Store created here is the only handle on the database; it lives on
    app.state for the lifetime of the app and is disposed on shutdown.
    Run with: uvicorn --factory carechat.main:create_app
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    store = Store(settings.DATABASE_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create tables
        - Shutdown: release pooled connections
        """
        store.init_db()
        yield
        store.dispose()

    app = FastAPI(
        title="Carechat Messaging API",
        description="Direct and group conversations for clinical staff",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.identity_provider = SignedTokenIdentityProvider(settings.AUTH_SECRET)

    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(MessagingError, messaging_error_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)

    app.add_api_route("/health/live", health_live, methods=["GET"], response_model=HealthResponse)
    app.add_api_route("/health/ready", health_ready, methods=["GET"], response_model=HealthResponse)
    app.add_api_route("/metrics", metrics, methods=["GET"])
    app.include_router(messaging_router)

    return app


# =============================================================================
# Error Handlers
# =============================================================================

async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error_code, detail=exc.message).model_dump(),
    )


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Store failure during {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="INTERNAL_ERROR", detail="Internal server error").model_dump(),
    )


# =============================================================================
# Health Check Routes
# =============================================================================

async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. AUTH_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not request.app.state.settings.AUTH_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="AUTH_SECRET not configured"
        )

    if not request.app.state.store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Metrics Route
# =============================================================================

async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    - http_requests_total: Total HTTP requests by method, path, status
    - messaging_operations_total: Messaging outcomes by operation and result
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
