from contextlib import asynccontextmanager
from typing import Any, Dict, List, Tuple, Type
import secrets
import time

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

from scheduling_intel import __version__
from scheduling_intel.api.dependencies import get_schedule_refresher
from scheduling_intel.api.routes import feature_flags, health, schedule, writeback
from scheduling_intel.core.config import AppConstants, get_settings
from scheduling_intel.core.database import close_db_connection, create_db_and_tables
from scheduling_intel.core.exceptions import (
    ApprovalBlockedError,
    ApprovalNotFoundError,
    DecisionConflictError,
    ExecutionPreconditionError,
    FeatureDisabledError,
    RecommendationNotFoundError,
    RecordStoreError,
    SchedulingIntelError
)
from scheduling_intel.utils.logger import bind_request_context, clear_request_context, setup_logging

# Initialize structured logging
setup_logging()
logger = structlog.get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)
REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# First match wins, so subclasses come before their bases
ERROR_STATUS_CODES: List[Tuple[Type[SchedulingIntelError], int]] = [
    (RecommendationNotFoundError, 404),
    (ApprovalNotFoundError, 404),
    (FeatureDisabledError, 404),
    (DecisionConflictError, 409),
    (ApprovalBlockedError, 422),
    (ExecutionPreconditionError, 422),
    (RecordStoreError, 503),
]


def _endpoint_label(request: Request) -> str:
    # Route templates keep label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        endpoint = _endpoint_label(request)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code)
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        correlation_id = request.headers.get("X-Correlation-ID") or f"req-{secrets.token_hex(8)}"

        clear_request_context()
        bind_request_context(correlation_id=correlation_id)

        logger.info(
            "Request started",
            method=request.method,
            url=str(request.url),
            client_host=request.client.host if request.client else "unknown"
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request failed",
                method=request.method,
                url=str(request.url),
                duration=f"{time.time() - start_time:.4f}s",
                error=str(exc),
                exc_info=True
            )
            raise

        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            duration=f"{time.time() - start_time:.4f}s"
        )

        response.headers["X-Correlation-ID"] = correlation_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings = get_settings()

    logger.info("Starting Scheduling Intelligence API", version=__version__)

    try:
        await create_db_and_tables()
        logger.info(
            "API startup completed",
            environment=settings.ENVIRONMENT,
            debug=settings.DEBUG
        )
    except Exception as e:
        logger.error("Failed to start application", error=str(e), exc_info=True)
        raise

    yield  # Application runs here

    logger.info("Shutting down Scheduling Intelligence API")

    get_schedule_refresher().stop_auto_refresh()
    try:
        await close_db_connection()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e), exc_info=True)


async def domain_exception_handler(request: Request, exc: SchedulingIntelError) -> JSONResponse:
    """Map domain errors to HTTP status codes"""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)),
        500
    )
    correlation_id = request.headers.get("X-Correlation-ID", "unknown")

    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request rejected",
        url=str(request.url),
        error_type=type(exc).__name__,
        status_code=status_code,
        error=exc.message
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "details": exc.details,
            "correlation_id": correlation_id
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions"""
    correlation_id = request.headers.get("X-Correlation-ID", "unknown")

    logger.error(
        "Unhandled exception",
        url=str(request.url),
        method=request.method,
        error=str(exc),
        exc_info=True
    )

    # Don't expose internal errors in production
    settings = get_settings()
    if settings.ENVIRONMENT == "production":
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "correlation_id": correlation_id,
                "message": "An unexpected error occurred. Please try again later."
            }
        )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "correlation_id": correlation_id,
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


def create_application() -> FastAPI:
    """Factory function to create FastAPI application"""
    settings = get_settings()
    api_prefix = f"/api/{settings.API_VERSION}"

    app = FastAPI(
        title=AppConstants.API_TITLE,
        description="Schedule insights for clinic days and a confidence-gated, audited write-back approval workflow",
        version=__version__,
        openapi_url=f"{api_prefix}/openapi.json" if settings.DEBUG else None,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan
    )

    if settings.ENVIRONMENT == "production":
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=settings.ALLOWED_HOSTS
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"]
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(LoggingMiddleware)
    if settings.PROMETHEUS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    app.add_exception_handler(SchedulingIntelError, domain_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(health.router, prefix=api_prefix, tags=["Health"])
    app.include_router(schedule.router, prefix=api_prefix, tags=["Schedule"])
    app.include_router(writeback.router, prefix=api_prefix, tags=["Write-Back"])
    app.include_router(feature_flags.router, prefix=api_prefix, tags=["Feature Flags"])

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information"""
        return {
            "message": AppConstants.API_TITLE,
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "docs_url": "/docs" if settings.DEBUG else "Contact administrator for API documentation",
            "health_check": f"{api_prefix}/health",
            "insights_endpoint": f"{api_prefix}/schedule/{{clinic_id}}/insights"
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint"""
        if not get_settings().PROMETHEUS_ENABLED:
            return JSONResponse(
                status_code=404,
                content={"error": "Metrics endpoint is disabled"}
            )
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# Create the FastAPI application
app = create_application()


def main():
    """Main function to run the application"""
    settings = get_settings()

    uvicorn.run(
        "scheduling_intel.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )


if __name__ == "__main__":
    main()
