from typing import Any, Dict
import asyncio
import time

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
import structlog

from scheduling_intel import __version__
from scheduling_intel.api.dependencies import (
    get_correlation_id,
    get_feature_flags,
    get_schedule_refresher
)
from scheduling_intel.core.config import AppConstants, get_settings
from scheduling_intel.core.database import check_db_health
from scheduling_intel.core.feature_flags import FeatureFlags
from scheduling_intel.services.scheduler_service import ScheduleRefresher
from scheduling_intel.utils.datetime_utils import utcnow

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/health",
    summary="Basic Health Check",
    description="Basic health check endpoint for load balancers and monitoring"
)
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint for quick status verification.

    **Returns:**
    - **status**: Overall health status
    - **timestamp**: Current server timestamp
    - **version**: API version
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "service": AppConstants.SERVICE_NAME
    }


@router.get(
    "/health/detailed",
    summary="Detailed Health Check",
    description="Health of the record store plus subsystem switches"
)
async def detailed_health_check(
    correlation_id: str = Depends(get_correlation_id),
    flags: FeatureFlags = Depends(get_feature_flags),
    refresher: ScheduleRefresher = Depends(get_schedule_refresher)
):
    """
    Component health for the record store, with feature flag and refresher state.

    Returns 503 when a critical component is unhealthy.
    """
    start_time = time.time()
    settings = get_settings()

    health_results: Dict[str, Any] = {
        "overall_status": "healthy",
        "timestamp": utcnow().isoformat(),
        "correlation_id": correlation_id,
        "environment": settings.ENVIRONMENT,
        "components": {},
        "feature_flags": flags.snapshot(),
        "refresh": refresher.get_status().model_dump(mode="json"),
        "errors": []
    }

    try:
        health_results["components"]["database"] = await asyncio.wait_for(
            _check_database_health(),
            timeout=AppConstants.HEALTH_CHECK_TIMEOUT
        )
    except asyncio.TimeoutError:
        health_results["components"]["database"] = {
            "status": "unhealthy",
            "message": "Health check timed out",
            "response_time": AppConstants.HEALTH_CHECK_TIMEOUT
        }
        health_results["errors"].append("database health check timed out")

    unhealthy = [
        name for name, result in health_results["components"].items()
        if result.get("status") != "healthy"
    ]
    if any(name in AppConstants.CRITICAL_SERVICES for name in unhealthy):
        health_results["overall_status"] = "unhealthy"
        health_results["errors"].append(f"Critical services unhealthy: {unhealthy}")

    health_results["health_check_duration"] = f"{time.time() - start_time:.4f}s"

    logger.info(
        "Detailed health check completed",
        correlation_id=correlation_id,
        overall_status=health_results["overall_status"],
        unhealthy_components=unhealthy
    )

    if health_results["overall_status"] == "unhealthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=health_results
        )
    return health_results


@router.get(
    "/health/readiness",
    summary="Readiness Probe",
    description="Kubernetes readiness probe endpoint"
)
async def readiness_probe() -> Dict[str, str]:
    """Ready once the record store answers"""
    db_health = await check_db_health()
    if db_health["status"] != "healthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "not_ready",
                "message": db_health["message"]
            }
        )
    return {
        "status": "ready",
        "message": "Service is ready to serve traffic"
    }


@router.get(
    "/health/liveness",
    summary="Liveness Probe",
    description="Kubernetes liveness probe endpoint"
)
async def liveness_probe() -> Dict[str, str]:
    return {
        "status": "alive",
        "timestamp": utcnow().isoformat()
    }


async def _check_database_health() -> Dict[str, Any]:
    start_time = time.time()
    db_health = await check_db_health()
    return {
        "status": db_health["status"],
        "message": db_health["message"],
        "response_time": f"{time.time() - start_time:.4f}s",
        "details": db_health
    }
