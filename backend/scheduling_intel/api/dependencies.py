from datetime import date
from functools import lru_cache
from typing import Optional
from uuid import UUID
import secrets

from fastapi import Depends, Header, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.core.config import AppConstants, get_settings
from scheduling_intel.core.database import db_manager, get_db
from scheduling_intel.core.exceptions import FeatureDisabledError
from scheduling_intel.core.feature_flags import FeatureFlags
from scheduling_intel.services.scheduler_service import ScheduleRefresher, SchedulerService
from scheduling_intel.services.writeback_service import WriteBackService

logger = structlog.get_logger(__name__)


class Actor(BaseModel):
    """Caller identity forwarded by the upstream auth layer"""

    user_id: Optional[UUID] = None
    role: Optional[str] = None


def get_correlation_id(
    x_correlation_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None)
) -> str:
    """
    Get or generate correlation ID for request tracing.

    **Returns:**
    - **correlation_id**: Unique identifier for request tracing
    """
    return x_correlation_id or x_request_id or f"sched-{secrets.token_hex(8)}"


def get_current_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None)
) -> Actor:
    """Actor from X-User-ID / X-User-Role; both optional"""
    user_id = None
    if x_user_id:
        try:
            user_id = UUID(x_user_id)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Invalid X-User-ID header", "value": x_user_id}
            )
    return Actor(user_id=user_id, role=x_user_role or None)


def require_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Actor with a known user id; write operations need one"""
    if actor.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "X-User-ID header is required"}
        )
    return actor


def schedule_date_param(
    schedule_date: Optional[date] = Query(None, alias="date", description="Clinic day, defaults to today")
) -> date:
    return schedule_date or date.today()


@lru_cache()
def get_feature_flags() -> FeatureFlags:
    """Process-wide feature flags built from settings"""
    return FeatureFlags.from_settings(get_settings().feature_flags)


def require_scheduler_enabled(flags: FeatureFlags = Depends(get_feature_flags)) -> FeatureFlags:
    if not flags.scheduler_enabled:
        raise FeatureDisabledError(AppConstants.FLAG_SCHEDULER_ENABLED)
    return flags


def require_writeback_enabled(flags: FeatureFlags = Depends(require_scheduler_enabled)) -> FeatureFlags:
    if not flags.writeback_enabled:
        raise FeatureDisabledError(AppConstants.FLAG_WRITEBACK_PHASE2)
    return flags


def get_scheduler_service(db: AsyncSession = Depends(get_db)) -> SchedulerService:
    return SchedulerService(db)


def get_writeback_service(db: AsyncSession = Depends(get_db)) -> WriteBackService:
    return WriteBackService(db)


async def _refresh_schedule(clinic_id: UUID, schedule_date: date):
    async with db_manager.get_async_session() as session:
        return await SchedulerService(session).derive_day(clinic_id, schedule_date)


@lru_cache()
def get_schedule_refresher() -> ScheduleRefresher:
    """Process-wide refresher; its in-flight guard spans requests"""
    return ScheduleRefresher(_refresh_schedule)


__all__ = [
    "Actor",
    "get_correlation_id",
    "get_current_actor",
    "require_actor",
    "schedule_date_param",
    "get_feature_flags",
    "require_scheduler_enabled",
    "require_writeback_enabled",
    "get_scheduler_service",
    "get_writeback_service",
    "get_schedule_refresher"
]
