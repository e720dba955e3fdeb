from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.api.dependencies import (
    Actor,
    get_correlation_id,
    get_current_actor,
    get_schedule_refresher,
    get_scheduler_service,
    require_actor,
    require_scheduler_enabled,
    schedule_date_param
)
from scheduling_intel.core.database import get_db
from scheduling_intel.core.exceptions import SchedulingIntelError
from scheduling_intel.schemas.scheduling import (
    AppointmentListResponse,
    DismissRequest,
    InsightListResponse,
    RefreshStatus,
    SchedulerBlock,
    SchedulerProvider,
    SnoozeRequest,
    SuppressionResponse
)
from scheduling_intel.services.authorization_service import AuthorizationChecker
from scheduling_intel.services.scheduler_service import (
    ScheduleRefresher,
    SchedulerService,
    is_appointment_late
)
from scheduling_intel.services.suppression_service import (
    InsightSuppressionStore,
    snooze_expires_at
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/schedule", dependencies=[Depends(require_scheduler_enabled)])


def _internal_error(message: str, correlation_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": message,
            "correlation_id": correlation_id
        }
    )


@router.get(
    "/refresh-status",
    response_model=RefreshStatus,
    summary="Schedule Refresh Status"
)
async def get_refresh_status(
    refresher: ScheduleRefresher = Depends(get_schedule_refresher)
) -> RefreshStatus:
    return refresher.get_status()


@router.get(
    "/{clinic_id}/appointments",
    response_model=AppointmentListResponse,
    summary="Clinic Day Appointments",
    description="Appointments for one clinic day, ordered by start time"
)
async def list_appointments(
    clinic_id: UUID,
    schedule_date: date = Depends(schedule_date_param),
    provider_id: Optional[List[UUID]] = Query(None, description="Restrict to these providers"),
    service: SchedulerService = Depends(get_scheduler_service),
    correlation_id: str = Depends(get_correlation_id)
) -> AppointmentListResponse:
    """
    List a clinic day's appointments.

    **Returns:**
    - **appointments**: Appointments with status colour, icon and risk score
    - **late_appointment_ids**: Scheduled or confirmed appointments past their start
    """
    try:
        appointments = await service.reader.get_appointments(clinic_id, schedule_date, provider_id)
        return AppointmentListResponse(
            clinic_id=clinic_id,
            schedule_date=schedule_date,
            appointments=appointments,
            late_appointment_ids=[a.id for a in appointments if is_appointment_late(a)],
        )
    except (HTTPException, SchedulingIntelError):
        raise
    except Exception as e:
        logger.error("Appointment listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise _internal_error("Appointment listing failed", correlation_id)


@router.get(
    "/{clinic_id}/providers",
    response_model=List[SchedulerProvider],
    summary="Clinic Providers"
)
async def list_providers(
    clinic_id: UUID,
    schedule_date: Optional[date] = Query(None, alias="date", description="Compute utilization for this day"),
    service: SchedulerService = Depends(get_scheduler_service)
) -> List[SchedulerProvider]:
    return await service.reader.get_providers(clinic_id, schedule_date)


@router.get(
    "/providers/{provider_id}/blocks",
    response_model=List[SchedulerBlock],
    summary="Provider Non-Patient Blocks"
)
async def list_provider_blocks(
    provider_id: UUID,
    schedule_date: date = Depends(schedule_date_param),
    service: SchedulerService = Depends(get_scheduler_service)
) -> List[SchedulerBlock]:
    return await service.reader.get_provider_blocks(provider_id, schedule_date)


@router.get(
    "/{clinic_id}/insights",
    response_model=InsightListResponse,
    summary="Schedule Insights",
    description="Derived insights for a clinic day, filtered for the viewer"
)
async def get_insights(
    clinic_id: UUID,
    schedule_date: date = Depends(schedule_date_param),
    actor: Actor = Depends(get_current_actor),
    service: SchedulerService = Depends(get_scheduler_service),
    db: AsyncSession = Depends(get_db),
    correlation_id: str = Depends(get_correlation_id)
) -> InsightListResponse:
    """
    Derive insights for the day, then drop the viewer's dismissed and snoozed
    ones and narrow the rest to what the viewer's role is shown.

    The role comes from X-User-Role, falling back to the viewer's profile.
    """
    try:
        role = actor.role
        if role is None and actor.user_id is not None:
            role = await AuthorizationChecker(db).get_user_role(actor.user_id)

        return await service.get_schedule_intelligence(
            clinic_id,
            schedule_date,
            viewer_id=actor.user_id,
            viewer_role=role
        )
    except (HTTPException, SchedulingIntelError):
        raise
    except Exception as e:
        logger.error("Insight computation failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise _internal_error("Insight computation failed", correlation_id)


@router.post(
    "/{clinic_id}/refresh",
    summary="Refresh Clinic Day",
    description="Recompute insights now; dropped when a refresh is already running"
)
async def refresh_schedule(
    clinic_id: UUID,
    schedule_date: date = Depends(schedule_date_param),
    refresher: ScheduleRefresher = Depends(get_schedule_refresher)
) -> Dict[str, Any]:
    insights = await refresher.refresh(clinic_id, schedule_date)
    return {
        "refreshed": insights is not None,
        "insight_count": len(insights) if insights is not None else None,
        "status": refresher.get_status().model_dump(mode="json")
    }


@router.post(
    "/insights/{insight_id}/dismiss",
    response_model=SuppressionResponse,
    summary="Dismiss Insight"
)
async def dismiss_insight(
    insight_id: str,
    request: Optional[DismissRequest] = None,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db)
) -> SuppressionResponse:
    row = await InsightSuppressionStore(db, actor.user_id).dismiss(
        insight_id,
        request.appointment_id if request else None
    )
    return SuppressionResponse(insight_id=row.insight_id, kind=row.kind, appointment_id=row.appointment_id)


@router.post(
    "/insights/{insight_id}/snooze",
    response_model=SuppressionResponse,
    summary="Snooze Insight",
    description="Hide an insight for a number of minutes (60, 240 and 1440 are the offered options)"
)
async def snooze_insight(
    insight_id: str,
    request: SnoozeRequest,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db)
) -> SuppressionResponse:
    row = await InsightSuppressionStore(db, actor.user_id).snooze(
        insight_id,
        request.minutes,
        request.appointment_id
    )
    return SuppressionResponse(
        insight_id=row.insight_id,
        kind=row.kind,
        appointment_id=row.appointment_id,
        snoozed_until=snooze_expires_at(row),
    )


@router.delete(
    "/insights/{insight_id}/suppression",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Restore Insight"
)
async def restore_insight(
    insight_id: str,
    actor: Actor = Depends(require_actor),
    db: AsyncSession = Depends(get_db)
) -> None:
    if not await InsightSuppressionStore(db, actor.user_id).clear(insight_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Insight is not dismissed or snoozed", "insight_id": insight_id}
        )
