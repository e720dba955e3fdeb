import asyncio
from datetime import date, datetime, timedelta
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.core.config import AppConstants, Settings, get_settings
from scheduling_intel.core.exceptions import RecordStoreError
from scheduling_intel.models.scheduling import (
    AppointmentStatusEnum,
    BlockTypeEnum,
    ClinicianSchedule,
    PatientAppointment,
    UserProfile
)
from scheduling_intel.schemas.scheduling import (
    InsightListResponse,
    RefreshStatus,
    ScheduleIntelligence,
    SchedulerAppointment,
    SchedulerBlock,
    SchedulerProvider
)
from scheduling_intel.services.insight_engine import (
    apply_suppression,
    derive_insights,
    filter_insights_for_role
)
from scheduling_intel.services.suppression_service import InsightSuppressionStore
from scheduling_intel.utils.datetime_utils import utcnow

logger = structlog.get_logger(__name__)


STATUS_COLORS: Dict[AppointmentStatusEnum, str] = {
    AppointmentStatusEnum.SCHEDULED: "#DBEAFE",
    AppointmentStatusEnum.CONFIRMED: "#93C5FD",
    AppointmentStatusEnum.CHECKED_IN: "#FDE68A",
    AppointmentStatusEnum.IN_PROGRESS: "#FCD34D",
    AppointmentStatusEnum.COMPLETED: "#86EFAC",
    AppointmentStatusEnum.CANCELLED: "#FCA5A5",
    AppointmentStatusEnum.NO_SHOW: "#EF4444",
}
DEFAULT_STATUS_COLOR = "#E5E7EB"

STATUS_ICONS: Dict[AppointmentStatusEnum, str] = {
    AppointmentStatusEnum.SCHEDULED: "⏳",
    AppointmentStatusEnum.CONFIRMED: "✓",
    AppointmentStatusEnum.CHECKED_IN: "🚶",
    AppointmentStatusEnum.IN_PROGRESS: "🔄",
    AppointmentStatusEnum.COMPLETED: "✅",
    AppointmentStatusEnum.CANCELLED: "❌",
    AppointmentStatusEnum.NO_SHOW: "🚫",
}
DEFAULT_STATUS_ICON = "○"

BLOCK_COLOR = "#E5E7EB"

RiskScorer = Callable[[PatientAppointment], float]


def _as_status(status) -> Optional[AppointmentStatusEnum]:
    try:
        return AppointmentStatusEnum(status)
    except ValueError:
        return None


def status_color(status) -> str:
    return STATUS_COLORS.get(_as_status(status), DEFAULT_STATUS_COLOR)


def status_icon(status) -> str:
    return STATUS_ICONS.get(_as_status(status), DEFAULT_STATUS_ICON)


def is_appointment_late(
    appointment: SchedulerAppointment,
    now: Optional[datetime] = None,
    threshold_minutes: Optional[int] = None
) -> bool:
    """Scheduled or confirmed appointment past its start by more than the threshold.

    Appointment times are clinic wall-clock times, so ``now`` is compared as a
    naive local datetime.
    """
    if appointment.status not in (AppointmentStatusEnum.SCHEDULED, AppointmentStatusEnum.CONFIRMED):
        return False

    if threshold_minutes is None:
        threshold_minutes = get_settings().scheduler.LATE_THRESHOLD_MINUTES
    now = (now or datetime.now()).replace(tzinfo=None)
    starts_at = datetime.combine(appointment.appointment_date, appointment.start_time)
    minutes_late = (now - starts_at) // timedelta(minutes=1)
    return minutes_late > threshold_minutes


def stored_risk_scorer(flagged_risk: float = 95.0) -> RiskScorer:
    """Risk from the record itself: flagged no-shows first, then the stored score"""

    def score(appointment: PatientAppointment) -> float:
        if appointment.no_show:
            return flagged_risk
        if appointment.no_show_risk is not None:
            return float(appointment.no_show_risk)
        return 0.0

    return score


class ScheduleReader:
    """Read-only access to a clinic's appointments, providers and blocks"""

    def __init__(
        self,
        session: AsyncSession,
        risk_scorer: Optional[RiskScorer] = None,
        settings: Optional[Settings] = None
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.risk_scorer = risk_scorer or stored_risk_scorer(self.settings.scheduler.NO_SHOW_FLAGGED_RISK)

    def _to_appointment(self, row: PatientAppointment) -> SchedulerAppointment:
        provider = row.provider
        return SchedulerAppointment(
            id=row.id,
            patient_id=row.patient_id,
            patient_name=row.patient.list_name,
            clinic_id=row.clinic_id,
            provider_id=row.provider_id,
            provider_name=(provider.full_name or None) if provider else None,
            provider_role=provider.role if provider else None,
            appointment_type=row.appointment_type,
            appointment_date=row.appointment_date,
            start_time=row.start_time,
            end_time=row.end_time,
            status=row.status,
            color_code=status_color(row.status),
            status_icon=status_icon(row.status),
            reason_for_visit=row.reason_for_visit,
            chief_complaint=row.chief_complaint,
            no_show_risk=self.risk_scorer(row),
            checked_in_at=row.checked_in_at,
            checked_out_at=row.checked_out_at,
        )

    async def get_appointments(
        self,
        clinic_id: UUID,
        schedule_date: date,
        provider_ids: Optional[Sequence[UUID]] = None
    ) -> List[SchedulerAppointment]:
        """Day's appointments ordered by start time"""
        query = (
            select(PatientAppointment)
            .where(
                PatientAppointment.clinic_id == clinic_id,
                PatientAppointment.appointment_date == schedule_date
            )
            .order_by(PatientAppointment.start_time.asc())
        )
        if provider_ids:
            query = query.where(PatientAppointment.provider_id.in_(list(provider_ids)))

        try:
            result = await self.session.execute(query)
            rows = result.scalars().unique().all()
        except SQLAlchemyError as e:
            logger.error(
                "Error fetching appointments",
                clinic_id=str(clinic_id),
                schedule_date=str(schedule_date),
                error=str(e),
                exc_info=True
            )
            raise RecordStoreError("Appointment fetch failed", {"clinic_id": str(clinic_id)}) from e

        appointments = [self._to_appointment(row) for row in rows]
        logger.debug(
            "Appointments loaded",
            clinic_id=str(clinic_id),
            schedule_date=str(schedule_date),
            count=len(appointments)
        )
        return appointments

    @staticmethod
    def _booked_minutes(appointments: Sequence[SchedulerAppointment]) -> Dict[UUID, int]:
        booked: Dict[UUID, int] = {}
        for appt in appointments:
            if appt.provider_id is None or appt.status == AppointmentStatusEnum.CANCELLED:
                continue
            booked[appt.provider_id] = booked.get(appt.provider_id, 0) + appt.duration_minutes
        return booked

    async def get_providers(
        self,
        clinic_id: UUID,
        schedule_date: Optional[date] = None,
        appointments: Optional[Sequence[SchedulerAppointment]] = None
    ) -> List[SchedulerProvider]:
        """Active clinicians assigned to this clinic or to no clinic.

        With a date, utilization is booked minutes over the workday. Pass the
        day's already loaded appointments to skip a second fetch.
        """
        query = (
            select(UserProfile)
            .where(
                UserProfile.role == AppConstants.ROLE_CLINICIAN,
                UserProfile.is_active.is_(True),
                or_(UserProfile.primary_clinic_id == clinic_id, UserProfile.primary_clinic_id.is_(None))
            )
            .order_by(UserProfile.last_name, UserProfile.first_name)
        )
        try:
            result = await self.session.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Error fetching providers", clinic_id=str(clinic_id), error=str(e), exc_info=True)
            raise RecordStoreError("Provider fetch failed", {"clinic_id": str(clinic_id)}) from e

        booked: Dict[UUID, int] = {}
        if schedule_date:
            if appointments is None:
                appointments = await self.get_appointments(clinic_id, schedule_date)
            booked = self._booked_minutes(appointments)
        workday = self.settings.scheduler.WORKDAY_MINUTES

        providers = []
        for row in rows:
            if schedule_date:
                utilization = min(100.0, round(booked.get(row.id, 0) / workday * 100, 1))
            else:
                utilization = row.utilization
            providers.append(SchedulerProvider(
                id=row.id,
                name=row.full_name,
                role=row.role,
                clinic_id=clinic_id,
                utilization=utilization,
                active=row.is_active,
            ))
        return providers

    async def get_provider_blocks(self, provider_id: UUID, schedule_date: date) -> List[SchedulerBlock]:
        """Break, meeting, administrative and training blocks for one provider-day"""
        query = (
            select(ClinicianSchedule)
            .where(
                ClinicianSchedule.clinician_id == provider_id,
                ClinicianSchedule.schedule_date == schedule_date,
                ClinicianSchedule.schedule_type.in_([b.value for b in BlockTypeEnum])
            )
            .order_by(ClinicianSchedule.start_time.asc())
        )
        try:
            result = await self.session.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Error fetching provider blocks", provider_id=str(provider_id), error=str(e))
            raise RecordStoreError("Provider block fetch failed", {"provider_id": str(provider_id)}) from e

        return [
            SchedulerBlock(
                id=row.id,
                provider_id=row.clinician_id,
                block_type=row.schedule_type,
                start_time=row.start_time,
                end_time=row.end_time,
                reason=row.notes,
                color_code=BLOCK_COLOR,
            )
            for row in rows
        ]


class SchedulerService:
    """Read, derive, suppress and role-filter a clinic day's insights"""

    def __init__(self, session: AsyncSession, reader: Optional[ScheduleReader] = None):
        self.session = session
        self.reader = reader or ScheduleReader(session)

    async def load_day(self, clinic_id: UUID, schedule_date: date):
        appointments = await self.reader.get_appointments(clinic_id, schedule_date)
        providers = await self.reader.get_providers(clinic_id, schedule_date, appointments)
        return appointments, providers

    async def derive_day(self, clinic_id: UUID, schedule_date: date) -> List[ScheduleIntelligence]:
        """Unfiltered insights for a clinic day"""
        appointments, providers = await self.load_day(clinic_id, schedule_date)
        return derive_insights(appointments, providers)

    async def get_schedule_intelligence(
        self,
        clinic_id: UUID,
        schedule_date: date,
        viewer_id: Optional[UUID] = None,
        viewer_role: Optional[str] = None
    ) -> InsightListResponse:
        insights = await self.derive_day(clinic_id, schedule_date)

        suppressed_count = 0
        if viewer_id is not None:
            suppressed_ids = await InsightSuppressionStore(self.session, viewer_id).get_suppressed_ids()
            visible = apply_suppression(insights, suppressed_ids)
            suppressed_count = len(insights) - len(visible)
            insights = visible

        insights = filter_insights_for_role(insights, viewer_role)

        logger.info(
            "Schedule intelligence computed",
            clinic_id=str(clinic_id),
            schedule_date=str(schedule_date),
            viewer_role=viewer_role,
            insight_count=len(insights),
            suppressed_count=suppressed_count
        )
        return InsightListResponse(
            clinic_id=clinic_id,
            schedule_date=schedule_date,
            viewer_role=viewer_role,
            insights=insights,
            suppressed_count=suppressed_count,
        )


RefreshCallback = Callable[[UUID, date], Awaitable[object]]


class ScheduleRefresher:
    """Manual and periodic refresh of a clinic day.

    A manual refresh while one is in flight is dropped. The periodic loop is
    not serialized against manual calls beyond that same guard.
    """

    def __init__(self, refresh_callback: RefreshCallback, interval_seconds: Optional[int] = None):
        self.refresh_callback = refresh_callback
        self.interval_seconds = interval_seconds or get_settings().scheduler.AUTO_REFRESH_INTERVAL_SECONDS
        self.last_refreshed: Optional[datetime] = None
        self.is_refreshing = False
        self._task: Optional[asyncio.Task] = None
        self._next_refresh_at: Optional[float] = None

    async def refresh(self, clinic_id: UUID, schedule_date: date):
        """Run one refresh; returns None when a refresh is already running"""
        if self.is_refreshing:
            logger.info("Refresh already in progress, skipping", clinic_id=str(clinic_id))
            return None

        self.is_refreshing = True
        try:
            result = await self.refresh_callback(clinic_id, schedule_date)
            self.last_refreshed = utcnow()
            return result
        finally:
            self.is_refreshing = False

    def get_status(self) -> RefreshStatus:
        next_refresh_in = None
        if self._next_refresh_at is not None and self.is_auto_refreshing:
            next_refresh_in = max(0.0, round(self._next_refresh_at - time.monotonic(), 1))
        return RefreshStatus(
            last_refreshed=self.last_refreshed,
            is_refreshing=self.is_refreshing,
            next_refresh_in=next_refresh_in,
        )

    @property
    def is_auto_refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self, clinic_id: UUID, schedule_date: date, interval: float) -> None:
        while True:
            self._next_refresh_at = time.monotonic() + interval
            await asyncio.sleep(interval)
            try:
                await self.refresh(clinic_id, schedule_date)
            except Exception as e:
                logger.error("Auto-refresh failed", clinic_id=str(clinic_id), error=str(e), exc_info=True)

    def start_auto_refresh(
        self,
        clinic_id: UUID,
        schedule_date: date,
        interval_seconds: Optional[float] = None
    ) -> asyncio.Task:
        """Start the periodic refresh, replacing any running loop"""
        self.stop_auto_refresh()
        interval = interval_seconds or self.interval_seconds
        self._next_refresh_at = time.monotonic() + interval
        self._task = asyncio.create_task(self._run(clinic_id, schedule_date, interval))
        logger.info("Auto-refresh started", clinic_id=str(clinic_id), interval_seconds=interval)
        return self._task

    def stop_auto_refresh(self) -> None:
        if self._task is not None:
            self._task.cancel()
            logger.info("Auto-refresh stopped")
        self._task = None
        self._next_refresh_at = None


__all__ = [
    "STATUS_COLORS",
    "STATUS_ICONS",
    "status_color",
    "status_icon",
    "is_appointment_late",
    "stored_risk_scorer",
    "ScheduleReader",
    "SchedulerService",
    "ScheduleRefresher"
]
