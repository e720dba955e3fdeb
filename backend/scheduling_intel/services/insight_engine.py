"""Pure insight derivation over one clinic day.

Each rule runs independently, so one appointment or provider can produce
several insights. Nothing here touches the database.
"""
from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set
from uuid import UUID

import structlog

from scheduling_intel.core.config import AppConstants
from scheduling_intel.models.scheduling import InsightTypeEnum, SeverityEnum
from scheduling_intel.schemas.scheduling import (
    ScheduleIntelligence,
    SchedulerAppointment,
    SchedulerProvider,
    minutes_of_day
)

logger = structlog.get_logger(__name__)


ROLE_VISIBLE_INSIGHTS: Dict[str, FrozenSet[InsightTypeEnum]] = {
    AppConstants.ROLE_FRONT_DESK: frozenset({
        InsightTypeEnum.NO_SHOW_RISK,
        InsightTypeEnum.CAPACITY_GAP,
    }),
    AppConstants.ROLE_CLINICIAN: frozenset({
        InsightTypeEnum.OVERBOOKING,
        InsightTypeEnum.SCHEDULE_INSTABILITY,
    }),
}


def no_show_insights(appointments: Sequence[SchedulerAppointment]) -> List[ScheduleIntelligence]:
    insights = []
    for appt in appointments:
        if appt.no_show_risk > AppConstants.NO_SHOW_RISK_THRESHOLD:
            insights.append(ScheduleIntelligence(
                id=f"insight_no_show_{appt.id}",
                type=InsightTypeEnum.NO_SHOW_RISK,
                title="High No-Show Risk",
                description=f"{appt.patient_name} - {appt.start_time:%H:%M}",
                confidence=appt.no_show_risk,
                appointment_id=appt.id,
                provider_id=appt.provider_id,
                suggested_action="Send reminder or fill with standby",
                severity=SeverityEnum.HIGH,
                metadata={"no_show_risk": appt.no_show_risk},
            ))
    return insights


def overbooking_insights(appointments: Sequence[SchedulerAppointment]) -> List[ScheduleIntelligence]:
    by_hour: Dict[str, List[SchedulerAppointment]] = defaultdict(list)
    for appt in appointments:
        by_hour[f"{appt.start_time.hour:02d}"].append(appt)

    insights = []
    for hour in sorted(by_hour):
        booked = by_hour[hour]
        if len(booked) > AppConstants.OVERBOOKING_PER_HOUR_LIMIT:
            insights.append(ScheduleIntelligence(
                id=f"insight_overbooking_{hour}",
                type=InsightTypeEnum.OVERBOOKING,
                title="Potential Overbooking",
                description=f"{len(booked)} appointments at {hour}:00",
                confidence=85,
                suggested_action="Review capacity for this hour",
                severity=SeverityEnum.MEDIUM,
                metadata={
                    "hour": hour,
                    "appointment_count": len(booked),
                    "affected_appointment_ids": [str(a.id) for a in booked],
                },
            ))
    return insights


def underutilization_insights(
    appointments: Sequence[SchedulerAppointment],
    providers: Sequence[SchedulerProvider]
) -> List[ScheduleIntelligence]:
    insights = []
    for provider in providers:
        booked = [a for a in appointments if a.provider_id == provider.id]
        if not booked:
            continue

        total_hours = sum(a.duration_minutes for a in booked) / 60
        if total_hours < AppConstants.UNDERUTILIZATION_HOURS:
            insights.append(ScheduleIntelligence(
                id=f"insight_underutilization_{provider.id}",
                type=InsightTypeEnum.UNDERUTILIZATION,
                title="Low Provider Utilization",
                description=f"{provider.name} has only {total_hours:.1f} hours booked",
                confidence=90,
                provider_id=provider.id,
                suggested_action="Review scheduling or add appointments",
                severity=SeverityEnum.LOW,
                metadata={
                    "provider_id": str(provider.id),
                    "total_hours": round(total_hours, 1),
                    "appointment_ids": [str(a.id) for a in booked],
                },
            ))
    return insights


def capacity_gap_insights(appointments: Sequence[SchedulerAppointment]) -> List[ScheduleIntelligence]:
    by_provider: Dict[UUID, List[SchedulerAppointment]] = defaultdict(list)
    for appt in appointments:
        if appt.provider_id is not None:
            by_provider[appt.provider_id].append(appt)

    insights = []
    for provider_id, booked in by_provider.items():
        booked = sorted(booked, key=lambda a: (a.start_time, a.end_time))
        for current, following in zip(booked, booked[1:]):
            gap_minutes = minutes_of_day(following.start_time) - minutes_of_day(current.end_time)
            if gap_minutes < AppConstants.CAPACITY_GAP_MINUTES:
                continue

            insights.append(ScheduleIntelligence(
                id=f"insight_capacity_gap_{current.id}_{following.id}",
                type=InsightTypeEnum.CAPACITY_GAP,
                title="Scheduling Gap",
                description=(
                    f"{gap_minutes / 60:.1f}h gap between "
                    f"{current.end_time:%H:%M} and {following.start_time:%H:%M}"
                ),
                confidence=80,
                appointment_id=current.id,
                provider_id=provider_id,
                suggested_action="Consider filling with waitlist patients",
                severity=SeverityEnum.LOW,
                metadata={
                    "provider_id": str(provider_id),
                    "gap_minutes": gap_minutes,
                    "start_appointment_id": str(current.id),
                    "end_appointment_id": str(following.id),
                },
            ))
    return insights


def derive_insights(
    appointments: Sequence[SchedulerAppointment],
    providers: Sequence[SchedulerProvider]
) -> List[ScheduleIntelligence]:
    """Derive every insight for a day's appointments and provider roster"""
    insights = [
        *no_show_insights(appointments),
        *overbooking_insights(appointments),
        *underutilization_insights(appointments, providers),
        *capacity_gap_insights(appointments),
    ]

    logger.debug(
        "Insights derived",
        appointment_count=len(appointments),
        provider_count=len(providers),
        insight_count=len(insights)
    )
    return insights


def visible_insight_types(role: Optional[str]) -> FrozenSet[InsightTypeEnum]:
    return ROLE_VISIBLE_INSIGHTS.get(role or "", frozenset(InsightTypeEnum))


def filter_insights_for_role(
    insights: Iterable[ScheduleIntelligence],
    role: Optional[str]
) -> List[ScheduleIntelligence]:
    """Narrow insights to what a viewer's role is shown"""
    visible = visible_insight_types(role)
    return [insight for insight in insights if insight.type in visible]


def apply_suppression(
    insights: Iterable[ScheduleIntelligence],
    suppressed_ids: Set[str]
) -> List[ScheduleIntelligence]:
    """Drop insights whose id the viewer dismissed or has snoozed"""
    return [insight for insight in insights if insight.id not in suppressed_ids]


__all__ = [
    "ROLE_VISIBLE_INSIGHTS",
    "no_show_insights",
    "overbooking_insights",
    "underutilization_insights",
    "capacity_gap_insights",
    "derive_insights",
    "visible_insight_types",
    "filter_insights_for_role",
    "apply_suppression"
]
