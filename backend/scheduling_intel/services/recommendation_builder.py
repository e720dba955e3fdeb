from typing import Any, Callable, Dict, Optional
from uuid import UUID

import structlog

from scheduling_intel.models.scheduling import AppointmentStatusEnum, InsightTypeEnum, SeverityEnum
from scheduling_intel.models.writeback import RecommendationTypeEnum
from scheduling_intel.schemas.scheduling import ScheduleIntelligence, SchedulerAppointment
from scheduling_intel.schemas.writeback import (
    ACTION_PAYLOADS,
    BlockInsertionAction,
    OverbookAction,
    ProposedActionBase,
    RescheduleAction,
    StatusUpdateAction,
    WaitlistFillAction,
    WriteBackRecommendation
)
from scheduling_intel.services.policy import ConfidencePolicy, default_policy

logger = structlog.get_logger(__name__)


def _base_fields(appointment: SchedulerAppointment) -> Dict[str, Any]:
    return {
        "appointment_id": appointment.id,
        "appointment_date": appointment.appointment_date,
        "start_time": appointment.start_time,
        "end_time": appointment.end_time,
        "patient_name": appointment.patient_name,
    }


def _waitlist_fill(appointment: SchedulerAppointment, insight: ScheduleIntelligence) -> WaitlistFillAction:
    return WaitlistFillAction(
        **_base_fields(appointment),
        no_show_risk=appointment.no_show_risk,
        instruction=(
            f"Fill this slot with standby patient due to "
            f"{appointment.no_show_risk:.0f}% no-show risk"
        ),
    )


def _reschedule(appointment: SchedulerAppointment, insight: ScheduleIntelligence) -> RescheduleAction:
    return RescheduleAction(
        **_base_fields(appointment),
        provider_id=insight.provider_id,
        booked_hours=insight.metadata.get("total_hours"),
        instruction="Move this appointment to higher-utilization time slot",
    )


def _overbook(appointment: SchedulerAppointment, insight: ScheduleIntelligence) -> OverbookAction:
    return OverbookAction(
        **_base_fields(appointment),
        hour=insight.metadata.get("hour"),
        affected_appointment_ids=insight.metadata.get("affected_appointment_ids", []),
        instruction="Consider allowing additional appointment during high-demand time",
    )


def _block_insertion(appointment: SchedulerAppointment, insight: ScheduleIntelligence) -> BlockInsertionAction:
    return BlockInsertionAction(
        **_base_fields(appointment),
        provider_id=insight.provider_id,
        gap_minutes=insight.metadata.get("gap_minutes"),
        next_appointment_id=insight.metadata.get("end_appointment_id"),
        instruction="Add break or buffer block in scheduling gap",
    )


def _status_update(appointment: SchedulerAppointment, insight: ScheduleIntelligence) -> StatusUpdateAction:
    return StatusUpdateAction(
        **_base_fields(appointment),
        target_status=insight.metadata.get("target_status"),
        instruction="Update appointment status based on check-in",
    )


ACTION_BUILDERS: Dict[RecommendationTypeEnum, Callable[[SchedulerAppointment, ScheduleIntelligence], ProposedActionBase]] = {
    RecommendationTypeEnum.WAITLIST_FILL: _waitlist_fill,
    RecommendationTypeEnum.RESCHEDULE: _reschedule,
    RecommendationTypeEnum.OVERBOOK_SUGGESTION: _overbook,
    RecommendationTypeEnum.BLOCK_INSERTION: _block_insertion,
    RecommendationTypeEnum.STATUS_UPDATE: _status_update,
}


class RecommendationBuilder:
    """Turns an eligible insight into an unsaved write-back recommendation"""

    def __init__(self, policy: Optional[ConfidencePolicy] = None):
        self.policy = policy or default_policy

    def build(
        self,
        insight: ScheduleIntelligence,
        appointment: SchedulerAppointment,
        actor_id: Optional[UUID] = None
    ) -> Optional[WriteBackRecommendation]:
        """Build a recommendation, or None when the insight is not promotable"""
        action_type = self.policy.evaluate(insight)
        if action_type is None:
            return None

        proposed_action = ACTION_BUILDERS[action_type](appointment, insight)

        recommendation = WriteBackRecommendation(
            clinic_id=appointment.clinic_id,
            appointment_id=appointment.id,
            insight_id=insight.id,
            recommendation_type=action_type,
            confidence_score=insight.confidence,
            required_threshold=self.policy.threshold_for(action_type),
            title=insight.title,
            description=insight.description,
            rationale=insight.suggested_action or "",
            expected_impact={
                "type": insight.type.value,
                "severity": insight.severity.value,
                "confidence_pct": insight.confidence,
            },
            proposed_action=proposed_action,
            created_by=actor_id,
        )

        logger.info(
            "Recommendation built",
            insight_id=insight.id,
            recommendation_type=action_type.value,
            confidence_score=insight.confidence,
            required_threshold=recommendation.required_threshold
        )
        return recommendation

    def build_status_update(
        self,
        appointment: SchedulerAppointment,
        target_status: AppointmentStatusEnum,
        confidence: float,
        actor_id: Optional[UUID] = None,
        rationale: str = "Update appointment status based on check-in"
    ) -> Optional[WriteBackRecommendation]:
        """Manually triggered status update, gated by the status_update threshold"""
        action_type = RecommendationTypeEnum.STATUS_UPDATE
        required = self.policy.threshold_for(action_type)
        if confidence < required:
            logger.info(
                "Status update below threshold",
                appointment_id=str(appointment.id),
                confidence=confidence,
                required_threshold=required
            )
            return None

        # Synthetic insight carrying the trigger so the payload builder stays uniform
        trigger = ScheduleIntelligence(
            id=f"manual_status_update_{appointment.id}",
            type=InsightTypeEnum.SCHEDULE_INSTABILITY,
            title="Status Update",
            description=f"{appointment.patient_name} - {appointment.start_time:%H:%M} to {target_status.value}",
            confidence=confidence,
            appointment_id=appointment.id,
            provider_id=appointment.provider_id,
            suggested_action=rationale,
            severity=SeverityEnum.MEDIUM,
            metadata={"target_status": target_status.value},
        )

        return WriteBackRecommendation(
            clinic_id=appointment.clinic_id,
            appointment_id=appointment.id,
            insight_id=trigger.id,
            recommendation_type=action_type,
            confidence_score=confidence,
            required_threshold=required,
            title=trigger.title,
            description=trigger.description,
            rationale=rationale,
            expected_impact={"type": "status_update", "target_status": target_status.value},
            proposed_action=_status_update(appointment, trigger),
            created_by=actor_id,
        )


__all__ = [
    "ACTION_BUILDERS",
    "RecommendationBuilder"
]
