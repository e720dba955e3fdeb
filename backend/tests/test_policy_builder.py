from datetime import time
from uuid import uuid4

import pytest

from scheduling_intel.models.scheduling import AppointmentStatusEnum, InsightTypeEnum, SeverityEnum
from scheduling_intel.models.writeback import RecommendationTypeEnum
from scheduling_intel.schemas.scheduling import ScheduleIntelligence
from scheduling_intel.schemas.writeback import (
    ACTION_PAYLOADS,
    BlockInsertionAction,
    OverbookAction,
    StatusUpdateAction,
    WaitlistFillAction,
    WriteBackRecommendation
)
from scheduling_intel.services.policy import (
    CONFIDENCE_THRESHOLDS,
    ConfidencePolicy,
    is_promotable,
    map_insight_to_action_type,
    threshold_for
)
from scheduling_intel.services.recommendation_builder import ACTION_BUILDERS, RecommendationBuilder


def _insight(insight_type: InsightTypeEnum, confidence: float, **kwargs) -> ScheduleIntelligence:
    return ScheduleIntelligence(
        id=f"insight_{insight_type.value}",
        type=insight_type,
        title="Potential Overbooking",
        description="5 appointments at 10:00",
        confidence=confidence,
        severity=SeverityEnum.MEDIUM,
        **kwargs
    )


class TestConfidencePolicy:
    """Test suite for thresholds and insight-to-action mapping."""

    def test_threshold_table(self):
        assert threshold_for(RecommendationTypeEnum.STATUS_UPDATE) == 95
        assert threshold_for(RecommendationTypeEnum.WAITLIST_FILL) == 85
        assert threshold_for(RecommendationTypeEnum.OVERBOOK_SUGGESTION) == 80
        assert threshold_for(RecommendationTypeEnum.RESCHEDULE) == 75
        assert threshold_for(RecommendationTypeEnum.BLOCK_INSERTION) == 90

    def test_every_action_type_has_a_threshold(self):
        assert set(CONFIDENCE_THRESHOLDS) == set(RecommendationTypeEnum)

    def test_insight_mapping(self):
        assert map_insight_to_action_type(InsightTypeEnum.NO_SHOW_RISK) == RecommendationTypeEnum.WAITLIST_FILL
        assert map_insight_to_action_type(InsightTypeEnum.CAPACITY_GAP) == RecommendationTypeEnum.BLOCK_INSERTION
        assert map_insight_to_action_type(InsightTypeEnum.OVERBOOKING) == RecommendationTypeEnum.OVERBOOK_SUGGESTION
        assert map_insight_to_action_type(InsightTypeEnum.UNDERUTILIZATION) == RecommendationTypeEnum.RESCHEDULE

    def test_informational_types_have_no_action(self):
        assert map_insight_to_action_type(InsightTypeEnum.WAITLIST_OPPORTUNITY) is None
        assert map_insight_to_action_type(InsightTypeEnum.SCHEDULE_INSTABILITY) is None

    @pytest.mark.parametrize("confidence,expected", [(79, False), (79.99, False), (80, True), (100, True)])
    def test_overbooking_gate(self, confidence, expected):
        assert is_promotable(_insight(InsightTypeEnum.OVERBOOKING, confidence)) is expected

    def test_unmapped_insight_is_never_promotable(self):
        assert is_promotable(_insight(InsightTypeEnum.SCHEDULE_INSTABILITY, 100)) is False

    def test_custom_thresholds_merge_over_defaults(self):
        policy = ConfidencePolicy(thresholds={RecommendationTypeEnum.OVERBOOK_SUGGESTION: 70})

        assert policy.threshold_for(RecommendationTypeEnum.OVERBOOK_SUGGESTION) == 70
        assert policy.threshold_for(RecommendationTypeEnum.WAITLIST_FILL) == 85
        assert policy.evaluate(_insight(InsightTypeEnum.OVERBOOKING, 72)) == RecommendationTypeEnum.OVERBOOK_SUGGESTION


class TestRecommendationBuilder:
    """Test suite for turning insights into recommendations."""

    def setup_method(self):
        self.builder = RecommendationBuilder()

    def test_every_action_type_has_a_builder_and_payload(self):
        assert set(ACTION_BUILDERS) == set(RecommendationTypeEnum)
        assert set(ACTION_PAYLOADS) == set(RecommendationTypeEnum)

    def test_overbooking_at_seventy_nine_yields_nothing(self, make_appointment):
        appt = make_appointment(time(10, 0), time(10, 15))

        assert self.builder.build(_insight(InsightTypeEnum.OVERBOOKING, 79), appt) is None

    def test_overbooking_at_eighty_snapshots_threshold(self, make_appointment):
        appt = make_appointment(time(10, 0), time(10, 15))
        other_id = uuid4()
        insight = _insight(
            InsightTypeEnum.OVERBOOKING,
            80,
            suggested_action="Review capacity for this hour",
            metadata={"hour": "10", "affected_appointment_ids": [str(appt.id), str(other_id)]},
        )
        actor_id = uuid4()

        recommendation = self.builder.build(insight, appt, actor_id)

        assert isinstance(recommendation, WriteBackRecommendation)
        assert recommendation.id is None
        assert recommendation.recommendation_type == RecommendationTypeEnum.OVERBOOK_SUGGESTION
        assert recommendation.required_threshold == 80
        assert recommendation.confidence_score == 80
        assert recommendation.appointment_id == appt.id
        assert recommendation.clinic_id == appt.clinic_id
        assert recommendation.insight_id == insight.id
        assert recommendation.rationale == "Review capacity for this hour"
        assert recommendation.created_by == actor_id
        assert recommendation.is_pending

        action = recommendation.proposed_action
        assert isinstance(action, OverbookAction)
        assert action.hour == "10"
        assert action.affected_appointment_ids == [appt.id, other_id]
        assert action.instruction == "Consider allowing additional appointment during high-demand time"

    def test_no_show_payload(self, make_appointment):
        appt = make_appointment(time(9, 0), time(9, 30), no_show_risk=90)
        insight = _insight(InsightTypeEnum.NO_SHOW_RISK, 90, appointment_id=appt.id)

        action = self.builder.build(insight, appt).proposed_action

        assert isinstance(action, WaitlistFillAction)
        assert action.action == "fill_no_show_risk"
        assert action.no_show_risk == 90
        assert action.instruction == "Fill this slot with standby patient due to 90% no-show risk"
        assert action.patient_name == "Doe, Jane"

    def test_capacity_gap_needs_ninety(self, make_appointment):
        """Capacity gaps are derived at 80, below the block-insertion threshold."""
        appt = make_appointment(time(9, 0), time(9, 30))

        assert self.builder.build(_insight(InsightTypeEnum.CAPACITY_GAP, 80), appt) is None

        recommendation = self.builder.build(
            _insight(InsightTypeEnum.CAPACITY_GAP, 92, metadata={"gap_minutes": 120}),
            appt
        )
        assert isinstance(recommendation.proposed_action, BlockInsertionAction)
        assert recommendation.proposed_action.gap_minutes == 120

    def test_proposed_action_round_trips_through_json(self, make_appointment):
        appt = make_appointment(time(9, 0), time(9, 30), no_show_risk=90)
        recommendation = self.builder.build(_insight(InsightTypeEnum.NO_SHOW_RISK, 90), appt)

        restored = WriteBackRecommendation.model_validate_json(recommendation.model_dump_json())

        assert isinstance(restored.proposed_action, WaitlistFillAction)
        assert restored.proposed_action == recommendation.proposed_action


class TestStatusUpdate:
    """Test suite for manually triggered status updates."""

    def setup_method(self):
        self.builder = RecommendationBuilder()

    def test_below_ninety_five_yields_nothing(self, make_appointment):
        appt = make_appointment(time(9, 0), time(9, 30))

        assert self.builder.build_status_update(appt, AppointmentStatusEnum.CHECKED_IN, 94.9) is None

    def test_at_ninety_five(self, make_appointment):
        appt = make_appointment(time(9, 0), time(9, 30))

        recommendation = self.builder.build_status_update(appt, AppointmentStatusEnum.CHECKED_IN, 95)

        assert recommendation.recommendation_type == RecommendationTypeEnum.STATUS_UPDATE
        assert recommendation.required_threshold == 95
        assert isinstance(recommendation.proposed_action, StatusUpdateAction)
        assert recommendation.proposed_action.target_status == AppointmentStatusEnum.CHECKED_IN
