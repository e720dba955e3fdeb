"""Confidence thresholds and insight-to-action mapping for write-back.

An insight is promotable to a write-back recommendation only when its type
maps to an action type and its confidence meets that action's threshold.
"""
from types import MappingProxyType
from typing import Mapping, Optional

import structlog

from scheduling_intel.models.scheduling import InsightTypeEnum
from scheduling_intel.models.writeback import RecommendationTypeEnum
from scheduling_intel.schemas.scheduling import ScheduleIntelligence

logger = structlog.get_logger(__name__)


CONFIDENCE_THRESHOLDS: Mapping[RecommendationTypeEnum, float] = MappingProxyType({
    RecommendationTypeEnum.STATUS_UPDATE: 95.0,
    RecommendationTypeEnum.WAITLIST_FILL: 85.0,
    RecommendationTypeEnum.OVERBOOK_SUGGESTION: 80.0,
    RecommendationTypeEnum.RESCHEDULE: 75.0,
    RecommendationTypeEnum.BLOCK_INSERTION: 90.0,
})

# status_update has no automatic insight source
INSIGHT_ACTION_MAP: Mapping[InsightTypeEnum, RecommendationTypeEnum] = MappingProxyType({
    InsightTypeEnum.NO_SHOW_RISK: RecommendationTypeEnum.WAITLIST_FILL,
    InsightTypeEnum.CAPACITY_GAP: RecommendationTypeEnum.BLOCK_INSERTION,
    InsightTypeEnum.OVERBOOKING: RecommendationTypeEnum.OVERBOOK_SUGGESTION,
    InsightTypeEnum.UNDERUTILIZATION: RecommendationTypeEnum.RESCHEDULE,
})


def threshold_for(action_type: RecommendationTypeEnum) -> float:
    """Required confidence for an action type"""
    return CONFIDENCE_THRESHOLDS[RecommendationTypeEnum(action_type)]


def map_insight_to_action_type(insight_type: InsightTypeEnum) -> Optional[RecommendationTypeEnum]:
    """Write-back action for an insight type, or None when informational only"""
    return INSIGHT_ACTION_MAP.get(InsightTypeEnum(insight_type))


def is_promotable(insight: ScheduleIntelligence) -> bool:
    action_type = map_insight_to_action_type(insight.type)
    if action_type is None:
        return False
    return insight.confidence >= threshold_for(action_type)


class ConfidencePolicy:
    """Threshold policy; a custom table can be supplied for a clinic rollout"""

    def __init__(
        self,
        thresholds: Optional[Mapping[RecommendationTypeEnum, float]] = None,
        insight_actions: Optional[Mapping[InsightTypeEnum, RecommendationTypeEnum]] = None
    ):
        merged = dict(CONFIDENCE_THRESHOLDS)
        merged.update(thresholds or {})
        missing = set(RecommendationTypeEnum) - set(merged)
        if missing:
            raise ValueError(f"Missing thresholds for: {sorted(m.value for m in missing)}")
        self.thresholds = MappingProxyType(merged)
        self.insight_actions = MappingProxyType(dict(INSIGHT_ACTION_MAP if insight_actions is None else insight_actions))

    def threshold_for(self, action_type: RecommendationTypeEnum) -> float:
        return self.thresholds[RecommendationTypeEnum(action_type)]

    def map_insight_to_action_type(self, insight_type: InsightTypeEnum) -> Optional[RecommendationTypeEnum]:
        return self.insight_actions.get(InsightTypeEnum(insight_type))

    def evaluate(self, insight: ScheduleIntelligence) -> Optional[RecommendationTypeEnum]:
        """Action type when the insight is promotable, otherwise None"""
        action_type = self.map_insight_to_action_type(insight.type)
        if action_type is None:
            logger.debug("Insight type has no write-back path", insight_id=insight.id, insight_type=insight.type.value)
            return None

        required = self.threshold_for(action_type)
        if insight.confidence < required:
            logger.info(
                "Confidence below threshold, insight stays informational",
                insight_id=insight.id,
                confidence=insight.confidence,
                required_threshold=required
            )
            return None

        return action_type


default_policy = ConfidencePolicy()


__all__ = [
    "CONFIDENCE_THRESHOLDS",
    "INSIGHT_ACTION_MAP",
    "threshold_for",
    "map_insight_to_action_type",
    "is_promotable",
    "ConfidencePolicy",
    "default_policy"
]
