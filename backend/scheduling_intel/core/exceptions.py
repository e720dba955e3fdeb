from typing import Any, Dict, Optional


class SchedulingIntelError(Exception):
    """Base exception for scheduling intelligence errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RecordStoreError(SchedulingIntelError):
    """Fetch or write against the record store failed"""
    pass


class RecommendationNotFoundError(SchedulingIntelError):
    """Recommendation does not exist"""

    def __init__(self, recommendation_id: Any):
        super().__init__(
            f"Recommendation {recommendation_id} not found",
            {"recommendation_id": str(recommendation_id)}
        )


class ApprovalNotFoundError(SchedulingIntelError):
    """Approval does not exist"""

    def __init__(self, approval_id: Any):
        super().__init__(
            f"Approval {approval_id} not found",
            {"approval_id": str(approval_id)}
        )


class DecisionConflictError(SchedulingIntelError):
    """Recommendation was already decided, or changed underneath the caller"""
    pass


class ApprovalBlockedError(SchedulingIntelError):
    """Approval refused because a decision-time check failed"""
    pass


class ExecutionPreconditionError(SchedulingIntelError):
    """Execution requested for a recommendation that was not approved"""
    pass


class FeatureDisabledError(SchedulingIntelError):
    """A feature-flagged subsystem is switched off"""

    def __init__(self, flag: str):
        super().__init__(f"Feature '{flag}' is disabled", {"flag": flag})
        self.flag = flag


__all__ = [
    "SchedulingIntelError",
    "RecordStoreError",
    "RecommendationNotFoundError",
    "ApprovalNotFoundError",
    "DecisionConflictError",
    "ApprovalBlockedError",
    "ExecutionPreconditionError",
    "FeatureDisabledError"
]
