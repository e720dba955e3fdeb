from datetime import date, datetime, time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scheduling_intel.models.scheduling import AppointmentStatusEnum
from scheduling_intel.models.writeback import (
    ApprovalDecisionEnum,
    AuditEventTypeEnum,
    ExecutionStatusEnum,
    RecommendationTypeEnum
)


class ProposedActionBase(BaseModel):
    """Machine-readable fields shared by every proposed action"""

    appointment_id: UUID
    appointment_date: date
    start_time: time
    end_time: time
    patient_name: str
    instruction: str = Field(..., min_length=1, description="Actionable instruction for the approver")


class WaitlistFillAction(ProposedActionBase):
    action: Literal["fill_no_show_risk"] = "fill_no_show_risk"
    no_show_risk: float = Field(..., ge=0.0, le=100.0)


class RescheduleAction(ProposedActionBase):
    action: Literal["reschedule_appointment"] = "reschedule_appointment"
    provider_id: Optional[UUID] = None
    booked_hours: Optional[float] = None


class OverbookAction(ProposedActionBase):
    action: Literal["accept_overbooking"] = "accept_overbooking"
    hour: Optional[str] = None
    affected_appointment_ids: List[UUID] = Field(default_factory=list)


class BlockInsertionAction(ProposedActionBase):
    action: Literal["insert_buffer_block"] = "insert_buffer_block"
    provider_id: Optional[UUID] = None
    gap_minutes: Optional[int] = None
    next_appointment_id: Optional[UUID] = None


class StatusUpdateAction(ProposedActionBase):
    action: Literal["update_status"] = "update_status"
    target_status: Optional[AppointmentStatusEnum] = None


ProposedAction = Annotated[
    Union[
        WaitlistFillAction,
        RescheduleAction,
        OverbookAction,
        BlockInsertionAction,
        StatusUpdateAction
    ],
    Field(discriminator="action")
]

# Exhaustive: every action type has exactly one payload shape
ACTION_PAYLOADS: Dict[RecommendationTypeEnum, type] = {
    RecommendationTypeEnum.WAITLIST_FILL: WaitlistFillAction,
    RecommendationTypeEnum.RESCHEDULE: RescheduleAction,
    RecommendationTypeEnum.OVERBOOK_SUGGESTION: OverbookAction,
    RecommendationTypeEnum.BLOCK_INSERTION: BlockInsertionAction,
    RecommendationTypeEnum.STATUS_UPDATE: StatusUpdateAction,
}


class WriteBackRecommendation(BaseModel):
    """Write-back proposal; id is None until saved"""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    clinic_id: UUID
    appointment_id: UUID
    insight_id: Optional[str] = None
    recommendation_type: RecommendationTypeEnum
    confidence_score: float = Field(..., ge=0.0, le=100.0)
    required_threshold: float = Field(..., ge=0.0, le=100.0)
    title: str
    description: str
    rationale: str = ""
    expected_impact: Dict[str, Any] = Field(default_factory=dict)
    proposed_action: ProposedAction
    is_approved: Optional[bool] = None
    is_executed: bool = False
    version: int = 1
    created_by: Optional[UUID] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.is_approved is None


class WriteBackApproval(BaseModel):
    """Recorded human decision with its decision-time checks"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    recommendation_id: UUID
    clinic_id: UUID
    approver_id: UUID
    approver_role: str
    decision: ApprovalDecisionEnum
    approval_note: Optional[str] = None
    confidence_check_passed: bool
    role_authorized: bool
    data_freshness_check: bool
    approved_at: datetime

    @property
    def all_checks_passed(self) -> bool:
        return self.confidence_check_passed and self.role_authorized and self.data_freshness_check


class ExecutionResult(BaseModel):
    """Outcome of pushing an approved recommendation to the system of record"""

    success: bool
    execution_id: UUID
    recommendation_id: UUID
    approval_id: UUID
    execution_status: ExecutionStatusEnum
    external_action_id: Optional[str] = None
    error_message: Optional[str] = None
    executed_at: datetime


class AuditEntry(BaseModel):
    """Immutable lifecycle event"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    clinic_id: UUID
    event_type: AuditEventTypeEnum
    recommendation_id: Optional[UUID] = None
    approval_id: Optional[UUID] = None
    execution_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None
    actor_role: Optional[str] = None
    action_description: str
    ai_confidence: Optional[float] = None
    outcome: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime


class DecisionRequest(BaseModel):
    """Approve or reject a pending recommendation"""

    decision: ApprovalDecisionEnum
    note: Optional[str] = Field(None, max_length=2000)


class ExecutionRequest(BaseModel):
    """Record the push of an approved recommendation"""

    external_action_id: Optional[str] = Field(None, max_length=100)
    external_response: Dict[str, Any] = Field(default_factory=dict)


class ExecutionFailureRequest(BaseModel):
    """Record a failed or rolled-back push"""

    approval_id: UUID
    execution_status: ExecutionStatusEnum = ExecutionStatusEnum.FAILED
    error_message: str = Field(..., min_length=1)
    external_action_id: Optional[str] = None
    external_response: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("execution_status")
    @classmethod
    def reject_success(cls, v: ExecutionStatusEnum) -> ExecutionStatusEnum:
        if v == ExecutionStatusEnum.SUCCESS:
            raise ValueError("failure records must be failed or rolled_back")
        return v


class OutcomeRequest(BaseModel):
    """Observed outcome after a write-back was carried out"""

    outcome: Dict[str, Any]
    description: Optional[str] = None


class GenerateRecommendationsResponse(BaseModel):
    """Result of promoting a clinic day's insights"""

    clinic_id: UUID
    schedule_date: date
    insights_evaluated: int
    recommendations: List[WriteBackRecommendation]


class PermissionCheckResponse(BaseModel):
    user_id: UUID
    clinic_id: UUID
    recommendation_type: RecommendationTypeEnum
    can_approve: bool


__all__ = [
    "ProposedActionBase",
    "WaitlistFillAction",
    "RescheduleAction",
    "OverbookAction",
    "BlockInsertionAction",
    "StatusUpdateAction",
    "ProposedAction",
    "ACTION_PAYLOADS",
    "WriteBackRecommendation",
    "WriteBackApproval",
    "ExecutionResult",
    "AuditEntry",
    "DecisionRequest",
    "ExecutionRequest",
    "ExecutionFailureRequest",
    "OutcomeRequest",
    "GenerateRecommendationsResponse",
    "PermissionCheckResponse"
]
