import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Uuid
)
from sqlalchemy.orm import relationship

from scheduling_intel.core.database import Base
from scheduling_intel.utils.datetime_utils import utcnow


class RecommendationTypeEnum(str, enum.Enum):
    """Write-back action types"""
    STATUS_UPDATE = "status_update"
    WAITLIST_FILL = "waitlist_fill"
    OVERBOOK_SUGGESTION = "overbook_suggestion"
    RESCHEDULE = "reschedule"
    BLOCK_INSERTION = "block_insertion"


class ApprovalDecisionEnum(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ExecutionStatusEnum(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class AuditEventTypeEnum(str, enum.Enum):
    """Lifecycle events recorded in the audit trail"""
    RECOMMENDATION_GENERATED = "recommendation_generated"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    EXECUTION_INITIATED = "execution_initiated"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    OUTCOME_RECORDED = "outcome_recorded"


class SuppressionKindEnum(str, enum.Enum):
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


def _in_clause(column: str, values: type) -> str:
    return f"{column} IN ({', '.join(repr(v.value) for v in values)})"


class SchedulerRecommendation(Base):
    """Confidence-gated write-back proposal derived from one insight"""

    __tablename__ = "scheduler_recommendations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    appointment_id = Column(Uuid(as_uuid=True), nullable=False)
    insight_id = Column(String(200))

    recommendation_type = Column(String(30), nullable=False)
    confidence_score = Column(Float, nullable=False)
    # Snapshot of the policy threshold at creation time
    required_threshold = Column(Float, nullable=False)

    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=False)
    rationale = Column(Text, nullable=False, default="")
    expected_impact = Column(JSON, nullable=False, default=dict)
    proposed_action = Column(JSON, nullable=False)

    # None while pending; set exactly once by a decision
    is_approved = Column(Boolean)
    is_executed = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, default=1, nullable=False)

    created_by = Column(Uuid(as_uuid=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    approvals = relationship("SchedulerApproval", back_populates="recommendation")

    __table_args__ = (
        CheckConstraint(_in_clause("recommendation_type", RecommendationTypeEnum), name="recommendation_type_values"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 100", name="confidence_range"),
        CheckConstraint("confidence_score >= required_threshold", name="confidence_meets_threshold"),
        Index("idx_recommendation_clinic_pending", "clinic_id", "is_approved", "expires_at"),
        Index("idx_recommendation_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<SchedulerRecommendation(id='{self.id}', type='{self.recommendation_type}', "
            f"approved={self.is_approved})>"
        )


class SchedulerApproval(Base):
    """One human decision against one recommendation"""

    __tablename__ = "scheduler_approvals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    recommendation_id = Column(Uuid(as_uuid=True), ForeignKey("scheduler_recommendations.id"), nullable=False)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    approver_id = Column(Uuid(as_uuid=True), nullable=False)
    approver_role = Column(String(50), nullable=False)
    decision = Column(String(10), nullable=False)
    approval_note = Column(Text)

    # Decision-time checks, recorded whatever their outcome
    confidence_check_passed = Column(Boolean, nullable=False)
    role_authorized = Column(Boolean, nullable=False)
    data_freshness_check = Column(Boolean, nullable=False)

    approved_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    recommendation = relationship("SchedulerRecommendation", back_populates="approvals")

    __table_args__ = (
        CheckConstraint(_in_clause("decision", ApprovalDecisionEnum), name="decision_values"),
        Index("idx_approval_recommendation", "recommendation_id"),
    )

    def __repr__(self):
        return f"<SchedulerApproval(id='{self.id}', decision='{self.decision}')>"


class SchedulerExecutionLog(Base):
    """Record of pushing an approved recommendation to the system of record"""

    __tablename__ = "scheduler_execution_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    approval_id = Column(Uuid(as_uuid=True), ForeignKey("scheduler_approvals.id"), nullable=False)
    recommendation_id = Column(Uuid(as_uuid=True), ForeignKey("scheduler_recommendations.id"), nullable=False)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    action_type = Column(String(50), nullable=False, default="practice_system_sync")
    external_action_id = Column(String(100))
    execution_status = Column(String(20), nullable=False)
    external_response = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text)
    executed_by = Column(Uuid(as_uuid=True))
    executed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_clause("execution_status", ExecutionStatusEnum), name="execution_status_values"),
        Index("idx_execution_recommendation", "recommendation_id"),
    )

    def __repr__(self):
        return f"<SchedulerExecutionLog(id='{self.id}', status='{self.execution_status}')>"


class SchedulerAuditLog(Base):
    """Append-only lifecycle audit trail"""

    __tablename__ = "scheduler_audit_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    event_type = Column(String(40), nullable=False)

    recommendation_id = Column(Uuid(as_uuid=True))
    approval_id = Column(Uuid(as_uuid=True))
    execution_id = Column(Uuid(as_uuid=True))

    actor_id = Column(Uuid(as_uuid=True))
    actor_role = Column(String(50))
    action_description = Column(Text, nullable=False)
    ai_confidence = Column(Float)
    outcome = Column(JSON, nullable=False, default=dict)

    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_clause("event_type", AuditEventTypeEnum), name="event_type_values"),
        Index("idx_audit_clinic_recorded", "clinic_id", "recorded_at"),
        Index("idx_audit_recommendation", "recommendation_id"),
    )

    def __repr__(self):
        return f"<SchedulerAuditLog(event_type='{self.event_type}', recorded_at='{self.recorded_at}')>"


class WriteBackPermission(Base):
    """Per-clinic, per-role approval rights, one flag per action type"""

    __tablename__ = "write_back_permissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    role_name = Column(String(50), nullable=False)

    can_approve_status_update = Column(Boolean)
    can_approve_waitlist_fill = Column(Boolean)
    can_approve_overbook = Column(Boolean)
    can_approve_reschedule = Column(Boolean)
    can_approve_block_insertion = Column(Boolean)

    __table_args__ = (
        UniqueConstraint("clinic_id", "role_name", name="uq_write_back_permission_clinic_role"),
    )

    def __repr__(self):
        return f"<WriteBackPermission(clinic_id='{self.clinic_id}', role='{self.role_name}')>"


class InsightSuppression(Base):
    """Per-user dismissed or snoozed insight id"""

    __tablename__ = "scheduler_insight_suppressions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    insight_id = Column(String(200), nullable=False)
    appointment_id = Column(Uuid(as_uuid=True))
    kind = Column(String(10), nullable=False)
    snoozed_at = Column(DateTime(timezone=True))
    snooze_minutes = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_clause("kind", SuppressionKindEnum), name="kind_values"),
        CheckConstraint("snooze_minutes IS NULL OR snooze_minutes > 0", name="snooze_minutes_positive"),
        UniqueConstraint("user_id", "insight_id", name="uq_insight_suppression_user_insight"),
    )

    def __repr__(self):
        return f"<InsightSuppression(insight_id='{self.insight_id}', kind='{self.kind}')>"


__all__ = [
    "RecommendationTypeEnum",
    "ApprovalDecisionEnum",
    "ExecutionStatusEnum",
    "AuditEventTypeEnum",
    "SuppressionKindEnum",
    "SchedulerRecommendation",
    "SchedulerApproval",
    "SchedulerExecutionLog",
    "SchedulerAuditLog",
    "WriteBackPermission",
    "InsightSuppression"
]
