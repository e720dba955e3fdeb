from scheduling_intel.models.scheduling import (
    UserProfile,
    Patient,
    PatientAppointment,
    ClinicianSchedule,
    AppointmentStatusEnum,
    InsightTypeEnum,
    SeverityEnum,
    BlockTypeEnum
)

from scheduling_intel.models.writeback import (
    SchedulerRecommendation,
    SchedulerApproval,
    SchedulerExecutionLog,
    SchedulerAuditLog,
    WriteBackPermission,
    InsightSuppression,
    RecommendationTypeEnum,
    ApprovalDecisionEnum,
    ExecutionStatusEnum,
    AuditEventTypeEnum,
    SuppressionKindEnum
)

# Base model for all tables
from scheduling_intel.core.database import Base

# Tables mirrored from the external system of record (read-only here)
SCHEDULE_MODELS = [
    UserProfile,
    Patient,
    PatientAppointment,
    ClinicianSchedule
]

# Tables owned by the write-back engine
WRITEBACK_MODELS = [
    SchedulerRecommendation,
    SchedulerApproval,
    SchedulerExecutionLog,
    SchedulerAuditLog,
    WriteBackPermission,
    InsightSuppression
]

ALL_MODELS = SCHEDULE_MODELS + WRITEBACK_MODELS


def get_all_table_names() -> list[str]:
    """Get all table names in the system"""
    return [model.__tablename__ for model in ALL_MODELS]


__all__ = [
    "Base",

    # Schedule models
    "UserProfile",
    "Patient",
    "PatientAppointment",
    "ClinicianSchedule",

    # Write-back models
    "SchedulerRecommendation",
    "SchedulerApproval",
    "SchedulerExecutionLog",
    "SchedulerAuditLog",
    "WriteBackPermission",
    "InsightSuppression",

    # Enums
    "AppointmentStatusEnum",
    "InsightTypeEnum",
    "SeverityEnum",
    "BlockTypeEnum",
    "RecommendationTypeEnum",
    "ApprovalDecisionEnum",
    "ExecutionStatusEnum",
    "AuditEventTypeEnum",
    "SuppressionKindEnum",

    # Collections
    "SCHEDULE_MODELS",
    "WRITEBACK_MODELS",
    "ALL_MODELS",
    "get_all_table_names"
]
