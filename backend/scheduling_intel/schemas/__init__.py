from scheduling_intel.schemas.scheduling import (
    SchedulerAppointment,
    SchedulerProvider,
    SchedulerBlock,
    ScheduleIntelligence,
    RefreshStatus
)
from scheduling_intel.schemas.writeback import (
    ProposedAction,
    WriteBackRecommendation,
    WriteBackApproval,
    ExecutionResult,
    AuditEntry
)

__all__ = [
    "SchedulerAppointment",
    "SchedulerProvider",
    "SchedulerBlock",
    "ScheduleIntelligence",
    "RefreshStatus",
    "ProposedAction",
    "WriteBackRecommendation",
    "WriteBackApproval",
    "ExecutionResult",
    "AuditEntry"
]
