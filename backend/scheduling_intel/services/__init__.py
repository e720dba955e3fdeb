from scheduling_intel.services.scheduler_service import ScheduleReader, ScheduleRefresher, SchedulerService
from scheduling_intel.services.writeback_service import WriteBackService

__all__ = [
    "ScheduleReader",
    "ScheduleRefresher",
    "SchedulerService",
    "WriteBackService"
]
