from datetime import date, datetime, time
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator
)

from scheduling_intel.models.scheduling import (
    AppointmentStatusEnum,
    BlockTypeEnum,
    InsightTypeEnum,
    SeverityEnum
)


class SchedulerAppointment(BaseModel):
    """Appointment as seen by the insight engine"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Appointment identifier")
    patient_id: UUID = Field(..., description="Patient identifier")
    patient_name: str = Field(..., description="Patient display name, 'Last, First'")
    clinic_id: UUID = Field(..., description="Clinic identifier")
    provider_id: Optional[UUID] = Field(None, description="Scheduled provider")
    provider_name: Optional[str] = Field(None, description="Provider display name")
    provider_role: Optional[str] = Field(None, description="Provider role")
    appointment_type: str = Field(..., description="Visit type")
    appointment_date: date = Field(..., description="Local appointment date")
    start_time: time = Field(..., description="Local start time (24h)")
    end_time: time = Field(..., description="Local end time (24h)")
    status: AppointmentStatusEnum = Field(AppointmentStatusEnum.SCHEDULED, description="Appointment status")
    color_code: Optional[str] = Field(None, description="Status colour for calendar rendering")
    status_icon: Optional[str] = Field(None, description="Status glyph for compact views")
    reason_for_visit: Optional[str] = None
    chief_complaint: Optional[str] = None
    no_show_risk: float = Field(0.0, ge=0.0, le=100.0, description="No-show risk score (0-100)")
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def truncate_to_minute(cls, v: time) -> time:
        return v.replace(second=0, microsecond=0)

    @model_validator(mode="after")
    def validate_time_order(self):
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @property
    def duration_minutes(self) -> int:
        return minutes_of_day(self.end_time) - minutes_of_day(self.start_time)


class SchedulerProvider(BaseModel):
    """Schedulable clinic staff member"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    role: str
    clinic_id: UUID
    utilization: Optional[float] = Field(None, ge=0.0, le=100.0, description="Utilization percentage")
    active: bool = True


class SchedulerBlock(BaseModel):
    """Non-patient block on a provider's day"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_id: UUID
    block_type: BlockTypeEnum
    start_time: time
    end_time: time
    reason: Optional[str] = None
    color_code: str = "#E5E7EB"


class ScheduleIntelligence(BaseModel):
    """Derived, recomputed-on-demand schedule insight"""

    id: str = Field(..., description="Deterministic id derived from type and subject")
    type: InsightTypeEnum
    title: str
    description: str
    confidence: float = Field(..., ge=0.0, le=100.0)
    appointment_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    suggested_action: Optional[str] = None
    severity: SeverityEnum
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "insight_no_show_6f1c8a5e-8f43-4f4e-9d55-0b1b1c1d2e3f",
                "type": "no_show_risk",
                "title": "High No-Show Risk",
                "description": "Doe, Jane - 09:00",
                "confidence": 82.0,
                "appointment_id": "6f1c8a5e-8f43-4f4e-9d55-0b1b1c1d2e3f",
                "suggested_action": "Send reminder or fill with standby",
                "severity": "high",
                "metadata": {}
            }
        }
    )


class RefreshStatus(BaseModel):
    """State of the schedule refresher"""

    last_refreshed: Optional[datetime] = None
    is_refreshing: bool = False
    next_refresh_in: Optional[float] = Field(None, description="Seconds until the next periodic refresh")


class SnoozeRequest(BaseModel):
    """Request body for snoozing an insight"""

    minutes: int = Field(..., gt=0, le=60 * 24 * 30, description="Snooze duration in minutes")
    appointment_id: Optional[UUID] = None


class DismissRequest(BaseModel):
    """Request body for dismissing an insight"""

    appointment_id: Optional[UUID] = None


class AppointmentListResponse(BaseModel):
    """A clinic day's appointments with the ones running late"""

    clinic_id: UUID
    schedule_date: date
    appointments: List[SchedulerAppointment]
    late_appointment_ids: List[UUID] = Field(default_factory=list)


class SuppressionResponse(BaseModel):
    """Dismissal or snooze recorded for the viewer"""

    model_config = ConfigDict(from_attributes=True)

    insight_id: str
    kind: str
    appointment_id: Optional[UUID] = None
    snoozed_until: Optional[datetime] = None


class InsightListResponse(BaseModel):
    """Viewer-filtered insights for a clinic day"""

    clinic_id: UUID
    schedule_date: date
    viewer_role: Optional[str] = None
    insights: List[ScheduleIntelligence]
    suppressed_count: int = 0


def minutes_of_day(value: time) -> int:
    """Minutes since midnight at minute resolution"""
    return value.hour * 60 + value.minute


__all__ = [
    "SchedulerAppointment",
    "SchedulerProvider",
    "SchedulerBlock",
    "ScheduleIntelligence",
    "RefreshStatus",
    "SnoozeRequest",
    "DismissRequest",
    "AppointmentListResponse",
    "SuppressionResponse",
    "InsightListResponse",
    "minutes_of_day"
]
