import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Float,
    Boolean,
    Date,
    Time,
    DateTime,
    Text,
    ForeignKey,
    Index,
    CheckConstraint,
    Uuid
)
from sqlalchemy.orm import relationship

from scheduling_intel.core.database import Base


class AppointmentStatusEnum(str, enum.Enum):
    """Appointment lifecycle status as reported by the system of record"""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class InsightTypeEnum(str, enum.Enum):
    """Derived schedule insight types"""
    NO_SHOW_RISK = "no_show_risk"
    CAPACITY_GAP = "capacity_gap"
    OVERBOOKING = "overbooking"
    WAITLIST_OPPORTUNITY = "waitlist_opportunity"
    UNDERUTILIZATION = "underutilization"
    SCHEDULE_INSTABILITY = "schedule_instability"


class SeverityEnum(str, enum.Enum):
    """Insight severity"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BlockTypeEnum(str, enum.Enum):
    """Non-patient provider schedule blocks"""
    BREAK = "break"
    MEETING = "meeting"
    ADMINISTRATIVE = "administrative"
    TRAINING = "training"


def _in_clause(column: str, values: type) -> str:
    return f"{column} IN ({', '.join(repr(v.value) for v in values)})"


class UserProfile(Base):
    """Clinic staff member; providers are the active clinicians"""

    __tablename__ = "user_profiles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_name = Column(String(200))
    first_name = Column(String(100))
    last_name = Column(String(100))
    role = Column(String(50), nullable=False, default="staff", index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    primary_clinic_id = Column(Uuid(as_uuid=True), index=True)

    # Stored utilization percentage, when the system of record supplies one
    utilization = Column(Float)

    appointments = relationship("PatientAppointment", back_populates="provider")

    __table_args__ = (
        CheckConstraint("utilization >= 0 AND utilization <= 100", name="utilization_range"),
    )

    @property
    def full_name(self) -> str:
        if self.display_name:
            return self.display_name
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<UserProfile(id='{self.id}', role='{self.role}')>"


class Patient(Base):
    """Patient identity mirrored from the system of record"""

    __tablename__ = "patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)

    appointments = relationship("PatientAppointment", back_populates="patient")

    @property
    def list_name(self) -> str:
        return f"{self.last_name}, {self.first_name}"

    def __repr__(self):
        return f"<Patient(id='{self.id}')>"


class PatientAppointment(Base):
    """One scheduled patient visit. Read-only from this service"""

    __tablename__ = "patient_appointments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinic_id = Column(Uuid(as_uuid=True), nullable=False)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False)
    provider_id = Column(Uuid(as_uuid=True), ForeignKey("user_profiles.id"))

    appointment_type = Column(String(100), nullable=False)
    appointment_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String(20), default=AppointmentStatusEnum.SCHEDULED.value, nullable=False)

    reason_for_visit = Column(Text)
    chief_complaint = Column(Text)

    # no_show is flagged by the system of record; no_show_risk comes from an upstream model
    no_show = Column(Boolean, default=False, nullable=False)
    no_show_risk = Column(Float)

    checked_in_at = Column(DateTime(timezone=True))
    checked_out_at = Column(DateTime(timezone=True))

    patient = relationship("Patient", back_populates="appointments", lazy="joined")
    provider = relationship("UserProfile", back_populates="appointments", lazy="joined")

    __table_args__ = (
        CheckConstraint(_in_clause("status", AppointmentStatusEnum), name="status_values"),
        CheckConstraint("no_show_risk >= 0 AND no_show_risk <= 100", name="no_show_risk_range"),
        CheckConstraint("end_time >= start_time", name="time_order"),
        Index("idx_appointment_clinic_date", "clinic_id", "appointment_date"),
        Index("idx_appointment_provider_date", "provider_id", "appointment_date"),
    )

    def __repr__(self):
        return f"<PatientAppointment(id='{self.id}', date='{self.appointment_date}', start='{self.start_time}')>"


class ClinicianSchedule(Base):
    """Provider schedule entries, including non-patient blocks"""

    __tablename__ = "clinician_schedules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    clinician_id = Column(Uuid(as_uuid=True), ForeignKey("user_profiles.id"), nullable=False)
    schedule_date = Column(Date, nullable=False)
    schedule_type = Column(String(30), nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    notes = Column(Text)

    __table_args__ = (
        Index("idx_clinician_schedule_date", "clinician_id", "schedule_date"),
    )

    def __repr__(self):
        return f"<ClinicianSchedule(clinician_id='{self.clinician_id}', type='{self.schedule_type}')>"


__all__ = [
    "AppointmentStatusEnum",
    "InsightTypeEnum",
    "SeverityEnum",
    "BlockTypeEnum",
    "UserProfile",
    "Patient",
    "PatientAppointment",
    "ClinicianSchedule"
]
