"""Appointment schemas for request/response validation."""

import datetime as dt
from enum import Enum
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from clinicflow.schemas.users import UserRole

TIME_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        """Completed, cancelled and rejected appointments never change again."""
        return self not in (AppointmentStatus.PENDING, AppointmentStatus.APPROVED)


# Statuses that hold a (doctor, date, time) slot
ACTIVE_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.APPROVED)


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    doctor_id: UUID
    date: dt.date = Field(validation_alias=AliasChoices("date", "appointment_date"))
    time: str = Field(
        ...,
        pattern=TIME_PATTERN,
        validation_alias=AliasChoices("time", "appointment_time"),
        description="Time of day in HH:MM (24h) format",
    )
    reason: str = Field(..., min_length=3, max_length=500)


class AppointmentReject(BaseModel):
    """Schema for rejecting a pending appointment."""

    reason: str | None = Field(None, max_length=1000)


class AppointmentComplete(BaseModel):
    """Schema for completing an approved appointment."""

    notes: str | None = Field(None, max_length=1000)


class AppointmentResponse(BaseModel):
    """Appointment row as stored."""

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    date: dt.date
    time: str
    reason: str
    status: AppointmentStatus
    notes: str | None = None
    cancelled_by_role: UserRole | None = None
    cancelled_by_user_id: UUID | None = None
    version: int
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = {"from_attributes": True}


class EnrichedAppointment(AppointmentResponse):
    """Appointment with participant display fields from the directory."""

    patient_name: str = "Unknown"
    patient_email: str | None = None
    doctor_name: str = "Unknown"
    doctor_email: str | None = None
    doctor_specialization: str | None = None


class AppointmentListResponse(BaseModel):
    """Schema for appointment list responses."""

    appointments: list[EnrichedAppointment]
    cached: bool = False


class AppointmentCommandResponse(BaseModel):
    """Result of a state-changing command."""

    message: str
    appointment: AppointmentResponse
    delivery_degraded: bool = Field(
        default=False,
        description="True when a post-commit side effect (cache bust) failed after retries",
    )
