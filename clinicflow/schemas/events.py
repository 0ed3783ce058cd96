"""Domain event schemas carried on the appointment event log."""

import datetime as dt
from enum import Enum
from typing import Annotated, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from clinicflow.schemas.users import UserRole


class EventType(str, Enum):
    """Appointment event types."""

    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_APPROVED = "appointment.approved"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_REJECTED = "appointment.rejected"
    APPOINTMENT_COMPLETED = "appointment.completed"


class AppointmentEventBase(BaseModel):
    """Fields shared by every appointment event."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    appointment_id: UUID
    patient_id: UUID
    doctor_id: UUID
    date: dt.date
    time: str
    patient_name: str | None = None
    doctor_name: str | None = None
    patient_email: str | None = None
    doctor_email: str | None = None
    version: int = Field(..., ge=1, description="Appointment version after the transition")
    timestamp: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.UTC))

    @property
    def partition_key(self) -> str:
        """Ordering key on the event log."""
        return str(self.appointment_id)


class AppointmentCreated(AppointmentEventBase):
    type: Literal["appointment.created"] = "appointment.created"


class AppointmentApproved(AppointmentEventBase):
    type: Literal["appointment.approved"] = "appointment.approved"


class AppointmentCancelled(AppointmentEventBase):
    type: Literal["appointment.cancelled"] = "appointment.cancelled"
    cancelled_by_role: UserRole
    cancelled_by_id: UUID


class AppointmentRejected(AppointmentEventBase):
    type: Literal["appointment.rejected"] = "appointment.rejected"
    rejected_by: UUID
    rejection_reason: str | None = None


class AppointmentCompleted(AppointmentEventBase):
    type: Literal["appointment.completed"] = "appointment.completed"
    notes: str | None = None


AppointmentEvent = Annotated[
    AppointmentCreated
    | AppointmentApproved
    | AppointmentCancelled
    | AppointmentRejected
    | AppointmentCompleted,
    Field(discriminator="type"),
]

appointment_event_adapter: TypeAdapter[AppointmentEvent] = TypeAdapter(AppointmentEvent)


def parse_event(payload: str | bytes) -> AppointmentEvent:
    """
    Validate a serialized event at the log boundary.

    Args:
        payload: JSON document read from the log

    Returns:
        The concrete event model selected by its ``type``

    Raises:
        pydantic.ValidationError: If the payload does not match any event schema
    """
    return appointment_event_adapter.validate_json(payload)


def serialize_event(event: AppointmentEventBase) -> str:
    """Serialize an event for appending to the log."""
    return event.model_dump_json()
