"""Appointment state machine: allowed transitions and their guards."""

from dataclasses import dataclass
from typing import Any

from clinicflow.core.exceptions import AuthorizationError, ConflictError
from clinicflow.core.security import Identity
from clinicflow.schemas.appointments import AppointmentStatus
from clinicflow.schemas.users import UserRole


@dataclass(frozen=True)
class Transition:
    """One command of the state machine."""

    command: str
    from_statuses: tuple[AppointmentStatus, ...]
    to_status: AppointmentStatus
    # Only the assigned doctor may act, otherwise any party or an admin
    doctor_only: bool
    forbidden_message: str
    invalid_state_message: str
    success_message: str


APPROVE = Transition(
    command="approve",
    from_statuses=(AppointmentStatus.PENDING,),
    to_status=AppointmentStatus.APPROVED,
    doctor_only=True,
    forbidden_message="Only the assigned doctor can approve appointments",
    invalid_state_message="Only pending appointments can be approved",
    success_message="Appointment approved successfully",
)

REJECT = Transition(
    command="reject",
    from_statuses=(AppointmentStatus.PENDING,),
    to_status=AppointmentStatus.REJECTED,
    doctor_only=True,
    forbidden_message="Only the assigned doctor can reject appointments",
    invalid_state_message="Only pending appointments can be rejected",
    success_message="Appointment rejected successfully",
)

COMPLETE = Transition(
    command="complete",
    from_statuses=(AppointmentStatus.APPROVED,),
    to_status=AppointmentStatus.COMPLETED,
    doctor_only=True,
    forbidden_message="Only the assigned doctor can complete appointments",
    invalid_state_message="Only approved appointments can be completed",
    success_message="Appointment completed successfully",
)

CANCEL = Transition(
    command="cancel",
    from_statuses=(AppointmentStatus.PENDING, AppointmentStatus.APPROVED),
    to_status=AppointmentStatus.CANCELLED,
    doctor_only=False,
    forbidden_message="Unauthorized access",
    invalid_state_message="Appointment is already cancelled or rejected",
    success_message="Appointment cancelled successfully",
)

TRANSITIONS: dict[str, Transition] = {
    transition.command: transition for transition in (APPROVE, REJECT, COMPLETE, CANCEL)
}


def authorize(transition: Transition, identity: Identity, appointment: Any) -> None:
    """
    Check that the caller may run a transition on an appointment.

    Args:
        transition: Requested transition
        identity: Caller
        appointment: Current appointment row (needs ``patient_id`` and ``doctor_id``)

    Raises:
        AuthorizationError: If the caller is not allowed to act
    """
    is_doctor = identity.role == UserRole.DOCTOR and identity.user_id == appointment.doctor_id
    if transition.doctor_only:
        allowed = is_doctor
    else:
        allowed = (
            identity.user_id == appointment.patient_id
            or identity.user_id == appointment.doctor_id
            or identity.is_admin
        )

    if not allowed:
        raise AuthorizationError(transition.forbidden_message)


def check_state(transition: Transition, status: AppointmentStatus | str) -> None:
    """
    Check that a transition is allowed from the current status.

    Raises:
        ConflictError: If the appointment is not in one of the source states
    """
    current = AppointmentStatus(status)
    if current in transition.from_statuses:
        return

    if transition is CANCEL and current == AppointmentStatus.COMPLETED:
        raise ConflictError("Cannot cancel completed appointments")
    raise ConflictError(transition.invalid_state_message)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Whether the graph has an edge from ``current`` to ``target``."""
    return any(
        transition.to_status == target and current in transition.from_statuses
        for transition in TRANSITIONS.values()
    )
