"""Appointment endpoints."""

from uuid import UUID

from fastapi import APIRouter, Body, Response, status

from clinicflow.dependencies import AppointmentServiceDep, CurrentIdentity
from clinicflow.schemas.appointments import (
    AppointmentCommandResponse,
    AppointmentComplete,
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentReject,
    EnrichedAppointment,
)

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentCommandResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> AppointmentCommandResponse:
    """
    Book a new appointment with a doctor.

    Only patients can book. The slot (doctor, date, time) must not be held by
    another pending or approved appointment.
    """
    return await service.create(identity, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    summary="List all appointments (admin)",
)
async def list_all_appointments(
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> AppointmentListResponse:
    """List every appointment, most recently created first."""
    return await service.list_all(identity)


@router.get(
    "/my",
    response_model=AppointmentListResponse,
    summary="List my appointments",
)
async def list_my_appointments(
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> AppointmentListResponse:
    """List the caller's appointments as patient or as doctor."""
    return await service.list_mine(identity)


@router.get(
    "/{appointment_id}",
    response_model=EnrichedAppointment,
    summary="Get appointment",
)
async def get_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> EnrichedAppointment:
    """Get one appointment the caller takes part in."""
    return await service.get(identity, appointment_id)


@router.patch(
    "/{appointment_id}/approve",
    response_model=AppointmentCommandResponse,
    summary="Approve appointment",
)
async def approve_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> AppointmentCommandResponse:
    """Approve a pending appointment (assigned doctor only)."""
    return await service.approve(identity, appointment_id)


@router.patch(
    "/{appointment_id}/reject",
    response_model=AppointmentCommandResponse,
    summary="Reject appointment",
)
async def reject_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
    data: AppointmentReject | None = Body(None),
) -> AppointmentCommandResponse:
    """Reject a pending appointment with an optional reason (assigned doctor only)."""
    return await service.reject(identity, appointment_id, data.reason if data else None)


@router.patch(
    "/{appointment_id}/complete",
    response_model=AppointmentCommandResponse,
    summary="Complete appointment",
)
async def complete_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
    data: AppointmentComplete | None = Body(None),
) -> AppointmentCommandResponse:
    """Mark an approved appointment as completed (assigned doctor only)."""
    return await service.complete(identity, appointment_id, data.notes if data else None)


@router.patch(
    "/{appointment_id}/cancel",
    response_model=AppointmentCommandResponse,
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> AppointmentCommandResponse:
    """Cancel a pending or approved appointment (patient, assigned doctor or admin)."""
    return await service.cancel(identity, appointment_id)


@router.delete(
    "/{appointment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Permanently delete appointment (admin)",
)
async def delete_appointment(
    appointment_id: UUID,
    identity: CurrentIdentity,
    service: AppointmentServiceDep,
) -> Response:
    """
    Remove an appointment row.

    Unlike cancel, this bypasses the state machine and notifies nobody.
    """
    await service.hard_delete(identity, appointment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
