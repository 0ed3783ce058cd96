"""Appointment service: command handlers of the state machine and cached queries."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import Settings
from clinicflow.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from clinicflow.core.hooks import PostCommitHook, PostCommitRunner
from clinicflow.core.redis_client import CacheManager
from clinicflow.core.security import Identity
from clinicflow.events.log import EventProducer
from clinicflow.models.appointments import appointments
from clinicflow.schemas.appointments import (
    AppointmentCommandResponse,
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    EnrichedAppointment,
)
from clinicflow.schemas.events import (
    AppointmentApproved,
    AppointmentCancelled,
    AppointmentCompleted,
    AppointmentCreated,
    AppointmentEventBase,
    AppointmentRejected,
)
from clinicflow.schemas.users import DirectoryEntry, UserRole
from clinicflow.services.directory import DirectoryLookup, lookup_or_none
from clinicflow.services.transitions import (
    APPROVE,
    CANCEL,
    COMPLETE,
    REJECT,
    Transition,
    authorize,
    check_state,
)

logger = structlog.get_logger(__name__)

ALL_APPOINTMENTS_KEY = "appointments:all"

EventFactory = Callable[[dict[str, Any]], AppointmentEventBase]


def my_appointments_key(role: UserRole, user_id: UUID | str) -> str:
    """Cache key of one participant's appointment list."""
    return f"appointments:{role.value.lower()}:{user_id}"


def affected_cache_keys(appointment: AppointmentResponse) -> list[str]:
    """Every cached view that can contain an appointment."""
    return [
        my_appointments_key(UserRole.PATIENT, appointment.patient_id),
        my_appointments_key(UserRole.DOCTOR, appointment.doctor_id),
        ALL_APPOINTMENTS_KEY,
    ]


class AppointmentService:
    """Service owning appointment rows and their status transitions."""

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheManager,
        directory: DirectoryLookup,
        producer: EventProducer,
        hooks: PostCommitRunner,
        settings: Settings,
    ):
        """Initialize service with its collaborators."""
        self.db = db
        self.cache = cache
        self.directory = directory
        self.producer = producer
        self.hooks = hooks
        self.settings = settings

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create(self, identity: Identity, data: AppointmentCreate) -> AppointmentCommandResponse:
        """
        Book a new appointment in PENDING state.

        Args:
            identity: Caller, must be a patient
            data: Doctor, slot and reason

        Returns:
            Created appointment

        Raises:
            AuthorizationError: If the caller is not a patient
            ValidationError: If the reason is blank once trimmed
            NotFoundError: If the doctor does not exist
            ConflictError: If the slot is already held by an active appointment
            InfrastructureError: If the store or the directory is unavailable
        """
        if identity.role != UserRole.PATIENT:
            raise AuthorizationError("Only patients can create appointments")

        reason = data.reason.strip()
        if len(reason) < 3:
            raise ValidationError("Reason must be between 3 and 500 characters")

        doctor = await self.directory.get_user(data.doctor_id)
        if doctor is None or doctor.role != UserRole.DOCTOR:
            raise NotFoundError("Doctor not found")

        now = datetime.now(UTC)
        values = {
            "id": uuid4(),
            "patient_id": identity.user_id,
            "doctor_id": data.doctor_id,
            "date": data.date,
            "time": data.time,
            "reason": reason,
            "status": AppointmentStatus.PENDING.value,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }

        # The partial unique index on active slots makes the conflict check atomic
        try:
            result = await self.db.execute(insert(appointments).values(**values).returning(appointments))
            row = result.mappings().one()
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info(
                "appointment_slot_conflict",
                doctor_id=str(data.doctor_id),
                date=str(data.date),
                time=data.time,
            )
            raise ConflictError("This time slot is already booked") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Appointment store unavailable") from e

        appointment = AppointmentResponse.model_validate(dict(row))
        logger.info(
            "appointment_created",
            appointment_id=str(appointment.id),
            patient_id=str(appointment.patient_id),
            doctor_id=str(appointment.doctor_id),
        )

        degraded = not await self.hooks.run(
            self._post_commit_hooks(appointment, lambda fields: AppointmentCreated(**fields))
        )
        return AppointmentCommandResponse(
            message="Appointment created successfully",
            appointment=appointment,
            delivery_degraded=degraded,
        )

    async def approve(self, identity: Identity, appointment_id: UUID) -> AppointmentCommandResponse:
        """PENDING -> APPROVED by the assigned doctor."""
        return await self._transition(
            identity,
            appointment_id,
            APPROVE,
            values={},
            event_factory=lambda fields: AppointmentApproved(**fields),
        )

    async def reject(
        self,
        identity: Identity,
        appointment_id: UUID,
        reason: str | None = None,
    ) -> AppointmentCommandResponse:
        """
        PENDING -> REJECTED by the assigned doctor.

        The reason, when given, is stored in ``notes``; existing notes are kept otherwise.
        """
        values: dict[str, Any] = {
            "cancelled_by_role": UserRole.DOCTOR.value,
            "cancelled_by_user_id": identity.user_id,
        }
        if reason is not None:
            values["notes"] = reason

        return await self._transition(
            identity,
            appointment_id,
            REJECT,
            values=values,
            event_factory=lambda fields: AppointmentRejected(
                **fields,
                rejected_by=identity.user_id,
                rejection_reason=reason,
            ),
        )

    async def complete(
        self,
        identity: Identity,
        appointment_id: UUID,
        notes: str | None = None,
    ) -> AppointmentCommandResponse:
        """APPROVED -> COMPLETED by the assigned doctor, optionally replacing notes."""
        values: dict[str, Any] = {}
        if notes is not None:
            values["notes"] = notes

        return await self._transition(
            identity,
            appointment_id,
            COMPLETE,
            values=values,
            event_factory=lambda fields: AppointmentCompleted(**fields, notes=notes),
        )

    async def cancel(self, identity: Identity, appointment_id: UUID) -> AppointmentCommandResponse:
        """PENDING/APPROVED -> CANCELLED by the patient, the assigned doctor or an admin."""
        return await self._transition(
            identity,
            appointment_id,
            CANCEL,
            values={
                "cancelled_by_role": identity.role.value,
                "cancelled_by_user_id": identity.user_id,
            },
            event_factory=lambda fields: AppointmentCancelled(
                **fields,
                cancelled_by_role=identity.role,
                cancelled_by_id=identity.user_id,
            ),
        )

    async def hard_delete(self, identity: Identity, appointment_id: UUID) -> None:
        """
        Physically remove an appointment row.

        Legacy path kept for administrators only. It bypasses the state machine
        and emits no event, so recipients are never told about the removal.

        Raises:
            AuthorizationError: If the caller is not an admin
            NotFoundError: If the appointment does not exist
        """
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")

        try:
            result = await self.db.execute(
                delete(appointments).where(appointments.c.id == appointment_id).returning(appointments)
            )
            row = result.mappings().first()
            if row is None:
                await self.db.rollback()
                raise NotFoundError("Appointment not found")
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Appointment store unavailable") from e

        appointment = AppointmentResponse.model_validate(dict(row))
        logger.warning(
            "appointment_hard_deleted",
            appointment_id=str(appointment_id),
            deleted_by=str(identity.user_id),
            status=appointment.status.value,
        )
        await self.hooks.run([self._invalidation_hook(appointment)])

    async def _transition(
        self,
        identity: Identity,
        appointment_id: UUID,
        transition: Transition,
        values: dict[str, Any],
        event_factory: EventFactory,
    ) -> AppointmentCommandResponse:
        current = await self._fetch(appointment_id)
        authorize(transition, identity, current)
        check_state(transition, current.status)

        # Compare-and-set on the source states; a concurrent transition makes this a no-op
        stmt = (
            update(appointments)
            .where(
                appointments.c.id == appointment_id,
                appointments.c.status.in_([status.value for status in transition.from_statuses]),
            )
            .values(
                status=transition.to_status.value,
                version=appointments.c.version + 1,
                updated_at=datetime.now(UTC),
                **values,
            )
            .returning(appointments)
        )
        try:
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            if row is None:
                await self.db.rollback()
            else:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Appointment store unavailable") from e

        if row is None:
            latest = await self._fetch(appointment_id)
            logger.info(
                "appointment_transition_lost_race",
                appointment_id=str(appointment_id),
                command=transition.command,
                status=latest.status.value,
            )
            check_state(transition, latest.status)
            raise ConflictError(transition.invalid_state_message)

        appointment = AppointmentResponse.model_validate(dict(row))
        logger.info(
            "appointment_transitioned",
            appointment_id=str(appointment.id),
            command=transition.command,
            status=appointment.status.value,
            version=appointment.version,
            actor_id=str(identity.user_id),
        )

        degraded = not await self.hooks.run(self._post_commit_hooks(appointment, event_factory))
        return AppointmentCommandResponse(
            message=transition.success_message,
            appointment=appointment,
            delivery_degraded=degraded,
        )

    # ------------------------------------------------------------------
    # Post-commit side effects
    # ------------------------------------------------------------------

    def _invalidation_hook(self, appointment: AppointmentResponse) -> PostCommitHook:
        keys = affected_cache_keys(appointment)

        async def invalidate() -> None:
            if not await self.cache.invalidate(*keys):
                raise InfrastructureError("Cache invalidation failed")

        return PostCommitHook(name="invalidate_appointment_cache", action=invalidate)

    def _publish_hook(
        self,
        appointment: AppointmentResponse,
        event_factory: EventFactory,
    ) -> PostCommitHook:
        built: list[AppointmentEventBase] = []

        async def publish() -> None:
            # Build once so retries re-append the same event id
            if not built:
                built.append(event_factory(await self._event_fields(appointment)))
            await self.producer.publish(built[0])

        return PostCommitHook(
            name="publish_appointment_event",
            action=publish,
            background=True,
            ordering_key=f"appointment:{appointment.id}",
        )

    def _post_commit_hooks(
        self,
        appointment: AppointmentResponse,
        event_factory: EventFactory,
    ) -> list[PostCommitHook]:
        return [
            self._invalidation_hook(appointment),
            self._publish_hook(appointment, event_factory),
        ]

    async def _event_fields(self, appointment: AppointmentResponse) -> dict[str, Any]:
        """Common event fields with participant display data captured now."""
        patient = await lookup_or_none(self.directory, appointment.patient_id)
        doctor = await lookup_or_none(self.directory, appointment.doctor_id)
        return {
            "appointment_id": appointment.id,
            "patient_id": appointment.patient_id,
            "doctor_id": appointment.doctor_id,
            "date": appointment.date,
            "time": appointment.time,
            "patient_name": patient.full_name if patient else None,
            "doctor_name": doctor.full_name if doctor else None,
            "patient_email": patient.email if patient else None,
            "doctor_email": doctor.email if doctor else None,
            "version": appointment.version,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, identity: Identity, appointment_id: UUID) -> EnrichedAppointment:
        """
        Get one appointment.

        Raises:
            NotFoundError: If the appointment does not exist
            AuthorizationError: If the caller is neither a party nor an admin
        """
        appointment = await self._fetch(appointment_id)
        if not identity.is_admin and identity.user_id not in (
            appointment.patient_id,
            appointment.doctor_id,
        ):
            raise AuthorizationError("Unauthorized access")

        enriched = await self._enrich([appointment])
        return enriched[0]

    async def list_mine(self, identity: Identity) -> AppointmentListResponse:
        """
        List the caller's appointments, newest slot first.

        Patients see the appointments they booked, doctors the ones assigned to them.

        Raises:
            AuthorizationError: If the caller is an admin (use ``list_all``)
        """
        if identity.role == UserRole.PATIENT:
            owner = appointments.c.patient_id
        elif identity.role == UserRole.DOCTOR:
            owner = appointments.c.doctor_id
        else:
            raise AuthorizationError("Unauthorized access")

        stmt = (
            select(appointments)
            .where(owner == identity.user_id)
            .order_by(appointments.c.date.desc(), appointments.c.time.desc())
        )
        return await self._cached_list(
            my_appointments_key(identity.role, identity.user_id),
            self.settings.my_appointments_cache_ttl,
            stmt,
        )

    async def list_all(self, identity: Identity) -> AppointmentListResponse:
        """
        List every appointment, most recently created first.

        Raises:
            AuthorizationError: If the caller is not an admin
        """
        if not identity.is_admin:
            raise AuthorizationError("Admin access required")

        stmt = select(appointments).order_by(appointments.c.created_at.desc())
        return await self._cached_list(
            ALL_APPOINTMENTS_KEY,
            self.settings.all_appointments_cache_ttl,
            stmt,
        )

    async def _cached_list(self, key: str, ttl: int, stmt: Any) -> AppointmentListResponse:
        cached = await self.cache.get_json(key)
        if cached is not None:
            logger.debug("appointments_cache_hit", key=key)
            return AppointmentListResponse(
                appointments=[EnrichedAppointment.model_validate(item) for item in cached],
                cached=True,
            )

        # Captured before reading the store so a concurrent invalidation wins
        generation = await self.cache.get_generation(key)

        try:
            result = await self.db.execute(stmt)
            rows = [AppointmentResponse.model_validate(dict(row)) for row in result.mappings()]
        except SQLAlchemyError as e:
            raise InfrastructureError("Appointment store unavailable") from e

        enriched = await self._enrich(rows)
        await self.cache.set_json_if_generation(
            key,
            [item.model_dump(mode="json") for item in enriched],
            ttl=ttl,
            scope=key,
            generation=generation,
        )
        return AppointmentListResponse(appointments=enriched, cached=False)

    async def _enrich(self, rows: list[AppointmentResponse]) -> list[EnrichedAppointment]:
        """Attach participant display fields, one directory lookup per distinct user."""
        memo: dict[UUID, DirectoryEntry | None] = {}

        async def lookup(user_id: UUID) -> DirectoryEntry | None:
            if user_id not in memo:
                memo[user_id] = await lookup_or_none(self.directory, user_id)
            return memo[user_id]

        enriched = []
        for row in rows:
            patient = await lookup(row.patient_id)
            doctor = await lookup(row.doctor_id)
            enriched.append(
                EnrichedAppointment(
                    **row.model_dump(),
                    patient_name=patient.full_name if patient else "Unknown",
                    patient_email=patient.email if patient else None,
                    doctor_name=doctor.full_name if doctor else "Unknown",
                    doctor_email=doctor.email if doctor else None,
                    doctor_specialization=doctor.specialization if doctor else None,
                )
            )
        return enriched

    async def _fetch(self, appointment_id: UUID) -> AppointmentResponse:
        try:
            result = await self.db.execute(
                select(appointments).where(appointments.c.id == appointment_id)
            )
            row = result.mappings().first()
        except SQLAlchemyError as e:
            raise InfrastructureError("Appointment store unavailable") from e

        if row is None:
            raise NotFoundError("Appointment not found")
        return AppointmentResponse.model_validate(dict(row))

