"""Notification fanout: turns appointment events into per-recipient notifications."""

import datetime as dt
from typing import Any
from uuid import UUID, uuid5

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.core.exceptions import InfrastructureError
from clinicflow.core.hooks import PostCommitHook, PostCommitRunner
from clinicflow.core.metrics import NOTIFICATIONS_CREATED, NOTIFICATIONS_DUPLICATE
from clinicflow.core.redis_client import CacheManager
from clinicflow.push.broadcast import NotificationBroadcaster
from clinicflow.schemas.events import (
    AppointmentApproved,
    AppointmentCancelled,
    AppointmentCompleted,
    AppointmentCreated,
    AppointmentEvent,
    AppointmentEventBase,
    AppointmentRejected,
    EventType,
)
from clinicflow.schemas.notifications import NotificationDraft, NotificationRecord
from clinicflow.schemas.users import UserRole
from clinicflow.services.notification_service import (
    insert_new_notifications,
    invalidate_user_notifications,
)

logger = structlog.get_logger(__name__)

# Namespace of deterministic notification ids
NOTIFICATION_NAMESPACE = UUID("6f2c1f0e-3b7a-5d4e-9a8b-2c1d0e9f8a7b")


def format_date(value: dt.date) -> str:
    """Render a date as e.g. 'Saturday, March 1, 2025'."""
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def notification_id(event: AppointmentEventBase, recipient: UUID) -> UUID:
    """Stable id of the notification one event produces for one recipient."""
    event_type: str = event.type  # type: ignore[attr-defined]
    return uuid5(NOTIFICATION_NAMESPACE, f"{event.appointment_id}:{event_type}:{recipient}:{event.version}")


def _draft(
    event: AppointmentEventBase,
    recipient: UUID,
    title: str,
    message: str,
    **extra_metadata: Any,
) -> NotificationDraft:
    metadata = {
        "appointment_id": str(event.appointment_id),
        "event_type": EventType(event.type).name,  # type: ignore[attr-defined]
        **extra_metadata,
    }
    return NotificationDraft(
        id=notification_id(event, recipient),
        user_id=recipient,
        title=title,
        message=message,
        metadata=metadata,
    )


def _created(event: AppointmentCreated) -> list[NotificationDraft]:
    when = f"{format_date(event.date)} at {event.time}"
    doctor = event.doctor_name or "your doctor"
    patient = event.patient_name or "a patient"
    return [
        _draft(
            event,
            event.patient_id,
            "Appointment Created",
            f"Your appointment request with Dr. {doctor} on {when} "
            "has been submitted and is pending approval.",
        ),
        _draft(
            event,
            event.doctor_id,
            "New Appointment Request",
            f"You have a new appointment request from {patient} on {when}.",
        ),
    ]


def _approved(event: AppointmentApproved) -> list[NotificationDraft]:
    when = f"{format_date(event.date)} at {event.time}"
    return [
        _draft(
            event,
            event.patient_id,
            "Appointment Approved",
            f"Your appointment on {when} has been approved!",
        )
    ]


def _cancelled(event: AppointmentCancelled) -> list[NotificationDraft]:
    when = f"{format_date(event.date)} at {event.time}"
    doctor = event.doctor_name or "Doctor"
    patient = event.patient_name or "Patient"

    patient_suffix = {
        UserRole.PATIENT: " by you",
        UserRole.DOCTOR: f" by Dr. {doctor}",
        UserRole.ADMIN: " by an administrator",
    }.get(event.cancelled_by_role, "")
    doctor_suffix = {
        UserRole.DOCTOR: " by you",
        UserRole.PATIENT: " by the patient",
        UserRole.ADMIN: " by an administrator",
    }.get(event.cancelled_by_role, "")

    cancelled_by = event.cancelled_by_role.value
    return [
        _draft(
            event,
            event.patient_id,
            "Appointment Cancelled",
            f"Your appointment on {when} has been cancelled{patient_suffix}.",
            cancelled_by=cancelled_by,
        ),
        _draft(
            event,
            event.doctor_id,
            "Appointment Cancelled",
            f"Appointment with {patient} on {when} has been cancelled{doctor_suffix}.",
            cancelled_by=cancelled_by,
        ),
    ]


def _rejected(event: AppointmentRejected) -> list[NotificationDraft]:
    when = f"{format_date(event.date)} at {event.time}"
    doctor = event.doctor_name or "Doctor"
    patient = event.patient_name or "Patient"
    reason = f" Reason: {event.rejection_reason}" if event.rejection_reason else ""
    return [
        _draft(
            event,
            event.patient_id,
            "Appointment Rejected",
            f"Your appointment request on {when} has been rejected by Dr. {doctor}.{reason}",
            reason=event.rejection_reason,
        ),
        _draft(
            event,
            event.doctor_id,
            "Appointment Rejected",
            f"You have rejected the appointment request from {patient} on {when}.",
        ),
    ]


def _completed(event: AppointmentCompleted) -> list[NotificationDraft]:
    return [
        _draft(
            event,
            event.patient_id,
            "Appointment Completed",
            f"Your appointment on {format_date(event.date)} has been marked as completed.",
        )
    ]


def derive_notifications(event: AppointmentEvent) -> list[NotificationDraft]:
    """
    Derive the notifications one event produces.

    CREATED and REJECTED notify both parties, APPROVED and COMPLETED only the
    patient, CANCELLED both parties with wording that depends on who cancelled.

    Args:
        event: Validated appointment event

    Returns:
        One draft per recipient, with deterministic ids
    """
    if isinstance(event, AppointmentCreated):
        return _created(event)
    if isinstance(event, AppointmentApproved):
        return _approved(event)
    if isinstance(event, AppointmentCancelled):
        return _cancelled(event)
    if isinstance(event, AppointmentRejected):
        return _rejected(event)
    if isinstance(event, AppointmentCompleted):
        return _completed(event)
    raise ValueError(f"Unsupported event type: {type(event).__name__}")


class FanoutService:
    """Consumer-side handler persisting and broadcasting derived notifications."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        cache: CacheManager,
        broadcaster: NotificationBroadcaster,
        hooks: PostCommitRunner,
    ):
        """Initialize the fanout service."""
        self.sessionmaker = sessionmaker
        self.cache = cache
        self.broadcaster = broadcaster
        self.hooks = hooks

    async def handle(self, event: AppointmentEvent) -> list[NotificationRecord]:
        """
        Process one event.

        Notifications are stored in one transaction. Ids already present (a
        redelivered event) are skipped and not broadcast again. Store errors
        propagate so the log entry stays pending and is redelivered; cache and
        broadcast failures after commit are only logged.

        Args:
            event: Validated appointment event

        Returns:
            Notifications newly created by this call
        """
        drafts = derive_notifications(event)

        async with self.sessionmaker() as session:
            created = await insert_new_notifications(session, drafts, dt.datetime.now(dt.UTC))
            await session.commit()

        NOTIFICATIONS_CREATED.inc(len(created))
        NOTIFICATIONS_DUPLICATE.inc(len(drafts) - len(created))

        for record in created:
            logger.info(
                "notification_created",
                notification_id=str(record.id),
                user_id=str(record.user_id),
                event_type=event.type,
                appointment_id=str(event.appointment_id),
            )
            await self.hooks.run(self._post_commit_hooks(record))

        return created

    def _post_commit_hooks(self, record: NotificationRecord) -> list[PostCommitHook]:
        async def invalidate() -> None:
            if not await invalidate_user_notifications(self.cache, record.user_id):
                raise InfrastructureError("Cache invalidation failed")

        async def broadcast() -> None:
            await self.broadcaster.publish(record)

        return [
            PostCommitHook(name="invalidate_notification_cache", action=invalidate),
            PostCommitHook(name="broadcast_notification", action=broadcast),
        ]
