"""Notification endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from clinicflow.dependencies import CurrentIdentity, NotificationServiceDep
from clinicflow.schemas.notifications import (
    MarkAllReadResponse,
    NotificationFilters,
    NotificationListResponse,
    NotificationRecord,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get(
    "/",
    response_model=NotificationListResponse,
    summary="List my notifications",
)
@router.get(
    "/my",
    response_model=NotificationListResponse,
    include_in_schema=False,
)
async def list_notifications(
    identity: CurrentIdentity,
    service: NotificationServiceDep,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> NotificationListResponse:
    """
    List the caller's notifications, newest first.

    Args:
        identity: Authenticated caller
        service: Notification service
        limit: Page size (1-100)
        offset: Number of notifications to skip

    Returns:
        Page of notifications with total and unread counters
    """
    return await service.list(identity.user_id, NotificationFilters(limit=limit, offset=offset))


@router.patch(
    "/read-all",
    response_model=MarkAllReadResponse,
    summary="Mark all notifications as read",
)
@router.post(
    "/mark-all-read",
    response_model=MarkAllReadResponse,
    include_in_schema=False,
)
async def mark_all_read(
    identity: CurrentIdentity,
    service: NotificationServiceDep,
) -> MarkAllReadResponse:
    """Mark every unread notification of the caller as read."""
    updated = await service.mark_all_read(identity.user_id)
    return MarkAllReadResponse(message="All notifications marked as read", updated=updated)


@router.patch(
    "/{notification_id}/read",
    response_model=NotificationRecord,
    summary="Mark notification as read",
)
async def mark_read(
    notification_id: UUID,
    identity: CurrentIdentity,
    service: NotificationServiceDep,
) -> NotificationRecord:
    """Mark one of the caller's notifications as read."""
    return await service.mark_read(identity.user_id, notification_id)


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete notification",
)
async def delete_notification(
    notification_id: UUID,
    identity: CurrentIdentity,
    service: NotificationServiceDep,
) -> Response:
    """Delete one of the caller's notifications."""
    await service.delete(identity.user_id, notification_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
