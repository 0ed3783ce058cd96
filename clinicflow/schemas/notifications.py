"""In-app notification schemas."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Delivery channel tag of a notification."""

    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    SMS = "SMS"


class NotificationStatus(str, Enum):
    """Notification delivery status."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationDraft(BaseModel):
    """A notification derived from a domain event, before it is persisted."""

    id: UUID
    user_id: UUID
    type: NotificationType = NotificationType.IN_APP
    title: str
    message: str
    metadata: dict[str, Any]


class NotificationRecord(BaseModel):
    """Schema for a stored notification, also the push message payload."""

    id: UUID
    user_id: UUID
    type: NotificationType
    title: str
    message: str
    status: NotificationStatus
    read: bool
    metadata: dict[str, Any] | None = None
    created_at: datetime
    sent_at: datetime | None = None

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    """Paginated notification list with counters."""

    notifications: list[NotificationRecord]
    total: int
    unread: int
    cached: bool = False


class NotificationFilters(BaseModel):
    """Pagination parameters for the notification list."""

    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class MarkAllReadResponse(BaseModel):
    """Result of marking every notification as read."""

    message: str
    updated: int
