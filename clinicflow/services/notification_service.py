"""Notification service: recipient-facing queries and mutations."""

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import Settings
from clinicflow.core.exceptions import InfrastructureError, NotFoundError
from clinicflow.core.hooks import PostCommitHook, PostCommitRunner
from clinicflow.core.redis_client import CacheManager
from clinicflow.models.notifications import notifications
from clinicflow.schemas.notifications import (
    NotificationDraft,
    NotificationFilters,
    NotificationListResponse,
    NotificationRecord,
    NotificationStatus,
)

logger = structlog.get_logger(__name__)


def notifications_cache_scope(user_id: UUID | str) -> str:
    """Cache scope covering every list page of one user."""
    return f"notifications:{user_id}"


def notifications_cache_key(user_id: UUID | str, limit: int, offset: int) -> str:
    """Cache key of one list page."""
    return f"{notifications_cache_scope(user_id)}:{limit}:{offset}"


async def invalidate_user_notifications(cache: CacheManager, user_id: UUID | str) -> bool:
    """Bust every cached list page of a user."""
    scope = notifications_cache_scope(user_id)
    return await cache.invalidate_scope(scope, f"{scope}:*")


async def insert_new_notifications(
    db: AsyncSession,
    drafts: list[NotificationDraft],
    sent_at: datetime,
) -> list[NotificationRecord]:
    """
    Insert the drafts whose ids are not stored yet.

    Runs inside the caller's transaction; the caller commits.

    Args:
        db: Database session
        drafts: Derived notifications with deterministic ids
        sent_at: Delivery timestamp recorded on new rows

    Returns:
        Records that were newly inserted (existing ids are skipped)
    """
    if not drafts:
        return []

    result = await db.execute(
        select(notifications.c.id).where(notifications.c.id.in_([draft.id for draft in drafts]))
    )
    existing = set(result.scalars().all())

    created = []
    for draft in drafts:
        if draft.id in existing:
            logger.info(
                "notification_duplicate_skipped",
                notification_id=str(draft.id),
                user_id=str(draft.user_id),
            )
            continue

        stmt = (
            insert(notifications)
            .values(
                id=draft.id,
                user_id=draft.user_id,
                type=draft.type.value,
                title=draft.title,
                message=draft.message,
                status=NotificationStatus.SENT.value,
                read=False,
                metadata=draft.metadata,
                sent_at=sent_at,
                created_at=sent_at,
            )
            .returning(notifications)
        )
        row = (await db.execute(stmt)).mappings().one()
        created.append(NotificationRecord.model_validate(dict(row)))

    return created


class NotificationService:
    """Service for a recipient's view of their notifications."""

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheManager,
        hooks: PostCommitRunner,
        settings: Settings,
    ):
        """Initialize service with its collaborators."""
        self.db = db
        self.cache = cache
        self.hooks = hooks
        self.settings = settings

    async def list(self, user_id: UUID, filters: NotificationFilters) -> NotificationListResponse:
        """
        List a user's notifications, newest first.

        Args:
            user_id: Recipient
            filters: Pagination parameters

        Returns:
            Page of notifications with total and unread counters
        """
        key = notifications_cache_key(user_id, filters.limit, filters.offset)
        cached = await self.cache.get_json(key)
        if cached is not None:
            return NotificationListResponse(**cached, cached=True)

        generation = await self.cache.get_generation(notifications_cache_scope(user_id))

        try:
            result = await self.db.execute(
                select(notifications)
                .where(notifications.c.user_id == user_id)
                .order_by(notifications.c.created_at.desc())
                .limit(filters.limit)
                .offset(filters.offset)
            )
            items = [NotificationRecord.model_validate(dict(row)) for row in result.mappings()]

            total = await self.db.scalar(
                select(func.count()).select_from(notifications).where(notifications.c.user_id == user_id)
            )
            unread = await self.db.scalar(
                select(func.count())
                .select_from(notifications)
                .where(notifications.c.user_id == user_id, notifications.c.read.is_(False))
            )
        except SQLAlchemyError as e:
            raise InfrastructureError("Notification store unavailable") from e

        response = NotificationListResponse(notifications=items, total=total or 0, unread=unread or 0)
        await self.cache.set_json_if_generation(
            key,
            response.model_dump(mode="json", exclude={"cached"}),
            ttl=self.settings.notifications_cache_ttl,
            scope=notifications_cache_scope(user_id),
            generation=generation,
        )
        return response

    async def mark_read(self, user_id: UUID, notification_id: UUID) -> NotificationRecord:
        """
        Mark one notification as read.

        Raises:
            NotFoundError: If the notification does not exist or belongs to someone else
        """
        stmt = (
            update(notifications)
            .where(notifications.c.id == notification_id, notifications.c.user_id == user_id)
            .values(read=True)
            .returning(notifications)
        )
        row = await self._execute_mutation(stmt)
        if row is None:
            raise NotFoundError("Notification not found")

        await self._invalidate(user_id)
        return NotificationRecord.model_validate(dict(row))

    async def mark_all_read(self, user_id: UUID) -> int:
        """
        Mark every unread notification of a user as read.

        Returns:
            Number of notifications updated
        """
        try:
            result = await self.db.execute(
                update(notifications)
                .where(notifications.c.user_id == user_id, notifications.c.read.is_(False))
                .values(read=True)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Notification store unavailable") from e

        updated = result.rowcount or 0
        logger.info("notifications_marked_read", user_id=str(user_id), updated=updated)
        await self._invalidate(user_id)
        return updated

    async def delete(self, user_id: UUID, notification_id: UUID) -> None:
        """
        Delete one notification.

        Raises:
            NotFoundError: If the notification does not exist or belongs to someone else
        """
        stmt = (
            delete(notifications)
            .where(notifications.c.id == notification_id, notifications.c.user_id == user_id)
            .returning(notifications.c.id)
        )
        row = await self._execute_mutation(stmt)
        if row is None:
            raise NotFoundError("Notification not found")

        logger.info("notification_deleted", user_id=str(user_id), notification_id=str(notification_id))
        await self._invalidate(user_id)

    async def _execute_mutation(self, stmt):  # type: ignore[no-untyped-def]
        try:
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise InfrastructureError("Notification store unavailable") from e
        return row

    async def _invalidate(self, user_id: UUID) -> None:
        async def invalidate() -> None:
            if not await invalidate_user_notifications(self.cache, user_id):
                raise InfrastructureError("Cache invalidation failed")

        await self.hooks.run([PostCommitHook(name="invalidate_notification_cache", action=invalidate)])
