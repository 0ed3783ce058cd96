"""Broadcast bus for real-time notification delivery (Redis pub/sub)."""

import redis.asyncio as redis
import structlog

from clinicflow.schemas.notifications import NotificationRecord

logger = structlog.get_logger(__name__)


class NotificationBroadcaster:
    """
    Publishes stored notifications to every push gateway instance.

    Pub/sub is fire-and-forget: a gateway that is not subscribed at publish
    time never sees the message. Real-time delivery is therefore at-most-once
    and clients reconcile through the notification list endpoint.
    """

    def __init__(self, redis_client: redis.Redis, channel: str):
        """Initialize with a Redis client and the channel name."""
        self.redis = redis_client
        self.channel = channel

    async def publish(self, notification: NotificationRecord) -> int:
        """
        Publish a notification record.

        Args:
            notification: Stored notification

        Returns:
            Number of gateway subscribers that received the message

        Raises:
            redis.exceptions.RedisError: If the broker is unavailable
        """
        receivers = await self.redis.publish(self.channel, notification.model_dump_json())
        logger.debug(
            "notification_broadcast",
            notification_id=str(notification.id),
            user_id=str(notification.user_id),
            receivers=receivers,
        )
        return int(receivers)
