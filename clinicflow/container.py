"""Composition root: builds every collaborator and owns their lifecycle."""

import httpx
import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from clinicflow.config import Settings
from clinicflow.core.hooks import PostCommitRunner
from clinicflow.core.redis_client import CacheManager, check_redis_connection, create_redis_client
from clinicflow.database import check_database_connection, create_engine, create_sessionmaker
from clinicflow.events.log import EventConsumer, EventLog, EventProducer
from clinicflow.push.broadcast import NotificationBroadcaster
from clinicflow.push.gateway import PushGateway
from clinicflow.services.directory import build_directory
from clinicflow.services.fanout_service import FanoutService

logger = structlog.get_logger(__name__)


class ServiceContainer:
    """
    Explicitly constructed clients and services.

    Anything passed in (engine, Redis client, HTTP client) is treated as
    borrowed and is not closed by ``stop()``; anything built here is owned.
    """

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine | None = None,
        redis_client: redis.Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Wire the object graph.

        Args:
            settings: Application settings
            engine: Optional pre-built database engine
            redis_client: Optional pre-built Redis client
            http_client: Optional client for the HTTP directory backend
        """
        self.settings = settings

        self._owns_engine = engine is None
        self.engine = engine or create_engine(settings)
        self.sessionmaker = create_sessionmaker(self.engine)

        self._owns_redis = redis_client is None
        self.redis = redis_client or create_redis_client(settings)

        self._owns_http_client = http_client is None and settings.directory_backend == "http"
        if self._owns_http_client:
            http_client = httpx.AsyncClient(
                base_url=settings.auth_service_url,
                timeout=settings.directory_timeout_seconds,
            )
        self.http_client = http_client

        self.cache = CacheManager(self.redis)
        self.directory = build_directory(settings, self.sessionmaker, self.http_client)
        self.hooks = PostCommitRunner(
            retries=settings.post_commit_retries,
            retry_delay=settings.post_commit_retry_delay,
        )

        self.event_log = EventLog(
            self.redis,
            stream_prefix=settings.event_stream_prefix,
            partitions=settings.event_partitions,
            maxlen=settings.event_stream_maxlen,
            dead_letter_stream=settings.event_dead_letter_stream,
        )
        self.producer = EventProducer(self.event_log)

        self.broadcaster = NotificationBroadcaster(self.redis, settings.broadcast_channel)
        self.fanout = FanoutService(self.sessionmaker, self.cache, self.broadcaster, self.hooks)
        self.consumer = EventConsumer(
            self.event_log,
            self.fanout.handle,
            group=settings.event_consumer_group,
            consumer_name=settings.event_consumer_name,
            partitions=settings.owned_partitions,
            block_ms=settings.event_read_block_ms,
            count=settings.event_read_count,
        )

        self.gateway = PushGateway(
            self.redis,
            channel=settings.broadcast_channel,
            settings=settings,
            send_queue_size=settings.push_send_queue_size,
            auth_timeout=settings.push_auth_timeout_seconds,
        )

        self._consumer_running = False
        self._gateway_running = False

    async def start(
        self,
        run_consumer: bool | None = None,
        run_gateway: bool | None = None,
    ) -> None:
        """
        Check connectivity and start the background workers.

        Args:
            run_consumer: Start the fanout consumer (defaults to settings)
            run_gateway: Start the push gateway subscription (defaults to settings)
        """
        if await check_database_connection(self.engine):
            logger.info("database_connected")
        else:
            logger.error("database_connection_failed")

        if await check_redis_connection(self.redis):
            logger.info("redis_connected")
        else:
            logger.error("redis_connection_failed")

        if run_gateway if run_gateway is not None else self.settings.run_push_gateway:
            await self.gateway.start()
            self._gateway_running = True

        if run_consumer if run_consumer is not None else self.settings.run_fanout_consumer:
            await self.consumer.start()
            self._consumer_running = True

    async def stop(self) -> None:
        """Stop workers, flush background hooks and release owned resources."""
        if self._consumer_running:
            await self.consumer.stop()
            self._consumer_running = False

        if self._gateway_running:
            await self.gateway.stop()
            self._gateway_running = False

        # Pending event appends must finish before the Redis client goes away
        await self.hooks.drain()

        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()

        if self._owns_redis:
            await self.redis.aclose()
            logger.info("redis_connection_closed")

        if self._owns_engine:
            await self.engine.dispose()
            logger.info("database_connections_closed")
