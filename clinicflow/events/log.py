"""Partitioned appointment event log on Redis Streams.

Each partition is its own stream. Events are routed by a stable hash of the
appointment id, so every event of one appointment lands on one partition in
emission order. Consumers form a group per stream; a consumer instance owns a
fixed subset of partitions and processes each of them sequentially.
"""

import asyncio
import zlib
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, ResponseError

from clinicflow.core.exceptions import InfrastructureError
from clinicflow.core.metrics import EVENT_PUBLISH_FAILURES, EVENTS_CONSUMED, EVENTS_PUBLISHED
from clinicflow.schemas.events import (
    AppointmentEvent,
    AppointmentEventBase,
    parse_event,
    serialize_event,
)

logger = structlog.get_logger(__name__)

EventHandler = Callable[[AppointmentEvent], Awaitable[Any]]


class EventLog:
    """Addressing and retention for the partitioned streams."""

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_prefix: str,
        partitions: int,
        maxlen: int,
        dead_letter_stream: str,
    ):
        """Initialize the log layout."""
        self.redis = redis_client
        self.stream_prefix = stream_prefix
        self.partitions = partitions
        self.maxlen = maxlen
        self.dead_letter_stream = dead_letter_stream

    def partition_for(self, key: str) -> int:
        """Stable partition for an ordering key."""
        return zlib.crc32(key.encode("utf-8")) % self.partitions

    def stream_name(self, partition: int) -> str:
        """Stream backing a partition."""
        return f"{self.stream_prefix}:{partition}"

    async def append(self, event: AppointmentEventBase) -> str:
        """
        Append an event to its partition.

        Args:
            event: Domain event

        Returns:
            Stream entry id

        Raises:
            InfrastructureError: If Redis rejects the append
        """
        key = event.partition_key
        stream = self.stream_name(self.partition_for(key))
        fields = {
            "type": event.type,  # type: ignore[attr-defined]
            "key": key,
            "payload": serialize_event(event),
        }
        try:
            entry_id = await self.redis.xadd(stream, fields, maxlen=self.maxlen, approximate=True)
        except RedisError as e:
            raise InfrastructureError(f"Event log append failed: {e}") from e
        return str(entry_id)


class EventProducer:
    """Sole writer of appointment events."""

    def __init__(self, log: EventLog):
        """Initialize producer over an event log."""
        self.log = log

    async def publish(self, event: AppointmentEventBase) -> str:
        """
        Publish one domain event.

        Raises:
            InfrastructureError: If the append fails
        """
        event_type = event.type  # type: ignore[attr-defined]
        try:
            entry_id = await self.log.append(event)
        except InfrastructureError:
            EVENT_PUBLISH_FAILURES.inc()
            logger.error(
                "event_publish_failed",
                event_type=event_type,
                appointment_id=str(event.appointment_id),
            )
            raise

        EVENTS_PUBLISHED.labels(event_type=event_type).inc()
        logger.info(
            "event_published",
            event_type=event_type,
            appointment_id=str(event.appointment_id),
            entry_id=entry_id,
        )
        return entry_id


class EventConsumer:
    """
    Consumer-group member processing its owned partitions.

    Entries are acknowledged only after the handler succeeds, so a crash or a
    handler error leaves them pending and they are replayed (at-least-once).
    Entries that fail schema validation are moved to the dead-letter stream.
    """

    def __init__(
        self,
        log: EventLog,
        handler: EventHandler,
        group: str,
        consumer_name: str,
        partitions: list[int],
        block_ms: int = 5000,
        count: int = 50,
        retry_delay: float = 1.0,
        max_attempts: int = 5,
    ):
        """Initialize the consumer."""
        self.log = log
        self.handler = handler
        self.group = group
        self.consumer_name = consumer_name
        self.partitions = partitions
        self.block_ms = block_ms
        self.count = count
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self._attempts: dict[str, int] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def redis(self) -> redis.Redis:
        return self.log.redis

    async def ensure_groups(self) -> None:
        """Create the consumer group on every owned partition stream."""
        for partition in self.partitions:
            stream = self.log.stream_name(partition)
            try:
                await self.redis.xgroup_create(stream, self.group, id="0", mkstream=True)
                logger.info("consumer_group_created", stream=stream, group=self.group)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def start(self) -> None:
        """Create groups and spawn one processing task per owned partition."""
        await self.ensure_groups()
        self._running = True
        for partition in self.partitions:
            task = asyncio.create_task(self._run_partition(partition), name=f"consumer:{partition}")
            self._tasks.append(task)
        logger.info(
            "event_consumer_started",
            group=self.group,
            consumer=self.consumer_name,
            partitions=self.partitions,
        )

    async def stop(self) -> None:
        """Stop processing and wait for partition tasks to exit."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("event_consumer_stopped", consumer=self.consumer_name)

    async def _run_partition(self, partition: int) -> None:
        # Replay entries delivered to us before a restart, then follow new ones
        replay = True
        while self._running:
            try:
                processed = await self.poll_partition(
                    partition,
                    pending=replay,
                    block_ms=None if replay else self.block_ms,
                )
                if replay and processed == 0:
                    replay = False
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("event_consumer_error", partition=partition, error=str(e))
                replay = True
                await asyncio.sleep(self.retry_delay)

    async def poll_partition(
        self,
        partition: int,
        pending: bool = False,
        block_ms: int | None = None,
    ) -> int:
        """
        Read and process one batch from a partition.

        Args:
            partition: Owned partition number
            pending: Re-read entries already delivered to this consumer but not acked
            block_ms: Milliseconds to block waiting for new entries (None = don't block)

        Returns:
            Number of entries processed

        Raises:
            Exception: Whatever the handler raised; the failed entry stays pending
        """
        stream = self.log.stream_name(partition)
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer_name,
            {stream: "0" if pending else ">"},
            count=self.count,
            block=block_ms,
        )

        processed = 0
        for _, entries in response or []:
            for entry_id, fields in entries:
                if not fields:
                    # Entry trimmed from the stream while pending
                    await self.redis.xack(stream, self.group, entry_id)
                    continue
                await self._process_entry(stream, entry_id, fields)
                processed += 1
        return processed

    async def _process_entry(self, stream: str, entry_id: str, fields: dict[str, Any]) -> None:
        payload = fields.get("payload", "")
        try:
            event = parse_event(payload)
        except ValidationError as e:
            logger.error("event_rejected_invalid", stream=stream, entry_id=entry_id, error=str(e))
            await self.redis.xadd(
                self.log.dead_letter_stream,
                {**fields, "source_stream": stream, "source_id": entry_id, "error": str(e)},
            )
            await self.redis.xack(stream, self.group, entry_id)
            EVENTS_CONSUMED.labels(event_type=fields.get("type", "unknown"), outcome="invalid").inc()
            return

        try:
            await self.handler(event)
        except Exception as e:
            EVENTS_CONSUMED.labels(event_type=event.type, outcome="failed").inc()
            attempts = self._attempts.get(entry_id, 0) + 1
            self._attempts[entry_id] = attempts
            logger.exception(
                "event_handler_failed",
                event_type=event.type,
                appointment_id=str(event.appointment_id),
                entry_id=entry_id,
                attempt=attempts,
            )
            if attempts < self.max_attempts:
                raise
            # Give up so one poisoned entry cannot stall its partition forever
            await self.redis.xadd(
                self.log.dead_letter_stream,
                {**fields, "source_stream": stream, "source_id": entry_id, "error": str(e)},
            )
            logger.error("event_dead_lettered", entry_id=entry_id, attempts=attempts)
            self._attempts.pop(entry_id, None)
            await self.redis.xack(stream, self.group, entry_id)
            return

        self._attempts.pop(entry_id, None)
        await self.redis.xack(stream, self.group, entry_id)
        EVENTS_CONSUMED.labels(event_type=event.type, outcome="processed").inc()
