"""Tests for the partitioned event log and its consumer."""

import datetime as dt
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from sqlalchemy import func, select

from clinicflow.core.exceptions import InfrastructureError
from clinicflow.events.log import EventConsumer, EventLog, EventProducer
from clinicflow.models.notifications import notifications
from clinicflow.schemas.events import (
    AppointmentApproved,
    AppointmentCancelled,
    AppointmentCreated,
    parse_event,
)
from clinicflow.schemas.users import UserRole
from helpers import process_events

GROUP = "notification-service"


@pytest.fixture
def event_log(redis_client: fakeredis.FakeAsyncRedis) -> EventLog:
    return EventLog(
        redis_client,
        stream_prefix="appointment-events",
        partitions=3,
        maxlen=1000,
        dead_letter_stream="appointment-events:dlq",
    )


def make_consumer(event_log: EventLog, handler, **kwargs) -> EventConsumer:  # type: ignore[no-untyped-def]
    return EventConsumer(
        event_log,
        handler,
        group=GROUP,
        consumer_name="test-consumer",
        partitions=list(range(event_log.partitions)),
        **kwargs,
    )


def event_fields(appointment_id=None, version: int = 1) -> dict:  # type: ignore[no-untyped-def]
    return {
        "appointment_id": appointment_id or uuid4(),
        "patient_id": uuid4(),
        "doctor_id": uuid4(),
        "date": dt.date(2025, 3, 1),
        "time": "09:00",
        "version": version,
    }


async def drain(consumer: EventConsumer, pending: bool = False) -> int:
    processed = 0
    for partition in consumer.partitions:
        processed += await consumer.poll_partition(partition, pending=pending)
    return processed


def test_partition_is_stable(event_log: EventLog) -> None:
    key = str(uuid4())
    partition = event_log.partition_for(key)

    assert 0 <= partition < 3
    assert all(event_log.partition_for(key) == partition for _ in range(10))
    assert event_log.stream_name(partition) == f"appointment-events:{partition}"


def test_partitions_spread_keys(event_log: EventLog) -> None:
    used = {event_log.partition_for(str(uuid4())) for _ in range(200)}
    assert used == {0, 1, 2}


@pytest.mark.asyncio
async def test_append_routes_by_appointment(
    event_log: EventLog,
    redis_client: fakeredis.FakeAsyncRedis,
) -> None:
    event = AppointmentCreated(**event_fields())
    entry_id = await event_log.append(event)

    stream = event_log.stream_name(event_log.partition_for(str(event.appointment_id)))
    entries = await redis_client.xrange(stream)
    assert [eid for eid, _ in entries] == [entry_id]

    fields = entries[0][1]
    assert fields["type"] == "appointment.created"
    assert fields["key"] == str(event.appointment_id)
    assert parse_event(fields["payload"]) == event


@pytest.mark.asyncio
async def test_publish_failure_raises_infrastructure_error() -> None:
    broken = MagicMock()
    broken.xadd = AsyncMock(side_effect=RedisConnectionError("down"))
    producer = EventProducer(EventLog(broken, "appointment-events", 3, 1000, "appointment-events:dlq"))

    with pytest.raises(InfrastructureError):
        await producer.publish(AppointmentCreated(**event_fields()))


@pytest.mark.asyncio
async def test_consumer_processes_and_acks(
    event_log: EventLog,
    redis_client: fakeredis.FakeAsyncRedis,
) -> None:
    handler = AsyncMock()
    consumer = make_consumer(event_log, handler)
    await consumer.ensure_groups()

    event = AppointmentCreated(**event_fields())
    await EventProducer(event_log).publish(event)

    assert await drain(consumer) == 1
    handler.assert_awaited_once_with(event)

    stream = event_log.stream_name(event_log.partition_for(event.partition_key))
    pending = await redis_client.xpending(stream, GROUP)
    assert pending["pending"] == 0

    # Nothing new, nothing pending
    assert await drain(consumer) == 0
    assert await drain(consumer, pending=True) == 0


@pytest.mark.asyncio
async def test_events_of_one_appointment_arrive_in_order(event_log: EventLog) -> None:
    appointment_id = uuid4()
    seen = []

    async def handler(event) -> None:  # type: ignore[no-untyped-def]
        seen.append(event.type)

    consumer = make_consumer(event_log, handler)
    await consumer.ensure_groups()

    producer = EventProducer(event_log)
    await producer.publish(AppointmentCreated(**event_fields(appointment_id)))
    await producer.publish(AppointmentApproved(**event_fields(appointment_id, version=2)))
    await producer.publish(
        AppointmentCancelled(
            **event_fields(appointment_id, version=3),
            cancelled_by_role=UserRole.PATIENT,
            cancelled_by_id=uuid4(),
        )
    )

    assert await drain(consumer) == 3
    assert seen == ["appointment.created", "appointment.approved", "appointment.cancelled"]


@pytest.mark.asyncio
async def test_invalid_entry_is_dead_lettered(
    event_log: EventLog,
    redis_client: fakeredis.FakeAsyncRedis,
) -> None:
    handler = AsyncMock()
    consumer = make_consumer(event_log, handler)
    await consumer.ensure_groups()

    stream = event_log.stream_name(0)
    await redis_client.xadd(stream, {"type": "appointment.created", "key": "k", "payload": '{"type": "bogus"}'})

    assert await drain(consumer) == 1
    handler.assert_not_awaited()

    dead = await redis_client.xrange("appointment-events:dlq")
    assert len(dead) == 1
    assert dead[0][1]["source_stream"] == stream
    assert "error" in dead[0][1]
    assert (await redis_client.xpending(stream, GROUP))["pending"] == 0


@pytest.mark.asyncio
async def test_failed_entry_stays_pending_and_is_replayed(
    event_log: EventLog,
    redis_client: fakeredis.FakeAsyncRedis,
) -> None:
    handler = AsyncMock(side_effect=[RuntimeError("store down"), None])
    consumer = make_consumer(event_log, handler)
    await consumer.ensure_groups()

    event = AppointmentCreated(**event_fields())
    await event_log.append(event)
    partition = event_log.partition_for(event.partition_key)
    stream = event_log.stream_name(partition)

    with pytest.raises(RuntimeError):
        await consumer.poll_partition(partition)
    assert (await redis_client.xpending(stream, GROUP))["pending"] == 1

    assert await consumer.poll_partition(partition, pending=True) == 1
    assert handler.await_count == 2
    assert (await redis_client.xpending(stream, GROUP))["pending"] == 0


@pytest.mark.asyncio
async def test_poison_entry_dead_lettered_after_max_attempts(
    event_log: EventLog,
    redis_client: fakeredis.FakeAsyncRedis,
) -> None:
    handler = AsyncMock(side_effect=RuntimeError("always fails"))
    consumer = make_consumer(event_log, handler, max_attempts=3)
    await consumer.ensure_groups()

    event = AppointmentCreated(**event_fields())
    await event_log.append(event)
    partition = event_log.partition_for(event.partition_key)

    with pytest.raises(RuntimeError):
        await consumer.poll_partition(partition)
    with pytest.raises(RuntimeError):
        await consumer.poll_partition(partition, pending=True)

    # Third failure gives up on the entry instead of raising
    assert await consumer.poll_partition(partition, pending=True) == 1
    assert handler.await_count == 3

    dead = await redis_client.xrange("appointment-events:dlq")
    assert len(dead) == 1
    assert dead[0][1]["error"] == "always fails"
    assert (await redis_client.xpending(event_log.stream_name(partition), GROUP))["pending"] == 0


@pytest.mark.asyncio
async def test_ensure_groups_is_idempotent(event_log: EventLog) -> None:
    consumer = make_consumer(event_log, AsyncMock())
    await consumer.ensure_groups()
    await consumer.ensure_groups()


@pytest.mark.asyncio
async def test_ensure_groups_propagates_other_errors(event_log: EventLog) -> None:
    broken = MagicMock()
    broken.xgroup_create = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
    event_log.redis = broken
    consumer = make_consumer(event_log, AsyncMock())

    with pytest.raises(ResponseError):
        await consumer.ensure_groups()


@pytest.mark.asyncio
async def test_published_events_become_notifications(container, people) -> None:  # type: ignore[no-untyped-def]
    """The container wires producer, log, consumer and fanout together."""
    await container.producer.publish(
        AppointmentCreated(
            **{**event_fields(), "patient_id": people.patient.id, "doctor_id": people.doctor.id}
        )
    )
    assert await process_events(container) == 1

    async with container.sessionmaker() as session:
        stored = await session.scalar(select(func.count()).select_from(notifications))
    assert stored == 2
