"""Tests for the WebSocket push gateway."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from uuid import uuid4

import fakeredis
import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from clinicflow.config import Settings
from clinicflow.core.security import create_access_token
from clinicflow.main import app
from clinicflow.push.broadcast import NotificationBroadcaster
from clinicflow.push.gateway import (
    WS_CLOSE_UNAUTHORIZED,
    ConnectionRegistry,
    PushConnection,
    PushGateway,
    user_room,
)
from clinicflow.schemas.notifications import NotificationRecord, NotificationStatus, NotificationType
from helpers import identity_of, token_for

CHANNEL = "notifications"


class RecordingSocket:
    """Stands in for a WebSocket on the sending side."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def record_for(user_id) -> NotificationRecord:  # type: ignore[no-untyped-def]
    return NotificationRecord(
        id=uuid4(),
        user_id=user_id,
        type=NotificationType.IN_APP,
        title="Appointment Approved",
        message="Your appointment has been approved!",
        status=NotificationStatus.SENT,
        read=False,
        metadata={"event_type": "APPOINTMENT_APPROVED"},
        created_at=datetime.now(UTC),
        sent_at=datetime.now(UTC),
    )


def connect(gateway: PushGateway, entry, queue_size: int = 10) -> tuple[PushConnection, RecordingSocket]:  # type: ignore[no-untyped-def]
    socket = RecordingSocket()
    connection = PushConnection(socket, identity_of(entry), queue_size)  # type: ignore[arg-type]
    gateway.registry.join(user_room(entry.id), connection)
    return connection, socket


@pytest.fixture
def gateway(settings: Settings) -> PushGateway:
    return PushGateway(fakeredis.FakeAsyncRedis(decode_responses=True), CHANNEL, settings, auth_timeout=1.0)


def test_registry_membership(people: SimpleNamespace) -> None:
    registry = ConnectionRegistry()
    room = user_room(people.patient.id)
    first = PushConnection(RecordingSocket(), identity_of(people.patient), 1)  # type: ignore[arg-type]
    second = PushConnection(RecordingSocket(), identity_of(people.patient), 1)  # type: ignore[arg-type]

    registry.join(room, first)
    registry.join(room, second)
    assert set(registry.members(room)) == {first, second}
    assert registry.connection_count == 2

    registry.leave(room, first)
    registry.leave(room, second)
    registry.leave(room, second)
    assert registry.members(room) == []
    assert registry.connection_count == 0


@pytest.mark.asyncio
async def test_dispatch_routes_to_recipient_room(gateway: PushGateway, people: SimpleNamespace) -> None:
    """Every session of the recipient gets the message; nobody else does."""
    phone, _ = connect(gateway, people.patient)
    laptop, _ = connect(gateway, people.patient)
    other, _ = connect(gateway, people.doctor)

    record = record_for(people.patient.id)
    assert gateway.dispatch(record.model_dump_json()) == 2

    expected = {"type": "notification", "data": record.model_dump(mode="json")}
    assert phone.queue.get_nowait() == expected
    assert laptop.queue.get_nowait() == expected
    assert other.queue.empty()


@pytest.mark.asyncio
async def test_dispatch_without_connections(gateway: PushGateway, people: SimpleNamespace) -> None:
    assert gateway.dispatch(record_for(people.patient.id).model_dump_json()) == 0


@pytest.mark.asyncio
async def test_dispatch_ignores_invalid_messages(gateway: PushGateway, people: SimpleNamespace) -> None:
    connection, _ = connect(gateway, people.patient)

    assert gateway.dispatch("not json") == 0
    assert gateway.dispatch('{"user_id": "nope"}') == 0
    assert connection.queue.empty()


@pytest.mark.asyncio
async def test_full_queue_drops_message(gateway: PushGateway, people: SimpleNamespace) -> None:
    """A slow connection loses messages instead of blocking the others."""
    slow, _ = connect(gateway, people.patient, queue_size=1)
    fast, _ = connect(gateway, people.patient, queue_size=10)

    assert gateway.dispatch(record_for(people.patient.id).model_dump_json()) == 2
    assert gateway.dispatch(record_for(people.patient.id).model_dump_json()) == 1

    assert slow.queue.qsize() == 1
    assert fast.queue.qsize() == 2


@pytest.mark.asyncio
async def test_writer_sends_queued_messages(people: SimpleNamespace) -> None:
    socket = RecordingSocket()
    connection = PushConnection(socket, identity_of(people.patient), 10)  # type: ignore[arg-type]
    connection.offer({"type": "notification", "data": {"n": 1}})
    connection.offer({"type": "notification", "data": {"n": 2}})

    writer = asyncio.create_task(connection.run_writer())
    for _ in range(50):
        if len(socket.sent) == 2:
            break
        await asyncio.sleep(0.01)
    writer.cancel()
    await asyncio.gather(writer, return_exceptions=True)

    assert [m["data"]["n"] for m in socket.sent] == [1, 2]


@pytest.mark.asyncio
async def test_writer_stops_when_socket_fails(people: SimpleNamespace) -> None:
    connection = PushConnection(RecordingSocket(fail=True), identity_of(people.patient), 10)  # type: ignore[arg-type]
    connection.offer({"type": "notification", "data": {}})

    await asyncio.wait_for(connection.run_writer(), timeout=1.0)


@pytest.mark.asyncio
async def test_broadcast_reaches_subscribed_gateway(settings: Settings, people: SimpleNamespace) -> None:
    redis_client = fakeredis.FakeAsyncRedis(decode_responses=True)
    gateway = PushGateway(redis_client, CHANNEL, settings)
    broadcaster = NotificationBroadcaster(redis_client, CHANNEL)
    connection, _ = connect(gateway, people.patient)

    await gateway.start()
    try:
        record = record_for(people.patient.id)
        assert await broadcaster.publish(record) == 1

        message = await asyncio.wait_for(connection.queue.get(), timeout=2.0)
        assert message["data"]["id"] == str(record.id)
    finally:
        await gateway.stop()
        await redis_client.aclose()


# ----------------------------------------------------------------------
# WebSocket handshake
# ----------------------------------------------------------------------


@pytest.fixture
def ws_client(gateway: PushGateway):  # type: ignore[no-untyped-def]
    """Test client whose container only carries the gateway."""
    original = app.state.container
    app.state.container = SimpleNamespace(gateway=gateway)
    yield TestClient(app)
    app.state.container = original


def test_connect_with_query_token(ws_client: TestClient, gateway: PushGateway, people: SimpleNamespace) -> None:
    with ws_client.websocket_connect(f"/ws/notifications?token={token_for(people.patient)}") as websocket:
        message = websocket.receive_json()
        assert message == {
            "type": "connected",
            "message": "Connected to notification service",
            "user_id": str(people.patient.id),
        }

    assert gateway.registry.connection_count == 0


def test_connect_with_authorization_header(ws_client: TestClient, people: SimpleNamespace) -> None:
    headers = {"Authorization": f"Bearer {token_for(people.doctor)}"}
    with ws_client.websocket_connect("/ws/notifications", headers=headers) as websocket:
        assert websocket.receive_json()["user_id"] == str(people.doctor.id)


def test_connect_with_authenticate_frame(ws_client: TestClient, people: SimpleNamespace) -> None:
    with ws_client.websocket_connect("/ws/notifications") as websocket:
        websocket.send_json({"type": "authenticate", "token": token_for(people.patient)})
        assert websocket.receive_json()["type"] == "connected"


def test_invalid_token_is_rejected(ws_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/ws/notifications?token=garbage") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED


def test_expired_token_is_rejected(ws_client: TestClient, settings: Settings, people: SimpleNamespace) -> None:
    token = create_access_token(
        data={"sub": str(people.patient.id), "role": "PATIENT"},
        settings=settings,
        expires_delta=timedelta(minutes=-1),
    )
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect(f"/ws/notifications?token={token}") as websocket:
            websocket.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED


def test_missing_authenticate_frame_is_rejected(ws_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/ws/notifications") as websocket:
            websocket.send_json({"type": "hello"})
            websocket.receive_json()

    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED


def test_rejection_reasons(ws_client: TestClient) -> None:
    """No credential at all and a bad credential close with different reasons."""
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/ws/notifications") as websocket:
            websocket.send_json({"type": "authenticate"})
            websocket.receive_json()
    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED
    assert exc_info.value.reason == "Authentication required"

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/ws/notifications") as websocket:
            websocket.send_json({"type": "authenticate", "token": "garbage"})
            websocket.receive_json()
    assert exc_info.value.code == WS_CLOSE_UNAUTHORIZED
    assert exc_info.value.reason == "Invalid token"


def test_binary_authenticate_frame_is_accepted(ws_client: TestClient, people: SimpleNamespace) -> None:
    frame = json.dumps({"type": "authenticate", "token": token_for(people.patient)}).encode()
    with ws_client.websocket_connect("/ws/notifications") as websocket:
        websocket.send_bytes(frame)
        assert websocket.receive_json()["type"] == "connected"


def test_binary_frames_do_not_break_session(
    ws_client: TestClient,
    gateway: PushGateway,
    people: SimpleNamespace,
) -> None:
    with ws_client.websocket_connect(f"/ws/notifications?token={token_for(people.patient)}") as websocket:
        assert websocket.receive_json()["type"] == "connected"
        websocket.send_bytes(b"\x00\x01")
        websocket.send_text("ping")

    assert gateway.registry.connection_count == 0
