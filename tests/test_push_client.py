"""Tests for the reconnecting push subscriber."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch
from uuid import UUID, uuid4

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close

from clinicflow.push.client import PushAuthenticationError, PushSubscriber
from clinicflow.push.gateway import WS_CLOSE_UNAUTHORIZED

USER_ID = uuid4()


def notification(title: str, minutes: int) -> dict:
    created = datetime(2025, 3, 1, 9, 0, tzinfo=UTC) + timedelta(minutes=minutes)
    return {
        "id": str(uuid4()),
        "user_id": str(USER_ID),
        "type": "IN_APP",
        "title": title,
        "message": f"{title} message",
        "status": "SENT",
        "read": False,
        "metadata": {},
        "created_at": created.isoformat(),
        "sent_at": created.isoformat(),
    }


def frame(data: dict) -> str:
    return json.dumps({"type": "notification", "data": data})


class FakeConnection:
    """Async-iterable connection yielding canned frames, then optionally failing."""

    def __init__(self, frames: list[str], error: Exception | None = None):
        self.frames = frames
        self.error = error

    async def __aenter__(self) -> "FakeConnection":
        return self

    async def __aexit__(self, *exc_info) -> bool:  # type: ignore[no-untyped-def]
        return False

    def __aiter__(self):  # type: ignore[no-untyped-def]
        return self._iterate()

    async def _iterate(self):  # type: ignore[no-untyped-def]
        for raw in self.frames:
            yield raw
        if self.error is not None:
            raise self.error


class ScriptedConnect:
    """Connect factory replaying a script of connections and connect errors."""

    def __init__(self, script: list):  # type: ignore[type-arg]
        self.script = list(script)
        self.urls: list[str] = []

    def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step  # type: ignore[no-any-return]


def http_client_returning(notifications: list[dict]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer secret-token"
        return httpx.Response(
            200,
            json={"notifications": notifications, "total": len(notifications), "unread": len(notifications)},
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def subscriber(connect: ScriptedConnect, notifications: list[dict], received: list, **kwargs) -> PushSubscriber:  # type: ignore[no-untyped-def,type-arg]
    return PushSubscriber(
        ws_url="ws://test/ws/notifications",
        api_url="http://test/api/v1/",
        token="secret-token",
        on_notification=received.append,
        http_client=http_client_returning(notifications),
        connect=connect,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_missed_and_live_notifications_are_deduplicated() -> None:
    first, second, third = notification("First", 0), notification("Second", 1), notification("Third", 2)
    received: list = []

    async def on_notification(record) -> None:  # type: ignore[no-untyped-def]
        received.append(record)
        if record.title == "Third":
            client.stop()

    connect = ScriptedConnect(
        [
            FakeConnection(
                [
                    json.dumps({"type": "connected", "user_id": str(USER_ID)}),
                    frame(second),
                    frame(third),
                ]
            )
        ]
    )
    client = PushSubscriber(
        ws_url="ws://test/ws/notifications",
        api_url="http://test/api/v1",
        token="secret-token",
        on_notification=on_notification,
        http_client=http_client_returning([second, first]),
        connect=connect,
    )

    await client.run()
    await client.aclose()

    assert [record.title for record in received] == ["First", "Second", "Third"]
    assert len(client.seen_ids) == 3
    assert connect.urls == ["ws://test/ws/notifications?token=secret-token"]


@pytest.mark.asyncio
async def test_rejected_token_is_not_retried() -> None:
    connect = ScriptedConnect(
        [FakeConnection([], error=ConnectionClosedError(Close(WS_CLOSE_UNAUTHORIZED, "Invalid token"), None))]
    )
    client = subscriber(connect, [], [])

    with pytest.raises(PushAuthenticationError):
        await client.run()
    assert len(connect.urls) == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    connect = ScriptedConnect([OSError("refused")] * 3)
    client = subscriber(connect, [], [], max_attempts=3, base_delay=1.0)

    with patch("clinicflow.push.client.asyncio.sleep", AsyncMock()) as sleep:
        with pytest.raises(ConnectionError):
            await client.run()

    assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]
    assert len(connect.urls) == 3


@pytest.mark.asyncio
async def test_successful_connection_resets_attempts() -> None:
    missed = notification("Missed", 0)
    received: list = []
    dropped = ConnectionClosedError(Close(1011, "server restart"), None)

    connect = ScriptedConnect(
        [
            OSError("refused"),
            OSError("refused"),
            FakeConnection([], error=dropped),
            OSError("refused"),
            FakeConnection([frame(notification("Live", 1))]),
        ]
    )

    def on_notification(record) -> None:  # type: ignore[no-untyped-def]
        received.append(record.title)
        if record.title == "Live":
            client.stop()

    client = PushSubscriber(
        ws_url="ws://test/ws/notifications",
        api_url="http://test/api/v1",
        token="secret-token",
        on_notification=on_notification,
        max_attempts=3,
        http_client=http_client_returning([missed]),
        connect=connect,
    )

    with patch("clinicflow.push.client.asyncio.sleep", AsyncMock()):
        await client.run()

    # The missed notification is fetched after every reconnect but delivered once
    assert received == ["Missed", "Live"]
    assert connect.script == []


@pytest.mark.asyncio
async def test_bad_frames_are_ignored() -> None:
    received: list = []
    client = subscriber(ScriptedConnect([]), [], received)

    await client.handle_message("{not json")
    await client.handle_message(json.dumps({"type": "notification", "data": {"id": "x"}}))
    await client.handle_message(json.dumps({"type": "something-else"}))

    assert received == []
    await client.aclose()


@pytest.mark.asyncio
async def test_seen_ids_are_bounded() -> None:
    received: list = []
    client = PushSubscriber(
        ws_url="ws://test/ws/notifications",
        api_url="http://test/api/v1",
        token="secret-token",
        on_notification=received.append,
        max_seen=2,
        http_client=http_client_returning([]),
    )
    first, second, third = notification("First", 0), notification("Second", 1), notification("Third", 2)

    for record in (first, second, third):
        await client.handle_message(frame(record))
    await client.handle_message(frame(third))

    assert client.seen_ids == frozenset({UUID(second["id"]), UUID(third["id"])})
    assert [record.title for record in received] == ["First", "Second", "Third"]
    await client.aclose()
