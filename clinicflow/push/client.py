"""Reconnecting push subscriber for service-to-service or CLI consumers."""

import asyncio
import inspect
import json
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

import httpx
import structlog
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from clinicflow.push.gateway import WS_CLOSE_UNAUTHORIZED
from clinicflow.schemas.notifications import NotificationListResponse, NotificationRecord

logger = structlog.get_logger(__name__)

NotificationCallback = Callable[[NotificationRecord], Awaitable[None] | None]


class PushAuthenticationError(Exception):
    """The gateway rejected the credential; reconnecting would not help."""


class PushSubscriber:
    """
    Subscriber for the ``/ws/notifications`` push channel.

    Real-time delivery is at-most-once, so after every successful (re)connect
    the subscriber re-fetches the notification list to recover anything
    published while it was away. Notifications are handed to the callback at
    most once per id, whichever path delivered them first.
    """

    def __init__(
        self,
        ws_url: str,
        api_url: str,
        token: str,
        on_notification: NotificationCallback,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_seen: int = 1000,
        http_client: httpx.AsyncClient | None = None,
        connect: Callable[[str], Any] = websockets.connect,
    ):
        """
        Initialize the subscriber.

        Args:
            ws_url: Gateway URL, e.g. ``ws://host/ws/notifications``
            api_url: Base URL of the API (``/api/v1`` included)
            token: Bearer JWT of the subscribing user
            on_notification: Called once per distinct notification
            max_attempts: Consecutive failed connection attempts before giving up
            base_delay: First reconnect delay in seconds, doubled on each failure
            max_seen: Most recent notification ids remembered for deduplication
            http_client: Client used to re-fetch the notification list
            connect: WebSocket connect factory
        """
        self.ws_url = ws_url
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.on_notification = on_notification
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self._connect = connect
        self.max_seen = max_seen
        # Insertion-ordered so the oldest ids are forgotten first
        self._seen: OrderedDict[UUID, None] = OrderedDict()
        self._stopped = False

    @property
    def seen_ids(self) -> frozenset[UUID]:
        return frozenset(self._seen)

    def _url_with_token(self) -> str:
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}token={self.token}"

    async def _deliver(self, record: NotificationRecord) -> bool:
        if record.id in self._seen:
            logger.debug("push_duplicate_ignored", notification_id=str(record.id))
            return False
        self._seen[record.id] = None
        while len(self._seen) > self.max_seen:
            self._seen.popitem(last=False)
        result = self.on_notification(record)
        if inspect.isawaitable(result):
            await result
        return True

    async def fetch_missed(self) -> int:
        """
        Re-fetch the latest notifications over HTTP.

        Returns:
            Number of notifications not seen before
        """
        response = await self.http_client.get(
            f"{self.api_url}/notifications/",
            headers={"Authorization": f"Bearer {self.token}"},
        )
        response.raise_for_status()
        page = NotificationListResponse.model_validate(response.json())

        delivered = 0
        # Oldest first so callbacks observe creation order
        for record in reversed(page.notifications):
            if await self._deliver(record):
                delivered += 1
        return delivered

    async def handle_message(self, raw: str | bytes) -> None:
        """Process one frame received from the gateway."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("push_frame_undecodable")
            return

        if message.get("type") == "connected":
            logger.info("push_subscribed", user_id=message.get("user_id"))
        elif message.get("type") == "notification":
            try:
                record = NotificationRecord.model_validate(message.get("data"))
            except ValidationError as e:
                logger.warning("push_frame_invalid", error=str(e))
                return
            await self._deliver(record)

    async def run(self) -> None:
        """
        Stay subscribed until stopped or until reconnecting keeps failing.

        Raises:
            PushAuthenticationError: If the gateway rejects the token
            ConnectionError: After ``max_attempts`` consecutive failures
        """
        attempts = 0
        while not self._stopped:
            try:
                async with self._connect(self._url_with_token()) as connection:
                    attempts = 0
                    logger.info("push_connected", url=self.ws_url)
                    await self.fetch_missed()
                    async for raw in connection:
                        await self.handle_message(raw)
                        if self._stopped:
                            return
            except ConnectionClosed as e:
                code = e.rcvd.code if e.rcvd is not None else None
                if code == WS_CLOSE_UNAUTHORIZED:
                    raise PushAuthenticationError("Push gateway rejected the token") from e
                logger.warning("push_connection_lost", code=code)
            except (OSError, httpx.HTTPError) as e:
                logger.warning("push_connection_failed", error=str(e))

            if self._stopped:
                return

            attempts += 1
            if attempts >= self.max_attempts:
                raise ConnectionError(f"Push gateway unreachable after {attempts} attempts")

            delay = self.base_delay * 2 ** (attempts - 1)
            logger.info("push_reconnecting", attempt=attempts, delay=delay)
            await asyncio.sleep(delay)

    def stop(self) -> None:
        """Ask ``run()`` to return after the current frame."""
        self._stopped = True

    async def aclose(self) -> None:
        """Stop and release the HTTP client."""
        self.stop()
        await self.http_client.aclose()
