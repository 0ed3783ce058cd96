"""Push gateway: per-user rooms of live WebSocket connections.

The gateway subscribes once to the broadcast bus and routes every message to
the room of its recipient. Sends are queued per connection and drained by a
writer task per connection, so a slow or dead client never delays delivery
to the others.
"""

import asyncio
import json
from typing import Any
from uuid import UUID

import redis.asyncio as redis
import structlog
from fastapi import WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from clinicflow.config import Settings
from clinicflow.core.metrics import PUSH_DELIVERED, PUSH_DROPPED
from clinicflow.core.security import Identity, identity_from_token
from clinicflow.schemas.notifications import NotificationRecord

logger = structlog.get_logger(__name__)

# Application-defined close code for failed authentication
WS_CLOSE_UNAUTHORIZED = 4401


def user_room(user_id: UUID | str) -> str:
    """Room holding every live session of one user."""
    return f"user:{user_id}"


class PushConnection:
    """One authenticated WebSocket session with its outbound queue."""

    def __init__(self, websocket: WebSocket, identity: Identity, queue_size: int):
        """Initialize the connection wrapper."""
        self.websocket = websocket
        self.identity = identity
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)

    def offer(self, message: dict[str, Any]) -> bool:
        """
        Queue a message without waiting.

        Returns:
            False if the queue is full and the message was dropped
        """
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            return False

    async def run_writer(self) -> None:
        """Drain the queue onto the socket until the socket fails."""
        while True:
            message = await self.queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.info(
                    "push_writer_stopped",
                    user_id=str(self.identity.user_id),
                    error=str(e),
                )
                return


class ConnectionRegistry:
    """Room membership of live connections."""

    def __init__(self) -> None:
        self._rooms: dict[str, set[PushConnection]] = {}

    def join(self, room: str, connection: PushConnection) -> None:
        self._rooms.setdefault(room, set()).add(connection)

    def leave(self, room: str, connection: PushConnection) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._rooms[room]

    def members(self, room: str) -> list[PushConnection]:
        return list(self._rooms.get(room, ()))

    @property
    def connection_count(self) -> int:
        return sum(len(members) for members in self._rooms.values())


class PushGateway:
    """Real-time delivery of notifications to connected users."""

    def __init__(
        self,
        redis_client: redis.Redis,
        channel: str,
        settings: Settings,
        send_queue_size: int = 100,
        auth_timeout: float = 10.0,
    ):
        """
        Initialize the gateway.

        Args:
            redis_client: Client used for the broadcast subscription
            channel: Broadcast channel name
            settings: Settings used to verify handshake tokens
            send_queue_size: Per-connection outbound queue bound
            auth_timeout: Seconds to wait for the authentication frame
        """
        self.redis = redis_client
        self.channel = channel
        self.settings = settings
        self.send_queue_size = send_queue_size
        self.auth_timeout = auth_timeout
        self.registry = ConnectionRegistry()
        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Subscribe to the broadcast bus."""
        self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen(), name="push-gateway-listener")
        logger.info("push_gateway_subscribed", channel=self.channel)

    async def stop(self) -> None:
        """Unsubscribe and stop the listener."""
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("push_gateway_stopped")

    async def _listen(self) -> None:
        while True:
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") == "message":
                        self.dispatch(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("push_gateway_listener_error", error=str(e))
                await asyncio.sleep(1.0)

    def dispatch(self, raw: str | bytes) -> int:
        """
        Route one broadcast message to its recipient's room.

        Args:
            raw: JSON-encoded notification record

        Returns:
            Number of connections the message was queued for
        """
        try:
            record = NotificationRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("push_message_invalid", error=str(e))
            return 0

        message = {"type": "notification", "data": record.model_dump(mode="json")}
        delivered = 0
        for connection in self.registry.members(user_room(record.user_id)):
            if connection.offer(message):
                delivered += 1
                PUSH_DELIVERED.inc()
            else:
                PUSH_DROPPED.inc()
                logger.warning(
                    "push_dropped",
                    user_id=str(record.user_id),
                    notification_id=str(record.id),
                )

        logger.debug("push_delivered", user_id=str(record.user_id), connections=delivered)
        return delivered

    @staticmethod
    def _handshake_token(websocket: WebSocket) -> str | None:
        authorization = websocket.headers.get("authorization")
        if authorization and authorization.lower().startswith("bearer "):
            return authorization[7:].strip()
        return websocket.query_params.get("token") or websocket.cookies.get("accessToken")

    async def _read_authenticate_frame(self, websocket: WebSocket) -> str | None:
        try:
            message = await asyncio.wait_for(websocket.receive(), timeout=self.auth_timeout)
        except TimeoutError:
            return None
        if message["type"] == "websocket.disconnect":
            return None

        try:
            payload = json.loads(message.get("text") or message.get("bytes") or "")
        except ValueError:
            return None
        if isinstance(payload, dict) and payload.get("type") == "authenticate":
            token = payload.get("token")
            if isinstance(token, str) and token:
                return token
        return None

    async def _authenticate(self, websocket: WebSocket) -> tuple[Identity | None, str]:
        """
        Resolve the caller during the handshake.

        Returns:
            Identity (None on failure) and the close reason to use on failure
        """
        token = self._handshake_token(websocket) or await self._read_authenticate_frame(websocket)
        if token is None:
            return None, "Authentication required"
        return identity_from_token(token, self.settings), "Invalid token"

    async def serve(self, websocket: WebSocket) -> None:
        """
        Handle one WebSocket session from handshake to disconnect.

        Args:
            websocket: Incoming WebSocket connection
        """
        await websocket.accept()

        identity, reason = await self._authenticate(websocket)
        if identity is None:
            logger.info("push_connection_rejected", client=str(websocket.client), reason=reason)
            if websocket.client_state != WebSocketState.DISCONNECTED:
                await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=reason)
            return

        room = user_room(identity.user_id)
        connection = PushConnection(websocket, identity, self.send_queue_size)
        await websocket.send_json(
            {
                "type": "connected",
                "message": "Connected to notification service",
                "user_id": str(identity.user_id),
            }
        )
        self.registry.join(room, connection)
        writer = asyncio.create_task(connection.run_writer(), name=f"push-writer:{room}")
        logger.info("push_connected", user_id=str(identity.user_id))

        try:
            # Inbound frames, text or binary, carry nothing the gateway acts on
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            self.registry.leave(room, connection)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            logger.info("push_disconnected", user_id=str(identity.user_id))
