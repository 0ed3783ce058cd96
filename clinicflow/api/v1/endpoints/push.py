"""Real-time notification push over WebSocket."""

from fastapi import APIRouter, WebSocket

router = APIRouter()


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket) -> None:
    """
    Push channel for the caller's notifications.

    The bearer credential comes from the ``Authorization`` header, the
    ``token`` query parameter or the ``accessToken`` cookie. Without one, the
    first frame must be ``{"type": "authenticate", "token": "..."}``.
    Delivery is at-most-once; clients re-fetch ``GET /notifications`` after
    every (re)connect to recover anything missed.
    """
    await websocket.app.state.container.gateway.serve(websocket)
