"""
services/realtime/server.py
Socket.IO server mounted next to the FastAPI app.

Clients authenticate during the handshake with the same access token the
REST API uses, passed as `auth={"token": ...}` or an Authorization header:

    io(url, { path: "/socket.io", auth: { token } })

Set SOCKETIO_MESSAGE_QUEUE (a redis:// URL) when running more than one
instance so emits reach sockets held by the other processes.
"""

import logging
from typing import Optional

import socketio
from fastapi import Depends, FastAPI

from config.settings import settings
from services.notification.fanout import NotificationFanout
from services.realtime.broadcaster import Broadcaster, SocketIOBroadcaster
from services.realtime.coordinator import RoomCoordinator
from shared.exceptions import AppException

logger = logging.getLogger(__name__)


def _client_manager() -> Optional[socketio.AsyncRedisManager]:
    if not settings.SOCKETIO_MESSAGE_QUEUE:
        return None
    return socketio.AsyncRedisManager(settings.SOCKETIO_MESSAGE_QUEUE)


sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.allowed_origins_list,
    ping_interval=settings.SOCKETIO_PING_INTERVAL,
    ping_timeout=settings.SOCKETIO_PING_TIMEOUT,
    client_manager=_client_manager(),
    logger=False,
    engineio_logger=False,
)

broadcaster = SocketIOBroadcaster(sio)
coordinator = RoomCoordinator(broadcaster)


# ── Dependencies ──────────────────────────────────────────────

def get_broadcaster() -> Broadcaster:
    """FastAPI dependency; tests override it with an in-memory broadcaster."""
    return broadcaster


def get_fanout(broadcaster: Broadcaster = Depends(get_broadcaster)) -> NotificationFanout:
    return NotificationFanout(broadcaster)


# ── Handshake ─────────────────────────────────────────────────

def _handshake_token(environ: dict, auth: Optional[dict]) -> Optional[str]:
    if isinstance(auth, dict) and auth.get("token"):
        return auth["token"]
    header = environ.get("HTTP_AUTHORIZATION", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@sio.event
async def connect(sid, environ, auth=None):
    try:
        actor = await coordinator.authenticate(_handshake_token(environ, auth))
    except AppException as exc:
        logger.warning(f"Socket {sid} rejected: {exc.message}")
        raise socketio.exceptions.ConnectionRefusedError(exc.message)
    await coordinator.connect(sid, actor)


@sio.event
async def disconnect(sid, *args):
    await coordinator.disconnect(sid)


sio.on("booking:join", coordinator.join)
sio.on("booking:leave", coordinator.leave)
sio.on("booking:get-users", coordinator.get_users)
sio.on("booking:typing", coordinator.typing)
sio.on("message:send", coordinator.send_message)
sio.on("message:read", coordinator.mark_read)
sio.on("message:unread-count", coordinator.unread_count)


def create_socket_app(app: FastAPI) -> socketio.ASGIApp:
    """Wrap the FastAPI app; Socket.IO traffic is served under SOCKETIO_PATH."""
    return socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=settings.SOCKETIO_PATH)
