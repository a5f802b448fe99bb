"""
services/realtime/broadcaster.py
Outbound delivery capability handed to the booking/message services.

    broadcaster.to_room(booking_id).emit("message:new", payload)
    broadcaster.to_user(user_id).emit("booking:updated", payload)

SocketIOBroadcaster is the production implementation on top of a
python-socketio AsyncServer. Tests pass their own Broadcaster subclass.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import socketio

logger = logging.getLogger(__name__)

HELPERS_CHANNEL = "role:helper"


def booking_room(booking_id) -> str:
    return f"booking:{booking_id}"


def user_channel(user_id) -> str:
    return f"user:{user_id}"


class Channel(ABC):
    @abstractmethod
    async def emit(self, event: str, payload: Any) -> None:
        ...


class Broadcaster(ABC):
    """Addressable fan-out: rooms, personal channels, single connections."""

    @abstractmethod
    def channel(self, name: str, skip_sid: Optional[str] = None) -> Channel:
        ...

    @abstractmethod
    def to_connection(self, sid: str) -> Channel:
        ...

    @abstractmethod
    async def enter(self, sid: str, name: str) -> None:
        ...

    @abstractmethod
    async def leave(self, sid: str, name: str) -> None:
        ...

    def to_room(self, booking_id, skip_sid: Optional[str] = None) -> Channel:
        return self.channel(booking_room(booking_id), skip_sid=skip_sid)

    def to_user(self, user_id) -> Channel:
        return self.channel(user_channel(user_id))

    def to_helpers(self) -> Channel:
        return self.channel(HELPERS_CHANNEL)


# ── python-socketio implementation ────────────────────────────

class _SocketChannel(Channel):
    def __init__(self, sio: socketio.AsyncServer, to: str, skip_sid: Optional[str] = None):
        self.sio = sio
        self.to = to
        self.skip_sid = skip_sid

    async def emit(self, event: str, payload: Any) -> None:
        await self.sio.emit(event, payload, to=self.to, skip_sid=self.skip_sid)


class SocketIOBroadcaster(Broadcaster):
    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio

    def channel(self, name: str, skip_sid: Optional[str] = None) -> Channel:
        return _SocketChannel(self.sio, name, skip_sid)

    def to_connection(self, sid: str) -> Channel:
        return _SocketChannel(self.sio, sid)

    async def enter(self, sid: str, name: str) -> None:
        await self.sio.enter_room(sid, name)

    async def leave(self, sid: str, name: str) -> None:
        await self.sio.leave_room(sid, name)
