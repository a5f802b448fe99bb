"""
services/realtime/rooms.py
In-memory presence for booking rooms.

Connections are indexed by sid; rooms map booking id -> set of sids.
The registry belongs to one process: with several API instances behind a
load balancer each keeps its own view, and cross-instance delivery goes
through the Socket.IO message queue instead (see SOCKETIO_MESSAGE_QUEUE).
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from shared.domain.booking_state import UserRole


@dataclass
class Connection:
    sid: str
    user_id: uuid.UUID
    name: str
    role: UserRole
    is_verified: bool = False
    rooms: Set[uuid.UUID] = field(default_factory=set)

    def presence(self) -> dict:
        return {"userId": str(self.user_id), "name": self.name, "role": self.role.value}


class RoomRegistry:
    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[uuid.UUID, Set[str]] = {}

    # ── connections ──────────────────────────────────────────
    def connect(self, connection: Connection) -> None:
        self._connections[connection.sid] = connection

    def get(self, sid: str) -> Optional[Connection]:
        return self._connections.get(sid)

    def disconnect(self, sid: str) -> Optional[Connection]:
        """Drop the connection and its memberships. Returns it with `rooms` still filled."""
        connection = self._connections.pop(sid, None)
        if connection is None:
            return None
        for booking_id in connection.rooms:
            members = self._rooms.get(booking_id)
            if members is not None:
                members.discard(sid)
                if not members:
                    del self._rooms[booking_id]
        return connection

    # ── rooms ────────────────────────────────────────────────
    def join(self, sid: str, booking_id: uuid.UUID) -> bool:
        """Add membership. False when the sid was already in the room."""
        connection = self._connections[sid]
        members = self._rooms.setdefault(booking_id, set())
        if sid in members:
            return False
        members.add(sid)
        connection.rooms.add(booking_id)
        return True

    def leave(self, sid: str, booking_id: uuid.UUID) -> bool:
        """Remove membership. False (no-op) when the sid was not in the room."""
        members = self._rooms.get(booking_id)
        if not members or sid not in members:
            return False
        members.discard(sid)
        if not members:
            del self._rooms[booking_id]
        connection = self._connections.get(sid)
        if connection is not None:
            connection.rooms.discard(booking_id)
        return True

    def is_member(self, sid: str, booking_id: uuid.UUID) -> bool:
        return sid in self._rooms.get(booking_id, ())

    def members(self, booking_id: uuid.UUID) -> List[Connection]:
        return [self._connections[sid] for sid in self._rooms.get(booking_id, ()) if sid in self._connections]

    def users_in_room(self, booking_id: uuid.UUID) -> List[dict]:
        """Presence snapshot, one entry per user even with several tabs open."""
        seen = {}
        for connection in self.members(booking_id):
            seen.setdefault(connection.user_id, connection.presence())
        return list(seen.values())

    def user_sids(self, user_id: uuid.UUID) -> List[str]:
        return [sid for sid, c in self._connections.items() if c.user_id == user_id]

    def __len__(self) -> int:
        return len(self._connections)
