"""
services/realtime/coordinator.py
Booking rooms over Socket.IO: presence, typing, chat and read receipts.

Each inbound event handler validates its payload, checks access against the
stored booking, then emits. Failures never propagate to the socket server:
they are turned into an `error` event sent to the originating connection
only.
"""

import functools
import logging
from typing import Any, Optional
from uuid import UUID

from jose import JWTError
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import redis_client as redis_module
from config.database import get_db_context
from config.redis_client import TokenDenyList
from services.booking.repository import BookingRepository
from services.message.service import MessageService
from services.notification.fanout import NotificationFanout
from services.realtime.broadcaster import HELPERS_CHANNEL, Broadcaster, booking_room, user_channel
from services.realtime.rooms import Connection, RoomRegistry
from shared.domain.access_policy import Actor, can_join_room, can_view
from shared.domain.booking_state import UserRole
from shared.exceptions import AppException, AuthenticationError, ForbiddenError, ValidationFailure
from shared.models.models import MessageType, User
from shared.schemas.schemas import MarkReadPayload, RoomEventPayload, SendMessagePayload, TypingPayload
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)


def scoped_errors(event: str):
    """Report handler failures to the calling socket instead of raising."""

    def decorator(handler):
        @functools.wraps(handler)
        async def wrapper(self, sid: str, data: Any = None):
            try:
                return await handler(self, sid, data)
            except AppException as exc:
                if isinstance(exc, ForbiddenError):
                    logger.warning(f"{event} denied for {sid}: {exc.message}")
                await self._error(sid, exc.message, event)
            except Exception:
                logger.error(f"Unhandled error in {event} for {sid}", exc_info=True)
                await self._error(sid, "An internal server error occurred", event)
            return None

        return wrapper

    return decorator


def _parse(schema: type[BaseModel], data: Any):
    if isinstance(data, str):
        data = {"bookingId": data}
    try:
        return schema.model_validate(data or {})
    except ValidationError as exc:
        raise ValidationFailure(errors=exc.errors())


class RoomCoordinator:
    def __init__(
        self,
        broadcaster: Broadcaster,
        registry: Optional[RoomRegistry] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.broadcaster = broadcaster
        self.registry = registry or RoomRegistry()
        self.session_factory = session_factory
        self.fanout = NotificationFanout(broadcaster)

    # ── Connection lifecycle ─────────────────────────────────
    async def authenticate(self, token: Optional[str]) -> Actor:
        """Resolve a handshake token to an active user. Raises AppException on failure."""
        if not token:
            raise AuthenticationError("Authentication token required")
        try:
            payload = verify_access_token(token)
            user_id = UUID(payload["sub"])
        except (JWTError, KeyError, ValueError):
            raise AuthenticationError("Invalid or expired token")

        jti = payload.get("jti")
        if jti and redis_module.redis_client is not None:
            if await TokenDenyList(redis_module.redis_client).is_revoked(jti):
                raise AuthenticationError("Token has been revoked")

        async with get_db_context(self.session_factory) as db:
            user = await db.get(User, user_id)
            if user is None:
                raise AuthenticationError("User not found")
            if not user.is_active:
                raise ForbiddenError("Account has been deactivated")
            return Actor.from_user(user)

    async def connect(self, sid: str, actor: Actor) -> Connection:
        connection = Connection(
            sid=sid,
            user_id=actor.user_id,
            name=actor.name,
            role=actor.role,
            is_verified=actor.is_verified,
        )
        self.registry.connect(connection)
        await self.broadcaster.enter(sid, user_channel(actor.user_id))
        if actor.role == UserRole.HELPER:
            await self.broadcaster.enter(sid, HELPERS_CHANNEL)
        logger.info(f"Socket {sid} connected for {actor.role.value} {actor.user_id}")
        return connection

    async def disconnect(self, sid: str) -> None:
        """Leaving implicitly: every room the connection was in hears user-left."""
        connection = self.registry.disconnect(sid)
        if connection is None:
            return
        for booking_id in connection.rooms:
            await self._announce_left(connection, booking_id)
        logger.info(f"Socket {sid} disconnected ({connection.user_id})")

    # ── Inbound events ───────────────────────────────────────
    @scoped_errors("booking:join")
    async def join(self, sid: str, data: Any = None) -> None:
        payload = _parse(RoomEventPayload, data)
        connection = self._connection(sid)
        actor = self._actor(connection)

        async with get_db_context(self.session_factory) as db:
            booking = await BookingRepository(db).get(payload.booking_id)

        if not can_join_room(booking, actor):
            raise ForbiddenError("Access denied to this booking")

        newly_joined = self.registry.join(sid, booking.id)
        await self.broadcaster.enter(sid, booking_room(booking.id))
        await self.broadcaster.to_connection(sid).emit(
            "booking:joined", {"bookingId": str(booking.id), "status": booking.status.value}
        )
        if newly_joined:
            await self.broadcaster.to_room(booking.id, skip_sid=sid).emit(
                "booking:user-joined", {"bookingId": str(booking.id), **connection.presence()}
            )

    @scoped_errors("booking:leave")
    async def leave(self, sid: str, data: Any = None) -> None:
        payload = _parse(RoomEventPayload, data)
        connection = self._connection(sid)
        if not self.registry.leave(sid, payload.booking_id):
            return
        await self.broadcaster.leave(sid, booking_room(payload.booking_id))
        await self._announce_left(connection, payload.booking_id)

    @scoped_errors("booking:get-users")
    async def get_users(self, sid: str, data: Any = None) -> None:
        """Presence snapshot for any booking the caller can view; empty when nobody is connected."""
        payload = _parse(RoomEventPayload, data)
        connection = self._connection(sid)
        actor = self._actor(connection)

        async with get_db_context(self.session_factory) as db:
            booking = await BookingRepository(db).get(payload.booking_id)

        if not can_view(booking, actor.user_id, actor.role):
            raise ForbiddenError("Access denied to this booking")

        await self.broadcaster.to_connection(sid).emit(
            "booking:users",
            {
                "bookingId": str(booking.id),
                "users": self.registry.users_in_room(booking.id),
            },
        )

    @scoped_errors("booking:typing")
    async def typing(self, sid: str, data: Any = None) -> None:
        payload = _parse(TypingPayload, data)
        connection = self._require_member(sid, payload.booking_id)
        await self.broadcaster.to_room(payload.booking_id, skip_sid=sid).emit(
            "booking:user-typing",
            {
                "bookingId": str(payload.booking_id),
                "userId": str(connection.user_id),
                "name": connection.name,
                "isTyping": payload.is_typing,
            },
        )

    @scoped_errors("message:send")
    async def send_message(self, sid: str, data: Any = None) -> None:
        payload = _parse(SendMessagePayload, data)
        connection = self._require_member(sid, payload.booking_id)
        async with get_db_context(self.session_factory) as db:
            await MessageService(db, self.fanout).send(
                payload.booking_id,
                self._actor(connection),
                payload.content,
                MessageType(payload.message_type),
            )

    @scoped_errors("message:read")
    async def mark_read(self, sid: str, data: Any = None) -> None:
        payload = _parse(MarkReadPayload, data)
        connection = self._connection(sid)
        async with get_db_context(self.session_factory) as db:
            await MessageService(db, self.fanout).mark_read(
                payload.booking_id, self._actor(connection), payload.message_ids, skip_sid=sid
            )

    @scoped_errors("message:unread-count")
    async def unread_count(self, sid: str, data: Any = None) -> None:
        payload = _parse(RoomEventPayload, data)
        connection = self._connection(sid)
        async with get_db_context(self.session_factory) as db:
            count = await MessageService(db).unread_count(payload.booking_id, self._actor(connection))
        await self.broadcaster.to_connection(sid).emit(
            "message:unread-count", {"bookingId": str(payload.booking_id), "count": count}
        )

    # ── Helpers ──────────────────────────────────────────────
    def _connection(self, sid: str) -> Connection:
        connection = self.registry.get(sid)
        if connection is None:
            raise AuthenticationError("Not authenticated")
        return connection

    @staticmethod
    def _actor(connection: Connection) -> Actor:
        return Actor(
            user_id=connection.user_id,
            role=connection.role,
            name=connection.name,
            is_verified=connection.is_verified,
        )

    def _require_member(self, sid: str, booking_id: UUID) -> Connection:
        connection = self._connection(sid)
        if not self.registry.is_member(sid, booking_id):
            raise ForbiddenError("Join the booking room first")
        return connection

    async def _announce_left(self, connection: Connection, booking_id: UUID) -> None:
        # Another tab of the same user keeps them present
        if any(c.user_id == connection.user_id for c in self.registry.members(booking_id)):
            return
        try:
            await self.broadcaster.to_room(booking_id).emit(
                "booking:user-left",
                {"bookingId": str(booking_id), "userId": str(connection.user_id), "name": connection.name},
            )
        except Exception:
            logger.error(f"Failed to announce user-left in booking {booking_id}", exc_info=True)

    async def _error(self, sid: str, message: str, event: Optional[str] = None) -> None:
        try:
            await self.broadcaster.to_connection(sid).emit("error", {"message": message, "event": event})
        except Exception:
            logger.error(f"Failed to deliver error to {sid}", exc_info=True)
