"""
services/message/service.py
Booking chat: persistence, access rules and delivery.
Shared by the REST endpoints and the Socket.IO handlers.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from services.booking.repository import BookingRepository
from services.notification.fanout import NotificationFanout
from shared.domain.access_policy import Actor, can_send_message, can_view, is_participant, other_participant
from shared.domain.booking_state import Booking
from shared.exceptions import BookingStateError, ForbiddenError
from shared.models.models import Message, MessageRead, MessageType

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def message_payload(message: Message) -> dict:
    """Socket.IO representation of a message."""
    sender = None
    if message.sender is not None:
        sender = {
            "id": str(message.sender.id),
            "name": message.sender.name,
            "role": message.sender.role.value,
        }
    return {
        "id": str(message.id),
        "bookingId": str(message.booking_id),
        "sender": sender,
        "content": message.content,
        "messageType": message.message_type.value,
        "readBy": [{"userId": str(r.user_id), "readAt": _iso(r.read_at)} for r in message.reads],
        "createdAt": _iso(message.created_at),
    }


class MessageService:
    def __init__(self, db: AsyncSession, fanout: Optional[NotificationFanout] = None):
        self.db = db
        self.fanout = fanout
        self.bookings = BookingRepository(db)

    # ── storage ──────────────────────────────────────────────
    async def _load(self, message_id: uuid.UUID) -> Message:
        result = await self.db.execute(
            select(Message)
            .where(Message.id == message_id)
            .options(selectinload(Message.reads))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def create(
        self,
        booking_id: uuid.UUID,
        sender_id: Optional[uuid.UUID],
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> Message:
        message = Message(
            booking_id=booking_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
        )
        self.db.add(message)
        await self.db.flush()
        return await self._load(message.id)

    async def create_system(self, booking_id: uuid.UUID, content: str) -> Message:
        return await self.create(booking_id, None, content, MessageType.SYSTEM)

    async def page(self, booking_id: uuid.UUID, page: int, limit: int) -> Tuple[List[Message], int]:
        """Oldest first."""
        query = select(Message).where(Message.booking_id == booking_id)
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Message.created_at.asc(), Message.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def record_reads(
        self,
        booking_id: uuid.UUID,
        user_id: uuid.UUID,
        message_ids: Iterable[uuid.UUID],
    ) -> Tuple[List[uuid.UUID], datetime]:
        """
        Add a receipt for each message of this booking the user has not read yet.
        Returns the ids that received a new receipt; repeating a call adds nothing.
        """
        ids = set(message_ids)
        read_at = datetime.now(timezone.utc)
        if not ids:
            return [], read_at

        in_booking = await self.db.scalars(
            select(Message.id).where(Message.booking_id == booking_id, Message.id.in_(ids))
        )
        candidates = set(in_booking.all())
        already = await self.db.scalars(
            select(MessageRead.message_id).where(
                MessageRead.user_id == user_id,
                MessageRead.message_id.in_(candidates),
            )
        )
        fresh = sorted(candidates - set(already.all()), key=str)
        self.db.add_all(MessageRead(message_id=m, user_id=user_id, read_at=read_at) for m in fresh)
        await self.db.flush()
        return fresh, read_at

    async def count_unread(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> int:
        """Messages not sent by the user (system messages included) without the user's receipt."""
        read = (
            select(MessageRead.message_id)
            .where(and_(MessageRead.message_id == Message.id, MessageRead.user_id == user_id))
            .exists()
        )
        count = await self.db.scalar(
            select(func.count(Message.id)).where(
                Message.booking_id == booking_id,
                (Message.sender_id.is_(None)) | (Message.sender_id != user_id),
                ~read,
            )
        )
        return count or 0

    # ── use cases ────────────────────────────────────────────
    async def booking_for_viewer(self, booking_id: uuid.UUID, actor: Actor) -> Booking:
        booking = await self.bookings.get(booking_id)
        if not can_view(booking, actor.user_id, actor.role):
            raise ForbiddenError("Access denied")
        return booking

    async def booking_for_participant(self, booking_id: uuid.UUID, actor: Actor) -> Booking:
        booking = await self.bookings.get(booking_id)
        if not is_participant(booking, actor.user_id):
            raise ForbiddenError("Access denied")
        return booking

    async def send(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> Message:
        """
        Persist a participant's message, commit, then deliver it to the room and
        a preview to the other participant's personal channel.
        """
        booking = await self.bookings.get(booking_id)
        if not is_participant(booking, actor.user_id):
            raise ForbiddenError("Only booking participants can send messages")
        if not can_send_message(booking, actor):
            raise BookingStateError("Cannot send messages to closed bookings")

        message = await self.create(booking.id, actor.user_id, content, message_type)
        payload = message_payload(message)
        await self.db.commit()

        if self.fanout is not None:
            await self.fanout.room_message(booking.id, payload)
            recipient = other_participant(booking, actor.user_id)
            if recipient is not None:
                await self.fanout.message_preview(recipient, booking.id, content, actor.name)
        return message

    async def mark_read(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        message_ids: Iterable[uuid.UUID],
        skip_sid: Optional[str] = None,
    ) -> List[uuid.UUID]:
        booking = await self.booking_for_participant(booking_id, actor)
        fresh, read_at = await self.record_reads(booking.id, actor.user_id, message_ids)
        await self.db.commit()

        if fresh and self.fanout is not None:
            await self.fanout.read_receipt(booking.id, actor.user_id, fresh, read_at, skip_sid=skip_sid)
        return fresh

    async def unread_count(self, booking_id: uuid.UUID, actor: Actor) -> int:
        booking = await self.booking_for_participant(booking_id, actor)
        return await self.count_unread(booking.id, actor.user_id)
