"""
services/notification/fanout.py
Best-effort delivery of booking and chat events.

Every call happens after the database commit. Personal channels and booking
rooms are separate paths: a user watching the room still gets the personal
event and vice versa. Nothing here is persisted or retried; a client that
missed events re-fetches the booking over HTTP.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import settings
from services.realtime.broadcaster import Broadcaster, Channel
from shared.domain.booking_state import Booking

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def preview(content: str, length: Optional[int] = None) -> str:
    length = length or settings.MESSAGE_PREVIEW_LENGTH
    return content if len(content) <= length else content[:length]


class NotificationFanout:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def _send(self, channel: Channel, event: str, payload: Any) -> None:
        try:
            await channel.emit(event, payload)
        except Exception:
            logger.error(f"Failed to deliver {event}", exc_info=True)

    # ── Booking lifecycle ────────────────────────────────────
    async def status_changed(self, booking: Booking) -> None:
        """booking:updated on both personal channels, booking:status-changed in the room."""
        now = datetime.now(timezone.utc).isoformat()
        update = {"bookingId": str(booking.id), "status": booking.status.value, "updatedAt": now}

        await self._send(self.broadcaster.to_user(booking.customer_id), "booking:updated", update)
        if booking.helper_id is not None:
            await self._send(self.broadcaster.to_user(booking.helper_id), "booking:updated", update)

        await self._send(
            self.broadcaster.to_room(booking.id),
            "booking:status-changed",
            {"bookingId": str(booking.id), "status": booking.status.value, "changedAt": now},
        )

    async def booking_accepted(self, booking: Booking, helper_name: str) -> None:
        await self._send(
            self.broadcaster.to_user(booking.customer_id),
            "booking:accepted",
            {
                "bookingId": str(booking.id),
                "helper": {"id": str(booking.helper_id), "name": helper_name},
                "status": booking.status.value,
            },
        )

    async def new_available(self, booking: Booking, service) -> None:
        """Announce a fresh REQUESTED booking to connected helpers."""
        await self._send(
            self.broadcaster.to_helpers(),
            "booking:new-available",
            {
                "bookingId": str(booking.id),
                "service": {
                    "id": str(service.id),
                    "name": service.name,
                    "category": getattr(service.category, "value", service.category),
                },
                "address": booking.address,
                "scheduledAt": _iso(booking.scheduled_at),
                "createdAt": _iso(booking.created_at),
            },
        )

    # ── Chat ─────────────────────────────────────────────────
    async def room_message(self, booking_id, message: dict) -> None:
        """message:new to everyone in the room, sender included."""
        await self._send(self.broadcaster.to_room(booking_id), "message:new", message)

    async def message_preview(self, recipient_id, booking_id, content: str, sender_name: str) -> None:
        await self._send(
            self.broadcaster.to_user(recipient_id),
            "notification:new-message",
            {
                "bookingId": str(booking_id),
                "preview": preview(content),
                "senderName": sender_name,
            },
        )

    async def read_receipt(self, booking_id, user_id, message_ids, read_at: datetime, skip_sid: Optional[str] = None) -> None:
        await self._send(
            self.broadcaster.to_room(booking_id, skip_sid=skip_sid),
            "message:read-receipt",
            {
                "bookingId": str(booking_id),
                "userId": str(user_id),
                "messageIds": [str(m) for m in message_ids],
                "readAt": read_at.isoformat(),
            },
        )
