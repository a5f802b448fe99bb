"""
services/booking/service.py
Booking use cases: guard → transition → atomic save → commit → fan-out.

Participant transitions (accept, start, complete, close) and admin overrides
(cancel, dispute, force-close) share one path, `_transition`. Admin overrides
write their audit record inside the same transaction as the status change,
so a failed audit insert rolls the change back.
"""

import logging
import uuid
from dataclasses import replace
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from services.admin.audit import Provenance, audit_recorder
from services.booking.repository import BookingRepository
from services.message.service import MessageService, message_payload
from services.notification.fanout import NotificationFanout
from shared.domain import access_policy as policy
from shared.domain.access_policy import Actor
from shared.domain.booking_state import (
    Booking,
    BookingStatus,
    UserRole,
    apply_transition,
    assign_helper,
    can_transition,
    new_booking,
)
from shared.exceptions import (
    BookingStateError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
)
from shared.models.models import AdminActionType, AuditTargetType, Service, User

logger = logging.getLogger(__name__)

ADMIN_ACTIONS = {
    BookingStatus.CANCELLED: (AdminActionType.BOOKING_CANCEL, "cancelled"),
    BookingStatus.DISPUTED: (AdminActionType.BOOKING_DISPUTE, "marked as disputed"),
    BookingStatus.FORCE_CLOSED: (AdminActionType.BOOKING_FORCE_CLOSE, "force-closed"),
}


class BookingService:
    def __init__(self, db: AsyncSession, fanout: Optional[NotificationFanout] = None):
        self.db = db
        self.fanout = fanout
        self.repo = BookingRepository(db)
        self.messages = MessageService(db)

    # ── Create ───────────────────────────────────────────────
    async def create(
        self,
        actor: Actor,
        service_id: uuid.UUID,
        description: str,
        address: str,
        scheduled_at,
        estimated_duration: int = 60,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Booking:
        if actor.role != UserRole.CUSTOMER:
            raise ForbiddenError("Only customers can create bookings")

        service = await self.db.get(Service, service_id)
        if not service or not service.is_active:
            raise NotFoundError("Service")

        booking = new_booking(
            customer_id=actor.user_id,
            service_id=service.id,
            description=description,
            address=address,
            scheduled_at=scheduled_at,
            estimated_duration=estimated_duration,
            latitude=latitude,
            longitude=longitude,
        )
        await self.repo.add(booking)
        await self.db.commit()
        logger.info(f"Booking {booking.id} requested by {actor.user_id} for service {service.id}")

        if self.fanout is not None:
            await self.fanout.new_available(booking, service)
        return booking

    # ── Participant transitions ──────────────────────────────
    async def accept(self, booking_id: uuid.UUID, actor: Actor, reason: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        if actor.role != UserRole.HELPER:
            raise ForbiddenError("Only helpers can accept bookings")
        if not actor.is_verified:
            raise ForbiddenError("Helper account is not verified")
        if not can_transition(booking, BookingStatus.ACCEPTED, actor.role):
            raise InvalidTransitionError(booking.status, BookingStatus.ACCEPTED, "accept")
        if not policy.can_accept(booking, actor):
            raise InvalidTransitionError(booking.status, BookingStatus.ACCEPTED, "accept")

        updated = assign_helper(booking, actor.user_id)
        return await self._commit(
            booking, updated, actor,
            system_text=f"{actor.name} has accepted this booking",
        )

    async def start(self, booking_id: uuid.UUID, actor: Actor, reason: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        if not policy.can_start(booking, actor):
            raise ForbiddenError("Only the assigned helper can start this booking")
        return await self._transition(
            booking, BookingStatus.IN_PROGRESS, actor, reason, "start",
            system_text=f"{actor.name} has started working on this booking",
        )

    async def complete(self, booking_id: uuid.UUID, actor: Actor, reason: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        if not policy.can_complete(booking, actor):
            raise ForbiddenError("Only the assigned helper can complete this booking")
        return await self._transition(
            booking, BookingStatus.COMPLETED, actor, reason, "complete",
            system_text=f"{actor.name} has marked this booking as complete",
        )

    async def close(self, booking_id: uuid.UUID, actor: Actor, reason: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        if not policy.can_close(booking, actor):
            raise ForbiddenError("Only the customer can close this booking")
        return await self._transition(
            booking, BookingStatus.CLOSED, actor, reason, "close",
            system_text=f"{actor.name} has closed this booking",
        )

    # ── Admin overrides ──────────────────────────────────────
    async def admin_cancel(self, booking_id, actor: Actor, reason: Optional[str] = None,
                           provenance: Optional[Provenance] = None) -> Booking:
        return await self._override(booking_id, BookingStatus.CANCELLED, actor, reason, provenance, "cancel")

    async def admin_dispute(self, booking_id, actor: Actor, reason: Optional[str] = None,
                            provenance: Optional[Provenance] = None) -> Booking:
        return await self._override(booking_id, BookingStatus.DISPUTED, actor, reason, provenance, "dispute")

    async def admin_force_close(self, booking_id, actor: Actor, reason: Optional[str] = None,
                                provenance: Optional[Provenance] = None) -> Booking:
        return await self._override(booking_id, BookingStatus.FORCE_CLOSED, actor, reason, provenance, "force-close")

    async def _override(
        self,
        booking_id: uuid.UUID,
        target: BookingStatus,
        actor: Actor,
        reason: Optional[str],
        provenance: Optional[Provenance],
        verb: str,
    ) -> Booking:
        booking = await self.repo.get(booking_id)
        if not actor.is_admin:
            raise ForbiddenError("Admin access required")
        action_type, done = ADMIN_ACTIONS[target]
        return await self._transition(
            booking, target, actor, reason, verb,
            system_text=f"This booking was {done} by an admin" + (f": {reason}" if reason else ""),
            admin_notes=reason,
            audit=(action_type, provenance),
        )

    # ── Rating ───────────────────────────────────────────────
    async def rate(self, booking_id: uuid.UUID, actor: Actor, rating: int, review: Optional[str] = None) -> Booking:
        booking = await self.repo.get(booking_id)
        if booking.customer_id != actor.user_id:
            raise ForbiddenError("Only the customer can rate this booking")
        if booking.customer_rating is not None:
            raise ConflictError("Booking has already been rated")
        if not policy.can_rate(booking, actor):
            raise BookingStateError(f"Can only rate completed bookings (current state: {booking.status.value})")

        if not await self.repo.save_rating(booking, rating, review):
            raise ConflictError("Booking has already been rated")

        if booking.helper_id is not None:
            average = await self.repo.average_helper_rating(booking.helper_id)
            await self.db.execute(
                update(User)
                .where(User.id == booking.helper_id)
                .values(helper_rating=round(average or 0.0, 1))
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()
        logger.info(f"Booking {booking.id} rated {rating} by {actor.user_id}")
        return await self.repo.get(booking.id)

    # ── Internals ────────────────────────────────────────────
    async def _transition(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: Actor,
        reason: Optional[str],
        verb: str,
        system_text: str,
        admin_notes: Optional[str] = None,
        audit=None,
    ) -> Booking:
        if not can_transition(booking, target, actor.role):
            raise InvalidTransitionError(booking.status, target, verb)
        updated = apply_transition(booking, target, actor.user_id, reason)
        if admin_notes is not None:
            updated = replace(updated, admin_notes=admin_notes)
        return await self._commit(booking, updated, actor, system_text=system_text, audit=audit, reason=reason)

    async def _commit(
        self,
        before: Booking,
        after: Booking,
        actor: Actor,
        system_text: str,
        audit=None,
        reason: Optional[str] = None,
    ) -> Booking:
        await self.repo.save_transition(before, after)

        if after.status == BookingStatus.COMPLETED and after.helper_id is not None:
            await self.db.execute(
                update(User)
                .where(User.id == after.helper_id)
                .values(total_bookings=User.total_bookings + 1)
                .execution_options(synchronize_session=False)
            )

        if audit is not None:
            action_type, provenance = audit
            await audit_recorder.record(
                self.db,
                admin_id=actor.user_id,
                action_type=action_type,
                target_type=AuditTargetType.BOOKING,
                target_id=after.id,
                previous_state={"status": before.status.value},
                new_state={"status": after.status.value},
                reason=reason,
                provenance=provenance,
            )

        system_message = await self.messages.create_system(after.id, system_text)
        system_payload = message_payload(system_message)
        await self.db.commit()
        logger.info(
            f"Booking {after.id}: {before.status.value} -> {after.status.value} "
            f"by {actor.role.value} {actor.user_id}"
        )

        if self.fanout is not None:
            await self.fanout.status_changed(after)
            if after.status == BookingStatus.ACCEPTED and before.status == BookingStatus.REQUESTED:
                await self.fanout.booking_accepted(after, actor.name)
            await self.fanout.room_message(after.id, system_payload)
        return await self.repo.get(after.id)

    # ── Queries ──────────────────────────────────────────────
    async def get_for_viewer(self, booking_id: uuid.UUID, actor: Actor) -> Booking:
        booking = await self.repo.get(booking_id)
        if not policy.can_view(booking, actor.user_id, actor.role):
            raise ForbiddenError("Access denied")
        return booking
