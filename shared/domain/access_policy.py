"""
shared/domain/access_policy.py
Who may read or act on a booking.
All checks are plain predicates; callers decide which error to raise.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from shared.domain.booking_state import RATEABLE_STATES, Booking, UserRole


@dataclass(frozen=True)
class Actor:
    """Verified identity + role pair handed to the core by the auth layer."""
    user_id: uuid.UUID
    role: UserRole
    name: str = ""
    is_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(
            user_id=user.id,
            role=UserRole(user.role),
            name=user.name,
            is_verified=bool(user.is_verified),
        )


def is_participant(booking: Booking, user_id: Optional[uuid.UUID]) -> bool:
    if user_id is None:
        return False
    return user_id == booking.customer_id or (
        booking.helper_id is not None and user_id == booking.helper_id
    )


def can_view(booking: Booking, user_id: uuid.UUID, role: UserRole) -> bool:
    return role == UserRole.ADMIN or is_participant(booking, user_id)


def can_join_room(booking: Booking, actor: Actor) -> bool:
    """Viewers may join live rooms; only admins may open a terminal booking's room."""
    if not can_view(booking, actor.user_id, actor.role):
        return False
    return not booking.is_terminal or actor.is_admin


def can_send_message(booking: Booking, actor: Actor) -> bool:
    """Participants only (admins watch, they don't talk), never on terminal bookings."""
    return is_participant(booking, actor.user_id) and not booking.is_terminal


# ── Per-action guards ─────────────────────────────────────────

def can_accept(booking: Booking, actor: Actor) -> bool:
    return (
        actor.role == UserRole.HELPER
        and actor.is_verified
        and booking.helper_id is None
    )


def is_assigned_helper(booking: Booking, actor: Actor) -> bool:
    return booking.helper_id is not None and booking.helper_id == actor.user_id


can_start = is_assigned_helper
can_complete = is_assigned_helper


def can_close(booking: Booking, actor: Actor) -> bool:
    return booking.customer_id == actor.user_id


def can_rate(booking: Booking, actor: Actor) -> bool:
    return (
        booking.customer_id == actor.user_id
        and booking.status in RATEABLE_STATES
        and booking.customer_rating is None
    )


def other_participant(booking: Booking, user_id: uuid.UUID) -> Optional[uuid.UUID]:
    """The participant on the other side of `user_id`, if any."""
    if user_id == booking.customer_id:
        return booking.helper_id
    if booking.helper_id is not None and user_id == booking.helper_id:
        return booking.customer_id
    return None
