"""
shared/domain/booking_state.py
Booking lifecycle as a pure finite state machine.

    REQUESTED ──► ACCEPTED ──► IN_PROGRESS ──► COMPLETED ──► CLOSED
        │            │  │            │              │
        └─► CANCELLED◄┘  └─► DISPUTED ◄┘──────────────┘
                                │
                                └─► FORCE_CLOSED

CANCELLED, DISPUTED and FORCE_CLOSED are admin-only targets. The rule lives on
the table entry itself, so a target cannot be reachable without its role tag.

Nothing in this module touches the database; BookingRepository persists the
values produced here.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Dict, Optional, Tuple


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    HELPER = "helper"
    ADMIN = "admin"


class BookingStatus(str, PyEnum):
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    FORCE_CLOSED = "FORCE_CLOSED"


class IllegalTransitionError(RuntimeError):
    """apply_transition was called for a move the table does not contain."""


# ── Transition Table ──────────────────────────────────────────

@dataclass(frozen=True)
class TransitionRule:
    target: BookingStatus
    required_role: Optional[UserRole] = None  # None: participant guard decides


TRANSITIONS: Dict[BookingStatus, Tuple[TransitionRule, ...]] = {
    BookingStatus.REQUESTED: (
        TransitionRule(BookingStatus.ACCEPTED),
        TransitionRule(BookingStatus.CANCELLED, UserRole.ADMIN),
    ),
    BookingStatus.ACCEPTED: (
        TransitionRule(BookingStatus.IN_PROGRESS),
        TransitionRule(BookingStatus.CANCELLED, UserRole.ADMIN),
        TransitionRule(BookingStatus.DISPUTED, UserRole.ADMIN),
    ),
    BookingStatus.IN_PROGRESS: (
        TransitionRule(BookingStatus.COMPLETED),
        TransitionRule(BookingStatus.DISPUTED, UserRole.ADMIN),
    ),
    BookingStatus.COMPLETED: (
        TransitionRule(BookingStatus.CLOSED),
        TransitionRule(BookingStatus.DISPUTED, UserRole.ADMIN),
    ),
    BookingStatus.DISPUTED: (
        TransitionRule(BookingStatus.FORCE_CLOSED, UserRole.ADMIN),
    ),
    BookingStatus.CLOSED: (),
    BookingStatus.CANCELLED: (),
    BookingStatus.FORCE_CLOSED: (),
}

TERMINAL_STATES = frozenset(s for s, rules in TRANSITIONS.items() if not rules)

# States only reachable after a helper was assigned by accept
HELPER_REQUIRED_STATES = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
    BookingStatus.CLOSED,
    BookingStatus.DISPUTED,
    BookingStatus.FORCE_CLOSED,
})

RATEABLE_STATES = frozenset({BookingStatus.COMPLETED, BookingStatus.CLOSED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Values ────────────────────────────────────────────────────

@dataclass(frozen=True)
class StatusChange:
    status: BookingStatus
    changed_by: Optional[uuid.UUID]
    changed_at: datetime
    reason: Optional[str] = None


@dataclass(frozen=True)
class Booking:
    """Immutable snapshot of a booking. Every transition returns a new value."""
    id: uuid.UUID
    customer_id: uuid.UUID
    service_id: uuid.UUID
    status: BookingStatus
    description: str
    address: str
    scheduled_at: datetime
    estimated_duration: int = 60
    helper_id: Optional[uuid.UUID] = None
    status_history: Tuple[StatusChange, ...] = field(default_factory=tuple)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    completed_at: Optional[datetime] = None
    customer_rating: Optional[int] = None
    customer_review: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


def new_booking(
    customer_id: uuid.UUID,
    service_id: uuid.UUID,
    description: str,
    address: str,
    scheduled_at: datetime,
    estimated_duration: int = 60,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Create a REQUESTED booking whose history starts with the customer's request."""
    now = now or _utcnow()
    return Booking(
        id=uuid.uuid4(),
        customer_id=customer_id,
        service_id=service_id,
        status=BookingStatus.REQUESTED,
        description=description,
        address=address,
        scheduled_at=scheduled_at,
        estimated_duration=estimated_duration,
        latitude=latitude,
        longitude=longitude,
        status_history=(StatusChange(BookingStatus.REQUESTED, customer_id, now),),
        created_at=now,
        updated_at=now,
    )


# ── Engine ────────────────────────────────────────────────────

def allowed_targets(status: BookingStatus) -> Tuple[BookingStatus, ...]:
    return tuple(rule.target for rule in TRANSITIONS[status])


def _rule_for(status: BookingStatus, target: BookingStatus) -> Optional[TransitionRule]:
    for rule in TRANSITIONS[status]:
        if rule.target == target:
            return rule
    return None


def can_transition(booking: Booking, target: BookingStatus, actor_role: UserRole) -> bool:
    """
    True when `target` is in the table for the booking's current status and the
    rule's role tag (if any) matches `actor_role`. Never raises.
    """
    rule = _rule_for(booking.status, target)
    if rule is None:
        return False
    if rule.required_role is not None and actor_role != rule.required_role:
        return False
    return True


def apply_transition(
    booking: Booking,
    target: BookingStatus,
    actor_id: Optional[uuid.UUID],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Move `booking` to `target` and append one history entry.
    Role checks are the caller's job (can_transition); a move missing from the
    table raises IllegalTransitionError.
    """
    if _rule_for(booking.status, target) is None:
        raise IllegalTransitionError(f"{booking.status.value} -> {target.value} is not a valid transition")

    now = now or _utcnow()
    changes = {
        "status": target,
        "status_history": booking.status_history + (StatusChange(target, actor_id, now, reason),),
        "updated_at": now,
    }
    if target == BookingStatus.COMPLETED:
        changes["completed_at"] = now
    return replace(booking, **changes)


def assign_helper(
    booking: Booking,
    helper_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Booking:
    """Accept: helper assignment and the ACCEPTED transition as a single value."""
    if booking.helper_id is not None:
        raise IllegalTransitionError("Booking already has a helper assigned")
    return apply_transition(replace(booking, helper_id=helper_id), BookingStatus.ACCEPTED, helper_id, now=now)


def is_valid_history(history: Tuple[StatusChange, ...]) -> bool:
    """True when `history` starts at REQUESTED, every step follows the table and time never goes back."""
    if not history or history[0].status != BookingStatus.REQUESTED:
        return False
    for prev, nxt in zip(history, history[1:]):
        if nxt.status not in allowed_targets(prev.status):
            return False
        if nxt.changed_at < prev.changed_at:
            return False
    return True
