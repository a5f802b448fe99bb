"""
services/booking/repository.py
Persistence for booking values.

Status changes are written with a single conditional UPDATE keyed on the
status the caller read (and, for accept, on helper_id still being NULL).
The matching history rows are inserted in the same transaction, so the
status column and its history can never disagree. When the UPDATE hits
zero rows another writer got there first and ConflictError is raised.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.domain.booking_state import Booking, BookingStatus, StatusChange
from shared.exceptions import ConflictError, NotFoundError
from shared.models.models import Booking as BookingRow
from shared.models.models import BookingStatusHistory


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_domain(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        customer_id=row.customer_id,
        helper_id=row.helper_id,
        service_id=row.service_id,
        status=BookingStatus(row.status),
        description=row.description,
        address=row.address,
        latitude=row.latitude,
        longitude=row.longitude,
        scheduled_at=_aware(row.scheduled_at),
        estimated_duration=row.estimated_duration,
        status_history=tuple(
            StatusChange(
                status=BookingStatus(h.status),
                changed_by=h.changed_by_id,
                changed_at=_aware(h.changed_at),
                reason=h.reason,
            )
            for h in row.history
        ),
        completed_at=_aware(row.completed_at),
        customer_rating=row.customer_rating,
        customer_review=row.customer_review,
        admin_notes=row.admin_notes,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _history_rows(booking_id: uuid.UUID, changes: Sequence[StatusChange], start: int) -> List[BookingStatusHistory]:
    return [
        BookingStatusHistory(
            booking_id=booking_id,
            position=start + offset,
            status=change.status,
            changed_by_id=change.changed_by,
            changed_at=change.changed_at,
            reason=change.reason,
        )
        for offset, change in enumerate(changes)
    ]


class BookingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── reads ────────────────────────────────────────────────
    async def find(self, booking_id: uuid.UUID) -> Optional[Booking]:
        result = await self.db.execute(
            select(BookingRow)
            .where(BookingRow.id == booking_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return to_domain(row) if row else None

    async def get(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.find(booking_id)
        if booking is None:
            raise NotFoundError("Booking")
        return booking

    async def page(self, query, page: int, limit: int) -> Tuple[List[Booking], int]:
        """Run a filtered select(BookingRow) and return one page plus the total count."""
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.offset((page - 1) * limit).limit(limit).execution_options(populate_existing=True)
        )
        return [to_domain(row) for row in result.scalars().all()], total or 0

    # ── writes ───────────────────────────────────────────────
    async def add(self, booking: Booking) -> Booking:
        row = BookingRow(
            id=booking.id,
            customer_id=booking.customer_id,
            service_id=booking.service_id,
            status=booking.status,
            description=booking.description,
            address=booking.address,
            latitude=booking.latitude,
            longitude=booking.longitude,
            scheduled_at=booking.scheduled_at,
            estimated_duration=booking.estimated_duration,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )
        self.db.add(row)
        # Parent row first so the history FK resolves on every backend
        await self.db.flush()
        self.db.add_all(_history_rows(booking.id, booking.status_history, 0))
        await self.db.flush()
        return booking

    async def save_transition(self, before: Booking, after: Booking) -> Booking:
        """
        Persist `after` only if the stored row still matches `before`.
        Writes status, helper, completion stamp, notes and the new history entries.
        """
        stmt = (
            update(BookingRow)
            .where(BookingRow.id == before.id, BookingRow.status == before.status)
            .values(
                status=after.status,
                helper_id=after.helper_id,
                completed_at=after.completed_at,
                admin_notes=after.admin_notes,
                updated_at=after.updated_at or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if before.helper_id is None:
            stmt = stmt.where(BookingRow.helper_id.is_(None))
        else:
            stmt = stmt.where(BookingRow.helper_id == before.helper_id)

        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise ConflictError("Booking was updated by someone else, reload and retry")

        new_entries = after.status_history[len(before.status_history):]
        self.db.add_all(_history_rows(after.id, new_entries, len(before.status_history)))
        await self.db.flush()
        return after

    async def save_rating(self, booking: Booking, rating: int, review: Optional[str]) -> bool:
        """Set the customer rating once. False when a rating already exists."""
        result = await self.db.execute(
            update(BookingRow)
            .where(BookingRow.id == booking.id, BookingRow.customer_rating.is_(None))
            .values(customer_rating=rating, customer_review=review, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def average_helper_rating(self, helper_id: uuid.UUID) -> Optional[float]:
        value = await self.db.scalar(
            select(func.avg(BookingRow.customer_rating)).where(
                BookingRow.helper_id == helper_id,
                BookingRow.customer_rating.is_not(None),
            )
        )
        return float(value) if value is not None else None
