"""
services/booking/router.py
Booking lifecycle endpoints.
States: REQUESTED → ACCEPTED → IN_PROGRESS → COMPLETED → CLOSED
        with admin overrides to CANCELLED | DISPUTED | FORCE_CLOSED.
Every change goes through BookingService; this module only parses requests
and picks the query for the list endpoints.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.repository import BookingRepository
from services.booking.service import BookingService
from services.notification.fanout import NotificationFanout
from services.realtime.server import get_fanout
from shared.domain.access_policy import Actor
from shared.domain.booking_state import BookingStatus, UserRole
from shared.middleware.auth import get_current_actor, get_current_user, require_verified_helper
from shared.models.models import Booking, User, helper_services
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingRateRequest,
    BookingResponse,
    PaginatedResponse,
    ReasonRequest,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _page_of(bookings, page: int, limit: int, total: int) -> PaginatedResponse[BookingResponse]:
    return PaginatedResponse[BookingResponse].build(
        [BookingResponse.model_validate(b) for b in bookings], page, limit, total
    )


def _reason(data: Optional[ReasonRequest]) -> Optional[str]:
    return data.reason if data else None


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Customer requests help. Connected helpers are told a new booking is available."""
    booking = await BookingService(db, fanout).create(
        actor,
        service_id=data.service_id,
        description=data.description,
        address=data.address,
        scheduled_at=data.scheduled_at,
        estimated_duration=data.estimated_duration,
        latitude=data.latitude,
        longitude=data.longitude,
    )
    return BookingResponse.model_validate(booking)


# ── Listing ───────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[BookingResponse])
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Customers see bookings they made, helpers the ones assigned to them, admins all."""
    query = select(Booking)
    if current_user.role == UserRole.CUSTOMER:
        query = query.where(Booking.customer_id == current_user.id)
    elif current_user.role == UserRole.HELPER:
        query = query.where(Booking.helper_id == current_user.id)

    if status_filter:
        query = query.where(Booking.status == status_filter)

    query = query.order_by(Booking.created_at.desc(), Booking.id)
    bookings, total = await BookingRepository(db).page(query, page, limit)
    return _page_of(bookings, page, limit, total)


@router.get("/available", response_model=PaginatedResponse[BookingResponse])
async def list_available_bookings(
    service_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(require_verified_helper),
    db: AsyncSession = Depends(get_db),
):
    """
    Open requests a verified helper could accept, soonest first.
    Helpers who listed services only see requests for those services.
    """
    query = select(Booking).where(
        Booking.status == BookingStatus.REQUESTED,
        Booking.helper_id.is_(None),
        Booking.scheduled_at > datetime.now(timezone.utc),
    )
    if current_user.services:
        offered = select(helper_services.c.service_id).where(helper_services.c.user_id == current_user.id)
        query = query.where(Booking.service_id.in_(offered))
    if service_id:
        query = query.where(Booking.service_id == service_id)

    query = query.order_by(Booking.scheduled_at.asc(), Booking.id)
    bookings, total = await BookingRepository(db).page(query, page, limit)
    return _page_of(bookings, page, limit, total)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Participants and admins only."""
    booking = await BookingService(db).get_for_viewer(booking_id, actor)
    return BookingResponse.model_validate(booking)


# ── Transitions ───────────────────────────────────────────────

@router.patch("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Verified helper takes an open request. REQUESTED → ACCEPTED."""
    booking = await BookingService(db, fanout).accept(booking_id, actor, _reason(data))
    return BookingResponse.model_validate(booking)


@router.patch("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: UUID,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Assigned helper begins work. ACCEPTED → IN_PROGRESS."""
    booking = await BookingService(db, fanout).start(booking_id, actor, _reason(data))
    return BookingResponse.model_validate(booking)


@router.patch("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Assigned helper finishes. IN_PROGRESS → COMPLETED."""
    booking = await BookingService(db, fanout).complete(booking_id, actor, _reason(data))
    return BookingResponse.model_validate(booking)


@router.patch("/{booking_id}/close", response_model=BookingResponse)
async def close_booking(
    booking_id: UUID,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    """Customer confirms the work. COMPLETED → CLOSED."""
    booking = await BookingService(db, fanout).close(booking_id, actor, _reason(data))
    return BookingResponse.model_validate(booking)


# ── Rating ────────────────────────────────────────────────────

@router.post("/{booking_id}/rate", response_model=BookingResponse)
async def rate_booking(
    booking_id: UUID,
    data: BookingRateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """One rating per booking, once the work is completed."""
    booking = await BookingService(db).rate(booking_id, actor, data.rating, data.review)
    return BookingResponse.model_validate(booking)
