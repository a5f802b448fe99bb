"""
tests/test_bookings.py
Tests for the booking lifecycle: creation, accept/start/complete/close,
concurrent accept, rating and the broadcasts each step produces.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base
from services.booking.repository import BookingRepository
from services.booking.service import BookingService
from shared.domain.access_policy import Actor
from shared.domain.booking_state import BookingStatus, UserRole, assign_helper, is_valid_history
from shared.exceptions import ConflictError, InvalidTransitionError
from shared.models.models import Message, MessageType, Service, ServiceCategory, User
from tests.conftest import auth_headers, booking_payload, create_booking


async def _advance(client: AsyncClient, booking_id: str, *steps):
    """Run (action, user) steps, asserting each one succeeds."""
    data = None
    for action, user in steps:
        response = await client.patch(f"/bookings/{booking_id}/{action}", headers=auth_headers(user))
        assert response.status_code == 200, response.text
        data = response.json()
    return data


# ── Creation ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_customer_creates_requested_booking(
    client: AsyncClient, customer: User, service: Service, broadcaster
):
    booking = await create_booking(client, customer, service)

    assert booking["status"] == "REQUESTED"
    assert booking["helper_id"] is None
    assert booking["customer_id"] == str(customer.id)
    assert len(booking["status_history"]) == 1
    assert booking["status_history"][0]["changed_by"] == str(customer.id)

    announced = broadcaster.events("booking:new-available", target="role:helper")
    assert len(announced) == 1
    assert announced[0][1]["bookingId"] == booking["id"]


@pytest.mark.asyncio
async def test_helper_cannot_create_booking(client: AsyncClient, helper: User, service: Service):
    response = await client.post("/bookings", json=booking_payload(service), headers=auth_headers(helper))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_booking_in_the_past_is_rejected(client: AsyncClient, customer: User, service: Service):
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    response = await client.post(
        "/bookings", json=booking_payload(service, scheduled_at=past), headers=auth_headers(customer)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_booking_for_unknown_service_returns_404(client: AsyncClient, customer: User, service: Service):
    payload = booking_payload(service, service_id=str(uuid.uuid4()))
    response = await client.post("/bookings", json=payload, headers=auth_headers(customer))
    assert response.status_code == 404


# ── Full Lifecycle ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_lifecycle_to_closed(
    client: AsyncClient,
    customer: User,
    helper: User,
    service: Service,
    db: AsyncSession,
    broadcaster,
):
    booking = await create_booking(client, customer, service)
    bid = booking["id"]

    data = await _advance(
        client, bid,
        ("accept", helper),
        ("start", helper),
        ("complete", helper),
        ("close", customer),
    )

    assert data["status"] == "CLOSED"
    assert data["helper_id"] == str(helper.id)
    assert data["completed_at"] is not None
    assert [h["status"] for h in data["status_history"]] == [
        "REQUESTED", "ACCEPTED", "IN_PROGRESS", "COMPLETED", "CLOSED",
    ]

    stored = await BookingRepository(db).get(uuid.UUID(bid))
    assert is_valid_history(stored.status_history)

    await db.refresh(helper)
    assert helper.total_bookings == 1

    # Each transition leaves a system message in the chat
    result = await db.execute(
        select(Message).where(Message.booking_id == uuid.UUID(bid), Message.message_type == MessageType.SYSTEM)
    )
    assert len(result.scalars().all()) == 4

    changes = broadcaster.events("booking:status-changed", target=f"booking:{bid}")
    assert [c[1]["status"] for c in changes] == ["ACCEPTED", "IN_PROGRESS", "COMPLETED", "CLOSED"]
    assert len(broadcaster.events("booking:updated", target=f"user:{customer.id}")) == 4
    accepted = broadcaster.events("booking:accepted", target=f"user:{customer.id}")
    assert accepted[0][1]["helper"]["name"] == helper.name


@pytest.mark.asyncio
async def test_unverified_helper_cannot_accept(
    client: AsyncClient, customer: User, unverified_helper: User, service: Service
):
    booking = await create_booking(client, customer, service)
    response = await client.patch(f"/bookings/{booking['id']}/accept", headers=auth_headers(unverified_helper))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_customer_cannot_accept(client: AsyncClient, customer: User, service: Service):
    booking = await create_booking(client, customer, service)
    response = await client.patch(f"/bookings/{booking['id']}/accept", headers=auth_headers(customer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_second_accept_is_rejected(
    client: AsyncClient, customer: User, helper: User, second_helper: User, service: Service
):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper))

    response = await client.patch(f"/bookings/{booking['id']}/accept", headers=auth_headers(second_helper))
    assert response.status_code == 400
    assert "ACCEPTED" in response.json()["detail"]


@pytest.mark.asyncio
async def test_concurrent_accept_loses_with_conflict(
    client: AsyncClient,
    customer: User,
    helper: User,
    second_helper: User,
    service: Service,
    session_factory,
):
    """Two helpers read the same REQUESTED booking; only the first write lands."""
    booking = await create_booking(client, customer, service)
    bid = uuid.UUID(booking["id"])

    async with session_factory() as stale_session:
        snapshot = await BookingRepository(stale_session).get(bid)

        async with session_factory() as winner_session:
            await BookingService(winner_session).accept(bid, Actor.from_user(helper))

        with pytest.raises(ConflictError):
            await BookingRepository(stale_session).save_transition(
                snapshot, assign_helper(snapshot, second_helper.id)
            )
        await stale_session.rollback()

    async with session_factory() as check:
        stored = await BookingRepository(check).get(bid)
    assert stored.helper_id == helper.id
    assert len(stored.status_history) == 2


@pytest.mark.asyncio
async def test_only_assigned_helper_can_start(
    client: AsyncClient, customer: User, helper: User, second_helper: User, service: Service
):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper))

    response = await client.patch(f"/bookings/{booking['id']}/start", headers=auth_headers(second_helper))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cannot_skip_to_complete(client: AsyncClient, customer: User, helper: User, service: Service):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper))

    response = await client.patch(f"/bookings/{booking['id']}/complete", headers=auth_headers(helper))
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot complete booking in ACCEPTED state"


@pytest.mark.asyncio
async def test_helper_cannot_close(client: AsyncClient, customer: User, helper: User, service: Service):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper), ("start", helper), ("complete", helper))

    response = await client.patch(f"/bookings/{booking['id']}/close", headers=auth_headers(helper))
    assert response.status_code == 403


# ── Visibility ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stranger_cannot_view_booking(
    client: AsyncClient, customer: User, other_customer: User, service: Service
):
    booking = await create_booking(client, customer, service)
    response = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(other_customer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_view_any_booking(client: AsyncClient, customer: User, admin: User, service: Service):
    booking = await create_booking(client, customer, service)
    response = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(admin))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_unknown_booking_returns_404(client: AsyncClient, customer: User):
    response = await client.get(f"/bookings/{uuid.uuid4()}", headers=auth_headers(customer))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_my_bookings_is_paginated(
    client: AsyncClient, customer: User, other_customer: User, service: Service
):
    for _ in range(3):
        await create_booking(client, customer, service)
    await create_booking(client, other_customer, service)

    response = await client.get("/bookings?page=1&limit=2", headers=auth_headers(customer))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 2
    assert len(data["items"]) == 2
    assert all(b["customer_id"] == str(customer.id) for b in data["items"])


@pytest.mark.asyncio
async def test_limit_above_maximum_is_rejected(client: AsyncClient, customer: User):
    response = await client.get("/bookings?limit=101", headers=auth_headers(customer))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_available_bookings_for_verified_helper(
    client: AsyncClient, customer: User, helper: User, unverified_helper: User, service: Service
):
    booking = await create_booking(client, customer, service)

    response = await client.get("/bookings/available", headers=auth_headers(helper))
    assert response.status_code == 200
    assert [b["id"] for b in response.json()["items"]] == [booking["id"]]

    response = await client.get("/bookings/available", headers=auth_headers(unverified_helper))
    assert response.status_code == 403


# ── Rating ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rate_completed_booking_updates_helper_average(
    client: AsyncClient, customer: User, helper: User, service: Service, db: AsyncSession
):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper), ("start", helper), ("complete", helper))

    response = await client.post(
        f"/bookings/{booking['id']}/rate",
        json={"rating": 4, "review": "Quick and tidy"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 200
    assert response.json()["customer_rating"] == 4

    await db.refresh(helper)
    assert helper.helper_rating == 4.0

    again = await client.post(
        f"/bookings/{booking['id']}/rate", json={"rating": 5}, headers=auth_headers(customer)
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_cannot_rate_before_completion(client: AsyncClient, customer: User, helper: User, service: Service):
    booking = await create_booking(client, customer, service)
    await _advance(client, booking["id"], ("accept", helper))

    response = await client.post(
        f"/bookings/{booking['id']}/rate", json={"rating": 5}, headers=auth_headers(customer)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_rating_out_of_range_is_rejected(client: AsyncClient, customer: User, service: Service):
    booking = await create_booking(client, customer, service)
    response = await client.post(
        f"/bookings/{booking['id']}/rate", json={"rating": 6}, headers=auth_headers(customer)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_racing_accepts_exactly_one_wins(tmp_path):
    """Two helpers accept at the same time on separate connections; one write lands."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        connect_args={"timeout": 10},
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async with factory() as setup:
        customer = User(id=uuid.uuid4(), phone="+919700000001", name="Race Customer", role=UserRole.CUSTOMER)
        helpers = [
            User(
                id=uuid.uuid4(), phone=f"+91970000001{i}", name=f"Race Helper {i}",
                role=UserRole.HELPER, is_verified=True,
            )
            for i in range(2)
        ]
        service = Service(id=uuid.uuid4(), name="Painting", category=ServiceCategory.HOME)
        setup.add_all([customer, *helpers, service])
        await setup.commit()
        booking = await BookingService(setup).create(
            Actor.from_user(customer),
            service.id,
            "Paint the spare bedroom walls",
            "12 Park Street, Pune",
            datetime.now(timezone.utc) + timedelta(days=1),
        )

    async def accept(helper: User):
        async with factory() as session:
            return await BookingService(session).accept(booking.id, Actor.from_user(helper))

    try:
        results = await asyncio.gather(*(accept(h) for h in helpers), return_exceptions=True)

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], (ConflictError, InvalidTransitionError))

        async with factory() as check:
            stored = await BookingRepository(check).get(booking.id)
        assert stored.helper_id == winners[0].helper_id
        assert [h.status for h in stored.status_history] == [BookingStatus.REQUESTED, BookingStatus.ACCEPTED]
    finally:
        await engine.dispose()
