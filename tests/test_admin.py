"""
tests/test_admin.py
Tests for admin-only endpoints: booking overrides, user moderation, helper
verification, service catalog management and the audit log.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAction, AdminActionType, AuditTargetType, Service, User
from tests.conftest import auth_headers, create_booking


async def _audit_entries(db: AsyncSession, target_id) -> list:
    result = await db.execute(
        select(AdminAction).where(AdminAction.target_id == target_id).order_by(AdminAction.created_at)
    )
    return list(result.scalars().all())


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_customer_cannot_access_admin_endpoints(client: AsyncClient, customer: User):
    response = await client.get("/admin/users", headers=auth_headers(customer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_helper_cannot_override_bookings(
    client: AsyncClient, customer: User, helper: User, service: Service
):
    booking = await create_booking(client, customer, service)
    response = await client.patch(
        f"/admin/bookings/{booking['id']}/cancel", json={"reason": "x"}, headers=auth_headers(helper)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unauthenticated_cannot_access_admin(client: AsyncClient):
    response = await client.get("/admin/audit-log")
    assert response.status_code == 401


# ── Booking Overrides ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_cancel_requested_booking_writes_audit(
    client: AsyncClient, customer: User, admin: User, service: Service, db: AsyncSession, broadcaster
):
    booking = await create_booking(client, customer, service)
    broadcaster.clear()

    response = await client.patch(
        f"/admin/bookings/{booking['id']}/cancel",
        json={"reason": "duplicate"},
        headers={**auth_headers(admin), "User-Agent": "pytest-admin", "X-Forwarded-For": "10.0.0.7"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "CANCELLED"
    assert data["admin_notes"] == "duplicate"
    assert data["status_history"][-1]["changed_by"] == str(admin.id)

    entries = await _audit_entries(db, uuid.UUID(booking["id"]))
    assert len(entries) == 1
    entry = entries[0]
    assert entry.action_type == AdminActionType.BOOKING_CANCEL
    assert entry.target_type == AuditTargetType.BOOKING
    assert entry.admin_id == admin.id
    assert entry.reason == "duplicate"
    assert entry.previous_state == {"status": "REQUESTED"}
    assert entry.new_state == {"status": "CANCELLED"}
    assert entry.ip_address == "10.0.0.7"
    assert entry.user_agent == "pytest-admin"

    assert broadcaster.events("booking:status-changed", target=f"booking:{booking['id']}")

    # Terminal now: a second override is an invalid transition and writes no audit
    again = await client.patch(
        f"/admin/bookings/{booking['id']}/dispute", json={"reason": "late"}, headers=auth_headers(admin)
    )
    assert again.status_code == 400
    assert len(await _audit_entries(db, uuid.UUID(booking["id"]))) == 1


@pytest.mark.asyncio
async def test_dispute_then_force_close(
    client: AsyncClient, customer: User, helper: User, admin: User, service: Service, db: AsyncSession
):
    booking = await create_booking(client, customer, service)
    bid = booking["id"]
    for action in ("accept", "start"):
        r = await client.patch(f"/bookings/{bid}/{action}", headers=auth_headers(helper))
        assert r.status_code == 200

    disputed = await client.patch(
        f"/admin/bookings/{bid}/dispute", json={"reason": "customer complaint"}, headers=auth_headers(admin)
    )
    assert disputed.status_code == 200
    assert disputed.json()["status"] == "DISPUTED"

    # Helper can no longer complete a disputed booking
    blocked = await client.patch(f"/bookings/{bid}/complete", headers=auth_headers(helper))
    assert blocked.status_code == 400

    closed = await client.patch(
        f"/admin/bookings/{bid}/force-close", json={"reason": "refund issued"}, headers=auth_headers(admin)
    )
    assert closed.status_code == 200
    assert closed.json()["status"] == "FORCE_CLOSED"
    assert closed.json()["helper_id"] == str(helper.id)

    entries = await _audit_entries(db, uuid.UUID(bid))
    assert [e.action_type for e in entries] == [
        AdminActionType.BOOKING_DISPUTE,
        AdminActionType.BOOKING_FORCE_CLOSE,
    ]


@pytest.mark.asyncio
async def test_force_close_requires_dispute_first(
    client: AsyncClient, customer: User, admin: User, service: Service
):
    booking = await create_booking(client, customer, service)
    response = await client.patch(
        f"/admin/bookings/{booking['id']}/force-close", json={"reason": "x"}, headers=auth_headers(admin)
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Cannot force-close booking in REQUESTED state"


@pytest.mark.asyncio
async def test_admin_lists_all_bookings(
    client: AsyncClient, customer: User, other_customer: User, admin: User, service: Service
):
    await create_booking(client, customer, service)
    await create_booking(client, other_customer, service)

    response = await client.get("/admin/bookings?status=REQUESTED", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["total"] == 2


# ── User Moderation ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deactivate_user_blocks_access_and_is_audited(
    client: AsyncClient, customer: User, admin: User, db: AsyncSession
):
    response = await client.patch(
        f"/admin/users/{customer.id}/deactivate", json={"reason": "spam"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    me = await client.get("/auth/me", headers=auth_headers(customer))
    assert me.status_code == 403

    entries = await _audit_entries(db, customer.id)
    assert entries[0].action_type == AdminActionType.USER_DEACTIVATE
    assert entries[0].previous_state["is_active"] is True
    assert entries[0].new_state["is_active"] is False

    again = await client.patch(
        f"/admin/users/{customer.id}/deactivate", json={"reason": "spam"}, headers=auth_headers(admin)
    )
    assert again.status_code == 400

    activated = await client.patch(f"/admin/users/{customer.id}/activate", headers=auth_headers(admin))
    assert activated.status_code == 200
    assert activated.json()["is_active"] is True


@pytest.mark.asyncio
async def test_deactivate_requires_reason(client: AsyncClient, customer: User, admin: User):
    response = await client.patch(
        f"/admin/users/{customer.id}/deactivate", json={}, headers=auth_headers(admin)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_cannot_be_deactivated(client: AsyncClient, admin: User):
    response = await client.patch(
        f"/admin/users/{admin.id}/deactivate", json={"reason": "oops"}, headers=auth_headers(admin)
    )
    assert response.status_code == 403


# ── Helper Verification ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_verify_pending_helper(
    client: AsyncClient, unverified_helper: User, helper: User, admin: User, db: AsyncSession
):
    pending = await client.get("/admin/helpers/pending", headers=auth_headers(admin))
    assert [u["id"] for u in pending.json()["items"]] == [str(unverified_helper.id)]

    response = await client.patch(
        f"/admin/helpers/{unverified_helper.id}/verify", json={"reason": "ID checked"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["is_verified"] is True
    assert response.json()["verified_by_id"] == str(admin.id)

    entries = await _audit_entries(db, unverified_helper.id)
    assert entries[0].action_type == AdminActionType.HELPER_VERIFY

    unverify = await client.patch(
        f"/admin/helpers/{unverified_helper.id}/unverify", json={"reason": "expired ID"}, headers=auth_headers(admin)
    )
    assert unverify.status_code == 200
    assert unverify.json()["is_verified"] is False


@pytest.mark.asyncio
async def test_verify_non_helper_returns_404(client: AsyncClient, customer: User, admin: User):
    response = await client.patch(f"/admin/helpers/{customer.id}/verify", headers=auth_headers(admin))
    assert response.status_code == 404


# ── Service Catalog ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_and_deactivate_service(client: AsyncClient, admin: User, customer: User, db: AsyncSession):
    created = await client.post(
        "/admin/services",
        json={"name": "Gardening", "description": "Lawn and hedges", "category": "home"},
        headers=auth_headers(admin),
    )
    assert created.status_code == 201
    service_id = created.json()["id"]

    duplicate = await client.post(
        "/admin/services", json={"name": "gardening", "category": "home"}, headers=auth_headers(admin)
    )
    assert duplicate.status_code == 409

    listed = await client.get("/services")
    assert service_id in [s["id"] for s in listed.json()]

    deactivated = await client.patch(
        f"/admin/services/{service_id}", json={"is_active": False}, headers=auth_headers(admin)
    )
    assert deactivated.status_code == 200

    listed = await client.get("/services")
    assert service_id not in [s["id"] for s in listed.json()]

    entries = await _audit_entries(db, uuid.UUID(service_id))
    assert [e.action_type for e in entries] == [
        AdminActionType.SERVICE_CREATE,
        AdminActionType.SERVICE_DEACTIVATE,
    ]


# ── Audit Log ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_log_is_filterable_and_newest_first(
    client: AsyncClient, customer: User, unverified_helper: User, admin: User, service: Service
):
    await client.patch(f"/admin/helpers/{unverified_helper.id}/verify", headers=auth_headers(admin))
    booking = await create_booking(client, customer, service)
    await client.patch(
        f"/admin/bookings/{booking['id']}/cancel", json={"reason": "duplicate"}, headers=auth_headers(admin)
    )

    response = await client.get("/admin/audit-log", headers=auth_headers(admin))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["limit"] == 50
    assert [i["action_type"] for i in data["items"]] == ["BOOKING_CANCEL", "HELPER_VERIFY"]
    assert data["items"][0]["admin_name"] == admin.name

    filtered = await client.get("/admin/audit-log?target_type=Booking", headers=auth_headers(admin))
    assert [i["target_id"] for i in filtered.json()["items"]] == [booking["id"]]
