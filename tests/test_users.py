"""
tests/test_users.py
Tests for profile management, the helper directory and the public service catalog.
"""

import uuid

import pytest
from httpx import AsyncClient

from shared.models.models import Service, User
from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_get_user_profile(client: AsyncClient, customer: User):
    response = await client.get("/users/me", headers=auth_headers(customer))
    assert response.status_code == 200
    data = response.json()
    assert data["phone"] == customer.phone
    assert data["name"] == customer.name
    assert data["services"] == []


@pytest.mark.asyncio
async def test_update_user_name(client: AsyncClient, customer: User):
    response = await client.patch("/users/me", headers=auth_headers(customer), json={"name": "Asha K"})
    assert response.status_code == 200
    assert response.json()["name"] == "Asha K"


@pytest.mark.asyncio
async def test_update_empty_body_is_rejected(client: AsyncClient, customer: User):
    response = await client.patch("/users/me", headers=auth_headers(customer), json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_only_helpers_have_a_bio(client: AsyncClient, customer: User, helper: User):
    response = await client.patch("/users/me", headers=auth_headers(customer), json={"bio": "hi"})
    assert response.status_code == 403

    response = await client.patch(
        "/users/me", headers=auth_headers(helper), json={"bio": "Ten years fixing pipes"}
    )
    assert response.status_code == 200
    assert response.json()["bio"] == "Ten years fixing pipes"


@pytest.mark.asyncio
async def test_get_user_requires_auth(client: AsyncClient):
    response = await client.get("/users/me")
    assert response.status_code == 401


# ── Helper Services ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_helper_sets_offered_services(client: AsyncClient, helper: User, service: Service):
    response = await client.put(
        "/users/me/services", headers=auth_headers(helper), json={"service_ids": [str(service.id)]}
    )
    assert response.status_code == 200
    assert [s["id"] for s in response.json()["services"]] == [str(service.id)]

    cleared = await client.put("/users/me/services", headers=auth_headers(helper), json={"service_ids": []})
    assert cleared.json()["services"] == []


@pytest.mark.asyncio
async def test_unknown_service_id_is_rejected(client: AsyncClient, helper: User):
    response = await client.put(
        "/users/me/services", headers=auth_headers(helper), json={"service_ids": [str(uuid.uuid4())]}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_customer_cannot_set_services(client: AsyncClient, customer: User, service: Service):
    response = await client.put(
        "/users/me/services", headers=auth_headers(customer), json={"service_ids": [str(service.id)]}
    )
    assert response.status_code == 403


# ── Helper Directory ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_directory_lists_verified_helpers_only(
    client: AsyncClient, customer: User, helper: User, unverified_helper: User, service: Service
):
    await client.put("/users/me/services", headers=auth_headers(helper), json={"service_ids": [str(service.id)]})

    response = await client.get("/users/helpers", headers=auth_headers(customer))
    assert response.status_code == 200
    ids = [h["id"] for h in response.json()["items"]]
    assert ids == [str(helper.id)]

    by_service = await client.get(f"/users/helpers?service_id={uuid.uuid4()}", headers=auth_headers(customer))
    assert by_service.json()["total"] == 0

    detail = await client.get(f"/users/helpers/{helper.id}", headers=auth_headers(customer))
    assert detail.status_code == 200
    assert detail.json()["services"][0]["name"] == "Plumbing"


@pytest.mark.asyncio
async def test_customer_is_not_in_helper_directory(client: AsyncClient, customer: User, other_customer: User):
    response = await client.get(f"/users/helpers/{other_customer.id}", headers=auth_headers(customer))
    assert response.status_code == 404


# ── Service Catalog ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_catalog_is_public(client: AsyncClient, service: Service):
    response = await client.get("/services")
    assert response.status_code == 200
    assert [s["name"] for s in response.json()] == ["Plumbing"]

    filtered = await client.get("/services?category=tech")
    assert filtered.json() == []

    detail = await client.get(f"/services/{service.id}")
    assert detail.status_code == 200
    assert detail.json()["category"] == "home"


@pytest.mark.asyncio
async def test_unknown_service_returns_404(client: AsyncClient):
    response = await client.get(f"/services/{uuid.uuid4()}")
    assert response.status_code == 404
