"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, mocked Redis, recording
broadcaster, HTTP client, and one user per role.
"""

import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from services.realtime.broadcaster import Broadcaster, Channel
from services.realtime.server import get_broadcaster
from shared.domain.booking_state import UserRole
from shared.models.models import Message, Service, ServiceCategory, User
from shared.utils.security import create_access_token


# ── Redis ──────────────────────────────────────────────────────────────────────

def make_redis_mock() -> AsyncMock:
    """AsyncMock backed by a dict; covers the commands the app uses."""
    store: dict = {}
    redis = AsyncMock()

    async def setex(key, ttl, value):
        store[key] = str(value)
        return True

    async def get(key):
        return store.get(key)

    async def delete(*keys):
        return sum(1 for k in keys if store.pop(k, None) is not None)

    async def exists(*keys):
        return sum(1 for k in keys if k in store)

    async def incr(key):
        store[key] = str(int(store.get(key, 0)) + 1)
        return int(store[key])

    redis.setex.side_effect = setex
    redis.get.side_effect = get
    redis.delete.side_effect = delete
    redis.exists.side_effect = exists
    redis.incr.side_effect = incr
    redis.expire.return_value = True
    redis.ping.return_value = True
    redis.store = store
    return redis


# ── Broadcaster ────────────────────────────────────────────────────────────────

class _RecordingChannel(Channel):
    def __init__(self, owner: "FakeBroadcaster", target: str, skip_sid: Optional[str]):
        self.owner = owner
        self.target = target
        self.skip_sid = skip_sid

    async def emit(self, event: str, payload: Any) -> None:
        self.owner.emitted.append((self.target, event, payload, self.skip_sid))


class FakeBroadcaster(Broadcaster):
    """Records every emit as (target, event, payload, skip_sid)."""

    def __init__(self):
        self.emitted: list = []
        self.rooms: dict = defaultdict(set)

    def channel(self, name: str, skip_sid: Optional[str] = None) -> Channel:
        return _RecordingChannel(self, name, skip_sid)

    def to_connection(self, sid: str) -> Channel:
        return _RecordingChannel(self, sid, None)

    async def enter(self, sid: str, name: str) -> None:
        self.rooms[name].add(sid)

    async def leave(self, sid: str, name: str) -> None:
        self.rooms[name].discard(sid)

    def events(self, event: str, target: Optional[str] = None) -> list:
        return [
            (t, payload, skip)
            for t, e, payload, skip in self.emitted
            if e == event and (target is None or t == target)
        ]

    def clear(self) -> None:
        self.emitted.clear()


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_mock() -> AsyncMock:
    return make_redis_mock()


@pytest.fixture
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster()


@pytest_asyncio.fixture
async def client(session_factory, redis_mock, broadcaster) -> AsyncClient:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis_mock
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users & catalog ────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value)
    return {"Authorization": f"Bearer {token}"}


async def _make_user(db: AsyncSession, phone: str, name: str, role: UserRole, **extra) -> User:
    user = User(id=uuid.uuid4(), phone=phone, name=name, role=role, **extra)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await _make_user(db, "+919800000001", "Asha Customer", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def other_customer(db: AsyncSession) -> User:
    return await _make_user(db, "+919800000002", "Ravi Customer", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def helper(db: AsyncSession) -> User:
    return await _make_user(
        db, "+919800000011", "Meera Helper", UserRole.HELPER,
        is_verified=True, verified_at=datetime.now(timezone.utc),
    )


@pytest_asyncio.fixture
async def second_helper(db: AsyncSession) -> User:
    return await _make_user(
        db, "+919800000012", "Karan Helper", UserRole.HELPER,
        is_verified=True, verified_at=datetime.now(timezone.utc),
    )


@pytest_asyncio.fixture
async def unverified_helper(db: AsyncSession) -> User:
    return await _make_user(db, "+919800000013", "New Helper", UserRole.HELPER)


@pytest_asyncio.fixture
async def admin(db: AsyncSession) -> User:
    return await _make_user(db, "+919800000099", "Platform Admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def service(db: AsyncSession) -> Service:
    svc = Service(
        id=uuid.uuid4(),
        name="Plumbing",
        description="Leaks and blocked drains",
        category=ServiceCategory.HOME,
        icon="wrench",
    )
    db.add(svc)
    await db.commit()
    await db.refresh(svc)
    return svc


def booking_payload(service: Service, **overrides) -> dict:
    payload = {
        "service_id": str(service.id),
        "description": "Kitchen sink is leaking under the cabinet",
        "address": "12 MG Road, Bengaluru",
        "scheduled_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        "estimated_duration": 90,
    }
    payload.update(overrides)
    return payload


async def create_booking(client: AsyncClient, customer: User, service: Service, **overrides) -> dict:
    response = await client.post("/bookings", json=booking_payload(service, **overrides), headers=auth_headers(customer))
    assert response.status_code == 201, response.text
    return response.json()


async def count_messages(session_factory, booking_id) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count()).select_from(Message).where(Message.booking_id == uuid.UUID(str(booking_id)))
        )
