"""
shared/models/models.py
All SQLAlchemy ORM models for the Helping Hand marketplace.
UUID primary keys throughout; portable column types so the same
models run on PostgreSQL (production) and SQLite (tests).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from shared.domain.booking_state import BookingStatus, UserRole

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class ServiceCategory(str, PyEnum):
    HOME = "home"
    ERRANDS = "errands"
    TECH = "tech"
    CARE = "care"
    OTHER = "other"


class MessageType(str, PyEnum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class AdminActionType(str, PyEnum):
    USER_DEACTIVATE = "USER_DEACTIVATE"
    USER_ACTIVATE = "USER_ACTIVATE"
    HELPER_VERIFY = "HELPER_VERIFY"
    HELPER_UNVERIFY = "HELPER_UNVERIFY"
    BOOKING_CANCEL = "BOOKING_CANCEL"
    BOOKING_DISPUTE = "BOOKING_DISPUTE"
    BOOKING_FORCE_CLOSE = "BOOKING_FORCE_CLOSE"
    SERVICE_CREATE = "SERVICE_CREATE"
    SERVICE_UPDATE = "SERVICE_UPDATE"
    SERVICE_DEACTIVATE = "SERVICE_DEACTIVATE"


class AuditTargetType(str, PyEnum):
    USER = "User"
    BOOKING = "Booking"
    SERVICE = "Service"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Associations ──────────────────────────────────────────────

helper_services = Table(
    "helper_services",
    Base.metadata,
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", Uuid, ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for customers, helpers and admins. Helpers carry a profile."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.CUSTOMER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deactivated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_token_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    refresh_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Helper profile
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    bio: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    helper_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    services: Mapped[List["Service"]] = relationship(
        secondary=helper_services, lazy="selectin"
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
        Index("ix_users_role_verified", "role", "is_verified"),
        CheckConstraint("helper_rating >= 0 AND helper_rating <= 5", name="ck_users_helper_rating"),
    )


class Service(TimestampMixin, Base):
    """Catalog entry customers book against."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    category: Mapped[ServiceCategory] = mapped_column(Enum(ServiceCategory), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_services_category", "category"),)


class Booking(TimestampMixin, Base):
    """
    Persisted booking row. Lifecycle rules live in shared.domain.booking_state;
    status and helper_id change only through BookingRepository's conditional update.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    helper_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("services.id"), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.REQUESTED
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_duration: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    customer_rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    customer_review: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    customer: Mapped["User"] = relationship(foreign_keys=[customer_id])
    helper: Mapped[Optional["User"]] = relationship(foreign_keys=[helper_id])
    service: Mapped["Service"] = relationship()
    history: Mapped[List["BookingStatusHistory"]] = relationship(
        back_populates="booking",
        order_by="BookingStatusHistory.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "customer_rating IS NULL OR (customer_rating >= 1 AND customer_rating <= 5)",
            name="ck_bookings_rating_range",
        ),
        CheckConstraint(
            "estimated_duration >= 15 AND estimated_duration <= 480",
            name="ck_bookings_duration_range",
        ),
        Index("ix_bookings_customer_id", "customer_id"),
        Index("ix_bookings_helper_id", "helper_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_at", "scheduled_at"),
    )


class BookingStatusHistory(Base):
    """Append-only log of booking status transitions, ordered by position."""
    __tablename__ = "booking_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(Enum(BookingStatus), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="history")

    __table_args__ = (
        # Two writers appending the same step collide here
        UniqueConstraint("booking_id", "position", name="uq_booking_history_position"),
    )


class Message(Base):
    """Chat message in a booking room. sender_id is NULL for system messages."""
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        Enum(MessageType), nullable=False, default=MessageType.TEXT
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    sender: Mapped[Optional["User"]] = relationship(lazy="joined")
    reads: Mapped[List["MessageRead"]] = relationship(
        back_populates="message", lazy="selectin", order_by="MessageRead.read_at"
    )

    __table_args__ = (
        Index("ix_messages_booking_created", "booking_id", "created_at"),
    )


class MessageRead(Base):
    """Read receipt. One row per (message, user)."""
    __tablename__ = "message_reads"

    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), primary_key=True)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    message: Mapped["Message"] = relationship(back_populates="reads")


class AdminAction(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_actions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action_type: Mapped[AdminActionType] = mapped_column(Enum(AdminActionType), nullable=False)
    target_type: Mapped[AuditTargetType] = mapped_column(Enum(AuditTargetType), nullable=False)
    target_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    previous_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    admin: Mapped["User"] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_admin_actions_admin_id", "admin_id"),
        Index("ix_admin_actions_target", "target_type", "target_id"),
        Index("ix_admin_actions_created_at", "created_at"),
    )
