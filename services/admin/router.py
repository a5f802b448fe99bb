"""
services/admin/router.py
Admin-only endpoints: user moderation, helper verification, booking
overrides, service catalog management, and the immutable audit log.

Every mutation writes an AdminAction in the same transaction, after the
change has been applied and before the commit.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.admin.audit import Provenance, audit_recorder
from services.booking.repository import BookingRepository
from services.booking.service import BookingService
from services.notification.fanout import NotificationFanout
from services.realtime.server import get_fanout
from shared.domain.access_policy import Actor
from shared.domain.booking_state import BookingStatus, UserRole
from shared.exceptions import AppException, ConflictError, ForbiddenError, NotFoundError
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAction,
    AdminActionType,
    AuditTargetType,
    Booking,
    Service,
    User,
)
from shared.schemas.schemas import (
    AdminActionResponse,
    AdminOverrideRequest,
    AdminUserResponse,
    BookingResponse,
    PaginatedResponse,
    ReasonRequest,
    ServiceCreateRequest,
    ServiceResponse,
    ServiceUpdateRequest,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User")
    return user


async def _get_helper_or_404(db: AsyncSession, helper_id: UUID) -> User:
    user = await db.get(User, helper_id)
    if not user or user.role != UserRole.HELPER:
        raise NotFoundError("Helper")
    return user


def _user_state(user: User) -> dict:
    return {"is_active": user.is_active, "is_verified": user.is_verified}


def _service_state(service: Service) -> dict:
    return {
        "name": service.name,
        "description": service.description,
        "category": getattr(service.category, "value", service.category),
        "icon": service.icon,
        "is_active": service.is_active,
    }


def _reason(data: Optional[ReasonRequest]) -> Optional[str]:
    return data.reason if data else None


# ── Users ──────────────────────────────────────────────────────────────────────

@router.get("/users", response_model=PaginatedResponse[AdminUserResponse])
async def list_users(
    role: Optional[UserRole] = Query(None),
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if is_active is not None:
        query = query.where(User.is_active.is_(is_active))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.created_at.desc(), User.id).offset((page - 1) * limit).limit(limit)
    )
    users = [AdminUserResponse.model_validate(u) for u in result.scalars().all()]
    return PaginatedResponse[AdminUserResponse].build(users, page, limit, total or 0)


@router.get("/users/{user_id}", response_model=AdminUserResponse)
async def get_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return AdminUserResponse.model_validate(await _get_user_or_404(db, user_id))


@router.patch("/users/{user_id}/deactivate", response_model=AdminUserResponse)
async def deactivate_user(
    user_id: UUID,
    data: AdminOverrideRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Block the account. Existing access tokens stop working on their next request."""
    user = await _get_user_or_404(db, user_id)
    if user.role == UserRole.ADMIN:
        raise ForbiddenError("Admins cannot be deactivated")
    if not user.is_active:
        raise AppException("User is already deactivated")

    previous = _user_state(user)
    user.is_active = False
    user.deactivated_at = datetime.now(timezone.utc)
    user.deactivated_by_id = current_user.id
    user.refresh_token_hash = None
    user.refresh_token_expires_at = None
    await db.flush()

    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.USER_DEACTIVATE,
        target_type=AuditTargetType.USER,
        target_id=user.id,
        previous_state=previous,
        new_state=_user_state(user),
        reason=data.reason,
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(user)
    return AdminUserResponse.model_validate(user)


@router.patch("/users/{user_id}/activate", response_model=AdminUserResponse)
async def activate_user(
    user_id: UUID,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user_or_404(db, user_id)
    if user.is_active:
        raise AppException("User is already active")

    previous = _user_state(user)
    user.is_active = True
    user.deactivated_at = None
    user.deactivated_by_id = None
    await db.flush()

    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.USER_ACTIVATE,
        target_type=AuditTargetType.USER,
        target_id=user.id,
        previous_state=previous,
        new_state=_user_state(user),
        reason=_reason(data),
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(user)
    return AdminUserResponse.model_validate(user)


# ── Helper Verification Queue ──────────────────────────────────────────────────

@router.get("/helpers/pending", response_model=PaginatedResponse[AdminUserResponse])
async def get_pending_helpers(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Active helpers awaiting verification, oldest first (FIFO queue)."""
    query = select(User).where(
        User.role == UserRole.HELPER,
        User.is_verified.is_(False),
        User.is_active.is_(True),
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.created_at.asc(), User.id).offset((page - 1) * limit).limit(limit)
    )
    helpers = [AdminUserResponse.model_validate(u) for u in result.scalars().all()]
    return PaginatedResponse[AdminUserResponse].build(helpers, page, limit, total or 0)


@router.patch("/helpers/{helper_id}/verify", response_model=AdminUserResponse)
async def verify_helper(
    helper_id: UUID,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    helper = await _get_helper_or_404(db, helper_id)
    if helper.is_verified:
        raise AppException("Helper is already verified")

    previous = _user_state(helper)
    helper.is_verified = True
    helper.verified_at = datetime.now(timezone.utc)
    helper.verified_by_id = current_user.id
    await db.flush()

    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.HELPER_VERIFY,
        target_type=AuditTargetType.USER,
        target_id=helper.id,
        previous_state=previous,
        new_state=_user_state(helper),
        reason=_reason(data),
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(helper)
    return AdminUserResponse.model_validate(helper)


@router.patch("/helpers/{helper_id}/unverify", response_model=AdminUserResponse)
async def unverify_helper(
    helper_id: UUID,
    data: AdminOverrideRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Revoke verification. Bookings already accepted are left alone."""
    helper = await _get_helper_or_404(db, helper_id)
    if not helper.is_verified:
        raise AppException("Helper is not verified")

    previous = _user_state(helper)
    helper.is_verified = False
    helper.verified_at = None
    helper.verified_by_id = None
    await db.flush()

    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.HELPER_UNVERIFY,
        target_type=AuditTargetType.USER,
        target_id=helper.id,
        previous_state=previous,
        new_state=_user_state(helper),
        reason=data.reason,
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(helper)
    return AdminUserResponse.model_validate(helper)


# ── Bookings ───────────────────────────────────────────────────────────────────

@router.get("/bookings", response_model=PaginatedResponse[BookingResponse])
async def list_all_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    customer_id: Optional[UUID] = Query(None),
    helper_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == status_filter)
    if customer_id:
        query = query.where(Booking.customer_id == customer_id)
    if helper_id:
        query = query.where(Booking.helper_id == helper_id)

    query = query.order_by(Booking.created_at.desc(), Booking.id)
    bookings, total = await BookingRepository(db).page(query, page, limit)
    return PaginatedResponse[BookingResponse].build(
        [BookingResponse.model_validate(b) for b in bookings], page, limit, total
    )


@router.patch("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    booking = await BookingService(db, fanout).admin_cancel(
        booking_id, Actor.from_user(current_user), _reason(data), Provenance.from_request(request)
    )
    return BookingResponse.model_validate(booking)


@router.patch("/bookings/{booking_id}/dispute", response_model=BookingResponse)
async def dispute_booking(
    booking_id: UUID,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    booking = await BookingService(db, fanout).admin_dispute(
        booking_id, Actor.from_user(current_user), _reason(data), Provenance.from_request(request)
    )
    return BookingResponse.model_validate(booking)


@router.patch("/bookings/{booking_id}/force-close", response_model=BookingResponse)
async def force_close_booking(
    booking_id: UUID,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    booking = await BookingService(db, fanout).admin_force_close(
        booking_id, Actor.from_user(current_user), _reason(data), Provenance.from_request(request)
    )
    return BookingResponse.model_validate(booking)


# ── Service Catalog ────────────────────────────────────────────────────────────

@router.post("/services", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    existing = await db.scalar(select(Service.id).where(func.lower(Service.name) == data.name.lower()))
    if existing:
        raise ConflictError("A service with this name already exists")

    service = Service(**data.model_dump())
    db.add(service)
    await db.flush()

    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.SERVICE_CREATE,
        target_type=AuditTargetType.SERVICE,
        target_id=service.id,
        new_state=_service_state(service),
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(service)
    return ServiceResponse.model_validate(service)


@router.patch("/services/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Edit a service. Turning `is_active` off is recorded as a deactivation."""
    service = await db.get(Service, service_id)
    if not service:
        raise NotFoundError("Service")

    updates = data.model_dump(exclude_unset=True)
    if "name" in updates and updates["name"].lower() != service.name.lower():
        clash = await db.scalar(
            select(Service.id).where(func.lower(Service.name) == updates["name"].lower(), Service.id != service.id)
        )
        if clash:
            raise ConflictError("A service with this name already exists")

    previous = _service_state(service)
    for field, value in updates.items():
        setattr(service, field, value)
    await db.flush()

    deactivated = previous["is_active"] and updates.get("is_active") is False
    await audit_recorder.record(
        db,
        admin_id=current_user.id,
        action_type=AdminActionType.SERVICE_DEACTIVATE if deactivated else AdminActionType.SERVICE_UPDATE,
        target_type=AuditTargetType.SERVICE,
        target_id=service.id,
        previous_state=previous,
        new_state=_service_state(service),
        provenance=Provenance.from_request(request),
    )
    await db.commit()
    await db.refresh(service)
    return ServiceResponse.model_validate(service)


# ── Audit Log ──────────────────────────────────────────────────────────────────

@router.get("/audit-log", response_model=PaginatedResponse[AdminActionResponse])
async def get_audit_log(
    action_type: Optional[AdminActionType] = Query(None),
    admin_id: Optional[UUID] = Query(None),
    target_type: Optional[AuditTargetType] = Query(None),
    target_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, newest first. Append-only, never editable."""
    query = select(AdminAction)
    if action_type:
        query = query.where(AdminAction.action_type == action_type)
    if admin_id:
        query = query.where(AdminAction.admin_id == admin_id)
    if target_type:
        query = query.where(AdminAction.target_type == target_type)
    if target_id:
        query = query.where(AdminAction.target_id == target_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(AdminAction.created_at.desc(), AdminAction.id).offset((page - 1) * limit).limit(limit)
    )

    items = []
    for entry in result.unique().scalars().all():
        item = AdminActionResponse.model_validate(entry)
        item.admin_name = entry.admin.name if entry.admin else None
        items.append(item)
    return PaginatedResponse[AdminActionResponse].build(items, page, limit, total or 0)
