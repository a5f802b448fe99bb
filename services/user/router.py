"""
services/user/router.py
Profile management and the public helper directory.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.domain.booking_state import UserRole
from shared.exceptions import ForbiddenError, NotFoundError, ValidationFailure
from shared.middleware.auth import get_current_user, require_helper
from shared.models.models import Service, User, helper_services
from shared.schemas.schemas import (
    HelperPublicResponse,
    HelperServicesRequest,
    PaginatedResponse,
    UserResponse,
    UserUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.patch("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update profile fields. Only fields present in the request body are written;
    `bio` belongs to the helper profile.
    """
    updates = data.model_dump(exclude_unset=True)
    if "bio" in updates and current_user.role != UserRole.HELPER:
        raise ForbiddenError("Only helpers have a bio")

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    return UserResponse.model_validate(current_user)


@router.put("/me/services", response_model=UserResponse)
async def set_my_services(
    data: HelperServicesRequest,
    current_user: User = Depends(require_helper),
    db: AsyncSession = Depends(get_db),
):
    """Replace the set of services a helper offers. Unknown or inactive ids are rejected."""
    wanted = set(data.service_ids)
    services = []
    if wanted:
        result = await db.execute(
            select(Service).where(Service.id.in_(wanted), Service.is_active.is_(True))
        )
        services = list(result.scalars().all())
        missing = wanted - {s.id for s in services}
        if missing:
            raise ValidationFailure(f"Unknown or inactive services: {', '.join(sorted(str(m) for m in missing))}")

    current_user.services = services
    await db.commit()
    await db.refresh(current_user, attribute_names=["services"])
    return UserResponse.model_validate(current_user)


# ── Helper directory ──────────────────────────────────────────

@router.get("/helpers", response_model=PaginatedResponse[HelperPublicResponse])
async def list_helpers(
    service_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Verified, active helpers, best rated first."""
    query = select(User).where(
        User.role == UserRole.HELPER,
        User.is_verified.is_(True),
        User.is_active.is_(True),
    )
    if service_id:
        query = query.where(
            User.id.in_(select(helper_services.c.user_id).where(helper_services.c.service_id == service_id))
        )

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.helper_rating.desc(), User.total_bookings.desc(), User.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    helpers = [HelperPublicResponse.model_validate(u) for u in result.scalars().all()]
    return PaginatedResponse[HelperPublicResponse].build(helpers, page, limit, total or 0)


@router.get("/helpers/{helper_id}", response_model=HelperPublicResponse)
async def get_helper(
    helper_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    helper = await db.get(User, helper_id)
    if not helper or helper.role != UserRole.HELPER or not helper.is_active:
        raise NotFoundError("Helper")
    return HelperPublicResponse.model_validate(helper)
