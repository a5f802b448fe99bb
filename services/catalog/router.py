"""
services/catalog/router.py
Read-only service catalog. Admins manage entries under /admin/services.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import NotFoundError
from shared.models.models import Service, ServiceCategory
from shared.schemas.schemas import ServiceResponse

router = APIRouter(prefix="/services", tags=["Services"])


@router.get("", response_model=List[ServiceResponse])
async def list_services(
    category: Optional[ServiceCategory] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    query = select(Service).where(Service.is_active.is_(True))
    if category:
        query = query.where(Service.category == category)
    result = await db.execute(query.order_by(Service.name))
    return [ServiceResponse.model_validate(s) for s in result.scalars().all()]


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    service = await db.get(Service, service_id)
    if not service or not service.is_active:
        raise NotFoundError("Service")
    return ServiceResponse.model_validate(service)
