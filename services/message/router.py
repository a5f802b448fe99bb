"""
services/message/router.py
Booking chat over HTTP. History lives here; live delivery goes through the
booking room, so a message posted here reaches connected sockets too.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.message.service import MessageService
from services.notification.fanout import NotificationFanout
from services.realtime.server import get_fanout
from shared.domain.access_policy import Actor
from shared.middleware.auth import get_current_actor
from shared.models.models import MessageType
from shared.schemas.schemas import (
    ChatMessageResponse,
    MarkReadRequest,
    MessageResponse,
    PaginatedResponse,
    SendMessageRequest,
    UnreadCountResponse,
)

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.get("/{booking_id}", response_model=PaginatedResponse[ChatMessageResponse])
async def list_messages(
    booking_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=settings.MAX_PAGE_SIZE),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Oldest first. Admins can read any booking's chat."""
    service = MessageService(db)
    await service.booking_for_viewer(booking_id, actor)
    messages, total = await service.page(booking_id, page, limit)
    return PaginatedResponse[ChatMessageResponse].build(
        [ChatMessageResponse.model_validate(m) for m in messages], page, limit, total
    )


@router.post("/{booking_id}", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    booking_id: UUID,
    data: SendMessageRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    message = await MessageService(db, fanout).send(
        booking_id, actor, data.content, MessageType(data.message_type)
    )
    return ChatMessageResponse.model_validate(message)


@router.patch("/{booking_id}/read", response_model=MessageResponse)
async def mark_read(
    booking_id: UUID,
    data: MarkReadRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
):
    fresh = await MessageService(db, fanout).mark_read(booking_id, actor, data.message_ids)
    return MessageResponse(message=f"{len(fresh)} message(s) marked as read")


@router.get("/{booking_id}/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    count = await MessageService(db).unread_count(booking_id, actor)
    return UnreadCountResponse(booking_id=booking_id, count=count)
