"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.domain.booking_state import BookingStatus, UserRole
from shared.models.models import AdminActionType, AuditTargetType, MessageType, ServiceCategory

T = TypeVar("T")

PHONE_PATTERN = r"^\+?[1-9]\d{9,14}$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema, Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, items: List[Any], page: int, limit: int, total: int) -> "PaginatedResponse":
        return cls(
            items=items,
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if limit else 0,
        )


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    request_id: Optional[str] = None


# ── Auth ──────────────────────────────────────────────────────

class OtpRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class OtpRequestResponse(BaseSchema):
    message: str = "OTP sent successfully"
    expires_in: int
    mock_otp: Optional[str] = None


class OtpVerifyRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    otp: str = Field(..., min_length=6, max_length=6)
    name: Optional[str] = Field(None, min_length=1, max_length=100)


class RefreshRequest(BaseSchema):
    refresh_token: str


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int  # seconds


class LoginResponse(BaseSchema):
    is_new_user: bool
    message: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    user: Optional["UserResponse"] = None


# ── Service ───────────────────────────────────────────────────

class ServiceResponse(BaseSchema):
    id: uuid.UUID
    name: str
    description: Optional[str]
    category: ServiceCategory
    icon: Optional[str]
    is_active: bool


class ServiceCreateRequest(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    category: ServiceCategory
    icon: Optional[str] = Field(None, max_length=100)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be blank")
        return v


class ServiceUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[ServiceCategory] = None
    icon: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    phone: str
    name: str
    role: UserRole
    is_active: bool
    is_verified: bool
    bio: Optional[str]
    helper_rating: float
    total_bookings: int
    services: List[ServiceResponse] = []
    created_at: datetime


class HelperPublicResponse(BaseSchema):
    id: uuid.UUID
    name: str
    bio: Optional[str]
    helper_rating: float
    total_bookings: int
    services: List[ServiceResponse] = []


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    bio: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class HelperServicesRequest(BaseSchema):
    service_ids: List[uuid.UUID] = Field(..., max_length=50)


# ── Booking ───────────────────────────────────────────────────

class StatusChangeResponse(BaseSchema):
    status: BookingStatus
    changed_by: Optional[uuid.UUID]
    changed_at: datetime
    reason: Optional[str]


class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    description: str = Field(..., min_length=10, max_length=2000)
    address: str = Field(..., min_length=5, max_length=500)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    scheduled_at: datetime
    estimated_duration: int = Field(60, ge=15, le=480)

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Scheduled time must be in the future")
        return v.astimezone(timezone.utc)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    customer_id: uuid.UUID
    helper_id: Optional[uuid.UUID]
    service_id: uuid.UUID
    status: BookingStatus
    status_history: List[StatusChangeResponse]
    description: str
    address: str
    latitude: Optional[float]
    longitude: Optional[float]
    scheduled_at: datetime
    estimated_duration: int
    completed_at: Optional[datetime]
    customer_rating: Optional[int]
    customer_review: Optional[str]
    admin_notes: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class BookingRateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)


# ── Message ───────────────────────────────────────────────────

class ReadReceiptResponse(BaseSchema):
    user_id: uuid.UUID
    read_at: datetime


class SenderResponse(BaseSchema):
    id: uuid.UUID
    name: str
    role: UserRole


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    sender: Optional[SenderResponse]
    content: str
    message_type: MessageType
    read_by: List[ReadReceiptResponse] = Field(default_factory=list, validation_alias=AliasChoices("reads", "read_by"))
    created_at: datetime


class SendMessageRequest(BaseSchema):
    content: str = Field(..., min_length=1, max_length=2000)
    message_type: Literal["text", "image"] = "text"

    @field_validator("content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v


class MarkReadRequest(BaseSchema):
    message_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=500)


class UnreadCountResponse(BaseSchema):
    booking_id: uuid.UUID
    count: int


# ── Realtime payloads ─────────────────────────────────────────

class RoomEventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: uuid.UUID = Field(..., alias="bookingId")


class TypingPayload(RoomEventPayload):
    is_typing: bool = Field(True, alias="isTyping")


class SendMessagePayload(RoomEventPayload):
    content: str = Field(..., min_length=1, max_length=2000)
    message_type: Literal["text", "image"] = Field("text", alias="messageType")

    @field_validator("content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v


class MarkReadPayload(RoomEventPayload):
    message_ids: List[uuid.UUID] = Field(..., alias="messageIds", min_length=1, max_length=500)


# ── Admin ─────────────────────────────────────────────────────

class AdminOverrideRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)


class ReasonRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=1000)


class AdminUserResponse(UserResponse):
    deactivated_at: Optional[datetime]
    deactivated_by_id: Optional[uuid.UUID]
    verified_at: Optional[datetime]
    verified_by_id: Optional[uuid.UUID]
    last_login_at: Optional[datetime]


class AdminActionResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    admin_name: Optional[str] = None
    action_type: AdminActionType
    target_type: AuditTargetType
    target_id: uuid.UUID
    previous_state: Optional[Dict[str, Any]]
    new_state: Optional[Dict[str, Any]]
    reason: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


LoginResponse.model_rebuild()
