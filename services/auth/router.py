"""
services/auth/router.py
Phone + OTP authentication.
Implements: Request OTP → Verify (login or sign-up) → JWT issue → Refresh → Logout

OTP delivery is mocked: the code is fixed (OTP_MOCK_CODE), stored in Redis
with a TTL and logged instead of being sent by SMS.
"""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import TokenDenyList, get_redis
from config.settings import settings
from shared.domain.booking_state import UserRole
from shared.exceptions import AuthenticationError, ForbiddenError
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import User
from shared.schemas.schemas import (
    LoginResponse,
    MessageResponse,
    OtpRequest,
    OtpRequestResponse,
    OtpVerifyRequest,
    RefreshRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _otp_key(phone: str) -> str:
    return f"otp:{phone}"


# ── Helper ────────────────────────────────────────────────────

def _issue_tokens(user: User) -> tuple[str, str]:
    """Issue access + refresh tokens. Only the refresh token hash is stored."""
    access_token, _ = create_access_token(user_id=str(user.id), role=user.role.value)
    raw_refresh, hashed_refresh = create_refresh_token()
    user.refresh_token_hash = hashed_refresh
    user.refresh_token_expires_at = datetime.now(timezone.utc) + timedelta(
        days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS
    )
    return access_token, raw_refresh


def _expired(value: datetime) -> bool:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value < datetime.now(timezone.utc)


# ── Endpoints ─────────────────────────────────────────────────

@router.post("/request-otp", response_model=OtpRequestResponse, summary="Request a login code")
async def request_otp(data: OtpRequest, redis=Depends(get_redis)):
    code = settings.OTP_MOCK_CODE
    await redis.setex(_otp_key(data.phone), settings.OTP_EXPIRY_SECONDS, code)
    logger.info(f"OTP for {data.phone}: {code}")
    return OtpRequestResponse(
        expires_in=settings.OTP_EXPIRY_SECONDS,
        mock_otp=None if settings.is_production else code,
    )


@router.post("/verify-otp", response_model=LoginResponse, summary="Verify code and log in")
async def verify_otp(
    data: OtpVerifyRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Log in with a valid code. Unknown phones need a name to sign up as a customer;
    without one the response only says `is_new_user`, and the code stays valid.
    """
    expected = await redis.get(_otp_key(data.phone))
    if expected is None:
        raise AuthenticationError("OTP expired or not requested")
    if data.otp != expected:
        raise AuthenticationError("Invalid OTP")

    result = await db.execute(select(User).where(User.phone == data.phone))
    user = result.scalar_one_or_none()

    if user is None:
        if not data.name:
            return LoginResponse(is_new_user=True, message="Name required to complete sign-up")
        user = User(phone=data.phone, name=data.name.strip(), role=UserRole.CUSTOMER)
        db.add(user)
        # id is assigned at flush; tokens below are signed with it
        await db.flush()
        is_new_user = True
        logger.info(f"New customer signed up: {data.phone}")
    else:
        if not user.is_active:
            raise ForbiddenError("Account has been deactivated")
        is_new_user = False

    await redis.delete(_otp_key(data.phone))

    user.last_login_at = datetime.now(timezone.utc)
    access_token, raw_refresh = _issue_tokens(user)
    await db.commit()
    await db.refresh(user)

    return LoginResponse(
        is_new_user=is_new_user,
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(data: RefreshRequest, db: AsyncSession = Depends(get_db)):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token stops working.
    """
    result = await db.execute(
        select(User).where(User.refresh_token_hash == hash_token(data.refresh_token))
    )
    user = result.scalar_one_or_none()
    if not user:
        raise AuthenticationError("Invalid or revoked refresh token")
    if user.refresh_token_expires_at is None or _expired(user.refresh_token_expires_at):
        raise AuthenticationError("Refresh token expired")
    if not user.is_active:
        raise ForbiddenError("Account has been deactivated")

    access_token, raw_refresh = _issue_tokens(user)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token until it expires and drop the refresh token."""
    if token_data.jti:
        await TokenDenyList(redis).revoke(token_data.jti, get_token_remaining_ttl(token_data.payload))

    current_user.refresh_token_hash = None
    current_user.refresh_token_expires_at = None
    await db.commit()
    logger.info(f"User {current_user.id} logged out")

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)
