"""
Authentication router: registration, login, token refresh and profile.
"""

from datetime import datetime
import logging
from typing import Any, Dict, Optional
import uuid

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import TIER_FREE, User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.entitlements import as_utc, entitlement_summary, reset_daily_credits, utc_now
from services.errors import AuthenticationError, ConflictError
from services.passwords import hash_password, verify_password
from services.session_token import create_refresh_token, create_session_token, decode_refresh_token

router = APIRouter()
logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=2, max_length=50)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    profile_picture: Optional[str] = None


class UserProfile(BaseModel):
    id: str
    email: str
    name: str
    profile_picture: Optional[str] = None
    subscription_type: str
    subscription_expiry: Optional[datetime] = None
    credits_remaining: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    token: str
    token_expires_at: int
    refresh_token: str
    user: UserProfile


class TokenPairResponse(BaseModel):
    token: str
    token_expires_at: int
    refresh_token: str


def _normalize_email(email: str) -> str:
    return str(email).strip().lower()


def _profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        profile_picture=user.profile_picture,
        subscription_type=user.tier,
        subscription_expiry=as_utc(user.tier_expiry),
        credits_remaining=int(user.credits_remaining or 0),
        created_at=as_utc(user.created_at),
        updated_at=as_utc(user.updated_at),
    )


def _issue_tokens(user: User) -> Dict[str, Any]:
    session = create_session_token(user.id, user.email)
    refresh = create_refresh_token(user.id)
    user.refresh_token_id = refresh["token_id"]
    return {
        "token": session["token"],
        "token_expires_at": session["expires_at"],
        "refresh_token": refresh["token"],
    }


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("auth_register", limit=10, window_seconds=3600))],
)
async def register(request: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create a Free account with the daily credit allowance."""
    email = _normalize_email(request.email)
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none():
        raise ConflictError("Email already registered")

    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=hash_password(request.password),
        name=request.name.strip(),
        tier=TIER_FREE,
        credits_remaining=max(int(settings.FREE_DAILY_CREDITS), 0),
        last_credit_reset=utc_now(),
    )
    db.add(user)
    try:
        await db.flush()
        tokens = _issue_tokens(user)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Email already registered")
    await db.refresh(user)
    logger.info("Registered user %s", user.id)
    return AuthResponse(**tokens, user=_profile(user))


@router.post(
    "/login",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limit("auth_login", limit=30, window_seconds=900))],
)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == _normalize_email(request.email)))
    user = result.scalar_one_or_none()
    if not user or not verify_password(request.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")

    reset_daily_credits(user)
    tokens = _issue_tokens(user)
    await db.commit()
    await db.refresh(user)
    return AuthResponse(**tokens, user=_profile(user))


@router.post("/refresh-token", response_model=TokenPairResponse)
async def refresh_token(request: RefreshTokenRequest, db: AsyncSession = Depends(get_db)):
    """Rotate the refresh token; the previous one stops working."""
    try:
        payload = decode_refresh_token(request.refresh_token)
    except ValueError as exc:
        raise AuthenticationError(str(exc)) from exc

    result = await db.execute(select(User).where(User.id == str(payload["sub"])))
    user = result.scalar_one_or_none()
    if not user or user.refresh_token_id != payload.get("jti"):
        raise AuthenticationError("Invalid refresh token")

    tokens = _issue_tokens(user)
    await db.commit()
    return TokenPairResponse(**tokens)


@router.get("/profile", response_model=UserProfile)
async def get_profile(user: User = Depends(get_current_user)):
    return _profile(user)


@router.put("/profile", response_model=UserProfile)
async def update_profile(
    request: UpdateProfileRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if request.name:
        user.name = request.name.strip()
    if request.profile_picture:
        user.profile_picture = request.profile_picture
    await db.commit()
    await db.refresh(user)
    return _profile(user)


@router.get("/entitlement")
async def get_entitlement(user: User = Depends(get_current_user)):
    """Tier, credit balance and unlocked operations for the caller."""
    return entitlement_summary(user)


@router.post("/logout")
async def logout(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the stored refresh token."""
    user.refresh_token_id = None
    await db.commit()
    return {"message": "Logged out successfully"}
