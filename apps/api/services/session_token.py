"""Access and refresh token helpers."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import uuid

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "photox_access"
REFRESH_TOKEN_TYPE = "photox_refresh"


def _encode(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a signed access token payload for API authentication."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email

    return {
        "token": _encode(claims),
        "expires_at": int(expires_at.timestamp()),
    }


def create_refresh_token(user_id: str, expires_days: Optional[int] = None) -> Dict[str, Any]:
    """Create a refresh token; its ``jti`` is stored on the account for rotation."""
    now = datetime.now(timezone.utc)
    ttl_days = int(expires_days or settings.JWT_REFRESH_EXPIRATION_DAYS or 30)
    expires_at = now + timedelta(days=max(ttl_days, 1))
    token_id = str(uuid.uuid4())
    claims = {
        "sub": user_id,
        "type": REFRESH_TOKEN_TYPE,
        "jti": token_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return {
        "token": _encode(claims),
        "token_id": token_id,
        "expires_at": int(expires_at.timestamp()),
    }


def _decode(token: str, expected_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired token.") from exc

    token_type = str(payload.get("type", "")).strip()
    if token_type != expected_type:
        raise ValueError("Invalid token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Token missing subject.")

    return payload


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed access token."""
    return _decode(token, SESSION_TOKEN_TYPE)


def decode_refresh_token(token: str) -> Dict[str, Any]:
    payload = _decode(token, REFRESH_TOKEN_TYPE)
    if not payload.get("jti"):
        raise ValueError("Refresh token missing id.")
    return payload
