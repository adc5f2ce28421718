"""Create and decode JWT access tokens. `sub` carries the user id string."""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from ridepool.config import settings


def create_access_token(user_id: str, expires_delta: timedelta | None = None, **claims: Any) -> str:
    """Encode a token for user_id; extra claims are copied into the payload."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {**claims, "sub": user_id, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate JWT; return payload or None if invalid/expired."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def user_id_from_token(token: str | None) -> str | None:
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    sub = payload.get("sub")
    return sub if isinstance(sub, str) and sub else None
