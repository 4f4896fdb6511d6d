"""JWT validation. Tokens are issued by the auth service; subject is the user id."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from syncvault.config import get_settings


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create a short-lived access JWT (used by tooling and tests)."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": "access"}
    return jwt.encode(
        to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT; return payload or None."""
    settings = get_settings()
    if not settings.jwt_secret:
        return None
    try:
        return jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None


def get_subject_from_access(token: str) -> Optional[str]:
    """Return subject (user id) if token is a valid access token."""
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        return None
    return payload.get("sub")
