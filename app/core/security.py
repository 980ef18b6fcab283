"""
JWT helpers for session tokens.

Access and refresh tokens are issued after a complete login. A short-lived
"two_fa" challenge token bridges the password step and the TOTP step when
two-factor authentication is enabled.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from app.core.config import settings

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_TWO_FA = "two_fa"


def _encode(data: dict, expires_delta: timedelta, token_type: str) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire, "type": token_type})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode (typically {"sub": user_id})
        expires_delta: Optional lifetime (default: ACCESS_TOKEN_EXPIRE_MINUTES)
    """
    return _encode(
        data,
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        TOKEN_TYPE_ACCESS,
    )


def create_refresh_token(data: dict) -> str:
    """Create a JWT refresh token with longer expiration."""
    return _encode(data, timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS), TOKEN_TYPE_REFRESH)


def create_two_fa_challenge_token(user_id: int) -> str:
    """Proof that the password step succeeded; only good for /verify-2fa."""
    return _encode(
        {"sub": str(user_id)},
        timedelta(minutes=settings.TWO_FA_CHALLENGE_EXPIRE_MINUTES),
        TOKEN_TYPE_TWO_FA,
    )


def decode_token(token: str, expected_type: Optional[str] = None) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        JWTError: If the token is invalid, expired or of another type
    """
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    if expected_type is not None and payload.get("type") != expected_type:
        raise JWTError(f"Expected a {expected_type} token")
    return payload
