"""
FastAPI dependencies for authentication and service wiring.

Long-lived components (vault, rate limiter, senders, clock) are built once in
main.py's lifespan and kept on app.state; the dependencies below combine them
with the request's DB session.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.orm import Session
from typing import Optional

from app.core.credential_vault import ApiKeyVault
from app.core.database import get_db
from app.core.exceptions import AuthenticationRequired
from app.core.security import TOKEN_TYPE_ACCESS, decode_token
from app.models.user import User
from app.services.api_key_service import ApiKeyService
from app.services.security_service import SecurityOrchestrator

# HTTP Bearer token scheme (Authorization: Bearer <token>)
security = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> str:
    """
    Extract the client's IP address from the request.

    Honours X-Forwarded-For when running behind a proxy or load balancer.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First entry is the original client
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the user from a Bearer access token.

    Unverified users are allowed through: the verification endpoints are
    exactly what they need to reach.

    Raises:
        AuthenticationRequired: Missing, invalid or non-access token, or unknown user
    """
    if credentials is None:
        raise AuthenticationRequired()

    try:
        payload = decode_token(credentials.credentials, expected_type=TOKEN_TYPE_ACCESS)
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise AuthenticationRequired()

    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationRequired()

    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """Like get_current_user, but anonymous requests get None instead of a 401."""
    if credentials is None:
        return None
    return await get_current_user(credentials, db)


def get_security_service(request: Request, db: Session = Depends(get_db)) -> SecurityOrchestrator:
    state = request.app.state
    return SecurityOrchestrator(
        db=db,
        vault=state.vault,
        rate_limiter=state.rate_limiter,
        two_factor=state.two_factor,
        email_sender=state.email_sender,
        sms_sender=state.sms_sender,
        clock=state.clock,
    )


def get_api_key_service(request: Request, db: Session = Depends(get_db)) -> ApiKeyService:
    return ApiKeyService(db, ApiKeyVault(request.app.state.vault))
