"""
Authentication endpoints for account creation, login, and token refresh.

- POST /signup: Create an inactive account and email a verification link
- POST /login: Check password; returns tokens or a 2FA challenge
- POST /refresh: Exchange a refresh token for a new token pair
- GET /me: Current user profile
"""

import logging
from fastapi import APIRouter, Depends, status

from app.core.deps import get_client_ip, get_current_user, get_security_service
from app.models.user import User
from app.schemas.user import (
    LoginRequest,
    LoginResponse,
    SignupRequest,
    SignupResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from app.services.security_service import SecurityOrchestrator

router = APIRouter(prefix="/auth", tags=["Authentication"])
logger = logging.getLogger(__name__)


@router.post("/signup", status_code=status.HTTP_201_CREATED, response_model=SignupResponse)
def signup(
    request: SignupRequest,
    client_ip: str = Depends(get_client_ip),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Register a new account.

    The account stays inactive until the emailed link is opened. A failed
    email hand-off does not fail signup; the user can request a resend.
    """
    result = service.signup(request, client_ip)

    if result.email_sent:
        message = "Account created. Please check your email to verify your account."
    else:
        message = "Account created, but we could not send the verification email. Please request a new one."

    return SignupResponse(
        message=message,
        user=UserResponse.model_validate(result.user),
        next_step="verify_email",
    )


@router.post("/login", response_model=LoginResponse)
def login(
    request: LoginRequest,
    client_ip: str = Depends(get_client_ip),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Authenticate with email and password.

    Unverified users may log in so they can reach the verification pages;
    `verification_step` tells the client where to send them.
    """
    result = service.login(request.email, request.password, client_ip)

    if result.requires_two_fa:
        return LoginResponse(
            requires_two_fa=True,
            challenge_token=result.challenge_token,
            verification_step=result.step.value,
        )

    return LoginResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        verification_step=result.step.value,
        user=UserResponse.model_validate(result.user),
    )


@router.post("/refresh", response_model=TokenResponse)
def refresh_token(
    request: TokenRefreshRequest,
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """Issue a new access/refresh pair from a valid refresh token."""
    tokens = service.refresh_session(request.refresh_token)
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
    )


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    return current_user
