"""
Verification endpoints: email links, SMS codes and two-factor authentication.

Onboarding runs email -> phone -> 2FA. Each step has its own route; the
SecurityOrchestrator refuses steps taken out of order.
"""

import logging
from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.core.deps import get_client_ip, get_current_user, get_optional_user, get_security_service
from app.models.user import User
from app.schemas.verification import (
    BackupCodeStatusResponse,
    ConfirmTwoFaSetupRequest,
    DisableTwoFaRequest,
    MessageResponse,
    ResendEmailRequest,
    SendSmsRequest,
    SmsSentResponse,
    TotpProof,
    TwoFaLoginResponse,
    TwoFaSetupResponse,
    VerifySmsRequest,
    VerifyTwoFaLoginRequest,
)
from app.services.security_service import SecurityOrchestrator

router = APIRouter(prefix="/auth", tags=["Verification"])
logger = logging.getLogger(__name__)


def _proof_kwargs(proof) -> dict:
    if isinstance(proof, TotpProof):
        return {"code": proof.code}
    return {"backup_code": proof.backup_code}


# ----------------------------------------------------------------------
# Email
# ----------------------------------------------------------------------

@router.get("/verify-email", response_model=MessageResponse)
def verify_email(
    token: str = Query(..., min_length=1, max_length=128),
    client_ip: str = Depends(get_client_ip),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Redeem the link sent at signup.

    Raises:
        400: Expired, already used, or too many attempts
        404: Unknown token
        429: Rate limit exceeded
    """
    service.verify_email(token, client_ip)
    return MessageResponse(message="Email verified successfully. You can now verify your phone number.")


@router.post("/verify-email", response_model=MessageResponse)
def resend_verification_email(
    request: ResendEmailRequest,
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """Send a fresh verification link. Previous unexpired links keep working."""
    delivered = service.resend_email_verification(request.email)
    if not delivered:
        return MessageResponse(success=False, message="Failed to send verification email. Please try again later.")
    return MessageResponse(message="Verification email sent. Please check your inbox.")


# ----------------------------------------------------------------------
# SMS
# ----------------------------------------------------------------------

@router.post("/verify-sms", response_model=SmsSentResponse)
def send_sms_code(
    request: SendSmsRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Text a 6-digit code to the given number.

    Anonymous callers must give the number they signed up with. A logged-in
    caller may give a new number: it replaces the stored one right away and
    stays unverified until this code is confirmed.
    """
    challenge = service.send_sms_code(request.phone, user=current_user)
    message = (
        f"Verification code sent to {challenge.masked_phone}"
        if challenge.delivered
        else "Failed to send verification code. Please try again later."
    )
    return SmsSentResponse(
        success=challenge.delivered,
        message=message,
        token=challenge.token,
        masked_phone=challenge.masked_phone,
        expires=challenge.expires,
    )


@router.put("/verify-sms", response_model=MessageResponse)
def verify_sms_code(
    request: VerifySmsRequest,
    client_ip: str = Depends(get_client_ip),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    service.verify_sms_code(request.token, request.code, client_ip)
    return MessageResponse(message="Phone number verified successfully. You can now set up 2FA.")


# ----------------------------------------------------------------------
# Two-factor setup
# ----------------------------------------------------------------------

@router.get("/setup-2fa", response_model=TwoFaSetupResponse)
def begin_two_fa_setup(
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Start 2FA enrolment.

    Returns the secret, an otpauth:// URI with its QR code, and ten backup
    codes. The backup codes are never shown again.
    """
    enrolment = service.begin_two_fa_setup(current_user)
    return TwoFaSetupResponse(
        secret=enrolment.secret,
        provisioning_uri=enrolment.provisioning_uri,
        qr_code_url=enrolment.qr_code_url,
        backup_codes=enrolment.backup_codes,
        setup_token=enrolment.setup_token,
        expires=enrolment.expires,
        message="Scan the QR code with your authenticator app, then confirm with a code. Save your backup codes.",
    )


@router.post("/setup-2fa", response_model=MessageResponse)
def confirm_two_fa_setup(
    request: ConfirmTwoFaSetupRequest,
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    service.confirm_two_fa_setup(current_user, request.setup_token, request.code)
    return MessageResponse(message="Two-factor authentication enabled successfully.")


@router.delete("/setup-2fa", response_model=MessageResponse)
def disable_two_fa(
    request: DisableTwoFaRequest,
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    service.disable_two_fa(current_user, **_proof_kwargs(request.proof))
    return MessageResponse(message="Two-factor authentication disabled.")


# ----------------------------------------------------------------------
# Two-factor login
# ----------------------------------------------------------------------

@router.post("/verify-2fa", response_model=TwoFaLoginResponse)
def verify_two_fa_login(
    request: VerifyTwoFaLoginRequest,
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """Second login step: challenge token from /login plus a TOTP or backup code."""
    result = service.verify_two_fa_login(request.challenge_token, **_proof_kwargs(request.proof))
    message = "Login successful"
    if result.backup_code_used:
        message = "Login successful. A backup code was used; consider generating new ones."
    return TwoFaLoginResponse(
        message=message,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        backup_code_used=result.backup_code_used,
    )


@router.get("/verify-2fa", response_model=BackupCodeStatusResponse)
def backup_code_status(
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    status = service.backup_code_status(current_user)
    return BackupCodeStatusResponse(
        remaining_count=status.remaining,
        used_count=status.used,
        total_count=status.total,
        last_used_at=status.last_used_at,
    )
