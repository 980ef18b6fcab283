"""
Account security orchestration.

Composes the credential vault, rate limiter, verification manager, account
lock policy and 2FA helpers into the flows the API exposes:

- Signup with email verification
- Login with lockout and optional 2FA challenge
- Email link, SMS code and TOTP setup verification
- 2FA login and disable with TOTP or single-use backup codes

Every operation raises a typed SecurityError on failure; main.py turns those
into HTTP responses.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from jose import JWTError
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.account_lock import AccountLockPolicy
from app.core.credential_vault import CredentialVault
from app.core.database import utcnow
from app.core.exceptions import (
    AlreadyVerifiedError,
    AuthenticationRequired,
    ConflictError,
    InvalidCredentialsError,
    LockedAccountError,
    NotFoundError,
    ValidationError,
)
from app.core.rate_limiter import (
    LOGIN_POLICY,
    SMS_POLICY,
    TWO_FA_POLICY,
    VERIFICATION_POLICY,
    RateLimiter,
)
from app.core.security import (
    TOKEN_TYPE_REFRESH,
    TOKEN_TYPE_TWO_FA,
    create_access_token,
    create_refresh_token,
    create_two_fa_challenge_token,
    decode_token,
)
from app.core.two_factor import TwoFactorAuth, VerificationStep, verification_step
from app.core.verification import VerificationManager, codes_match, raise_for_outcome
from app.models.backup_code import BackupCode
from app.models.user import User
from app.models.verification_request import VerificationType
from app.services.qr_service import render_data_url
from app.services.sms_service import format_phone, is_valid_phone, mask_phone_number

logger = logging.getLogger(__name__)

EMAIL_LINK_TYPES = frozenset({VerificationType.EMAIL_VERIFICATION, VerificationType.EMAIL_CHANGE})


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str


@dataclass
class SignupResult:
    user: User
    email_sent: bool


@dataclass
class LoginResult:
    user: User
    step: VerificationStep
    tokens: Optional[SessionTokens] = None
    challenge_token: Optional[str] = None

    @property
    def requires_two_fa(self) -> bool:
        return self.challenge_token is not None


@dataclass
class SmsChallenge:
    token: str
    masked_phone: str
    expires: datetime
    delivered: bool


@dataclass
class TwoFaEnrolment:
    secret: str
    provisioning_uri: str
    qr_code_url: str
    backup_codes: List[str]
    setup_token: str
    expires: datetime


@dataclass
class TwoFaLogin:
    user: User
    tokens: SessionTokens
    backup_code_used: bool


@dataclass
class BackupCodeStatus:
    total: int
    used: int
    remaining: int
    last_used_at: Optional[datetime]


class SecurityOrchestrator:
    """
    Request-scoped facade over the security core.

    Built per request by app.core.deps.get_security_service with the
    long-lived components held on app.state and the request's DB session.
    """

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        rate_limiter: RateLimiter,
        two_factor: TwoFactorAuth,
        email_sender,
        sms_sender,
        clock: Callable[[], datetime] = utcnow,
        qr_renderer: Callable[[str], str] = render_data_url,
    ):
        self.db = db
        self.vault = vault
        self.rate_limiter = rate_limiter
        self.two_factor = two_factor
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.clock = clock
        self.qr_renderer = qr_renderer
        self.verifications = VerificationManager(db, clock)
        self.lock_policy = AccountLockPolicy(db, clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _issue_session(user: User) -> SessionTokens:
        return SessionTokens(
            access_token=create_access_token(data={"sub": str(user.id)}),
            refresh_token=create_refresh_token(data={"sub": str(user.id)}),
        )

    def _user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def _send_verification_email(self, user: User) -> bool:
        issued = self.verifications.create_request(user.id, VerificationType.EMAIL_VERIFICATION)
        delivered = self.email_sender.send_verification(user.email, issued.token, user.name)
        if delivered:
            logger.info(f"Verification email handed off for user {user.id}")
        else:
            # Signup still succeeds; the user can ask for a resend
            logger.error(f"Failed to send verification email for user {user.id}")
        return delivered

    def _consume_backup_code(self, user: User, submitted: str) -> bool:
        """Mark a matching backup code as used. Only one caller can win a code."""
        match = self.two_factor.validate_backup_code(user.backup_codes, submitted)
        if match is None:
            return False

        claimed = self.db.execute(
            update(BackupCode)
            .where(BackupCode.id == match.id, BackupCode.used.is_(False))
            .values(used=True, used_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(match)
        if claimed.rowcount != 1:
            return False

        remaining = sum(1 for code in user.backup_codes if not code.used)
        logger.info(f"Backup code used by user {user.id} ({remaining} remaining)")
        return True

    def _check_second_factor(self, user: User, code: Optional[str], backup_code: Optional[str]) -> bool:
        if backup_code:
            return self._consume_backup_code(user, backup_code)
        if code:
            secret = self.vault.decrypt_field(user.two_fa_secret)
            return self.two_factor.verify_code(code, secret, for_time=self.clock())
        return False

    def _replace_backup_codes(self, user: User) -> List[str]:
        self.db.execute(
            delete(BackupCode)
            .where(BackupCode.user_id == user.id)
            .execution_options(synchronize_session=False)
        )
        codes = self.two_factor.generate_backup_codes()
        now = self.clock()
        for code in codes:
            self.db.add(BackupCode(
                user_id=user.id,
                code_hash=self.two_factor.hash_backup_code(code),
                used=False,
                created_at=now,
            ))
        self.db.commit()
        self.db.expire(user, ["backup_codes"])
        return codes

    # ------------------------------------------------------------------
    # Signup and login
    # ------------------------------------------------------------------

    def signup(self, request, client_ip: str) -> SignupResult:
        """
        Create an inactive account and send the email verification link.

        Raises:
            RateLimitExceeded: Too many signups/logins from this IP
            ConflictError: Email or phone already registered
        """
        self.rate_limiter.enforce(LOGIN_POLICY, client_ip)

        email = request.email.strip().lower()
        if self.db.query(User).filter(User.email == email).first():
            raise ConflictError("User with this email already exists")
        if request.phone and self.db.query(User).filter(User.phone == request.phone).first():
            raise ConflictError("User with this phone number already exists")

        now = self.clock()
        user = User(
            name=request.name,
            email=email,
            phone=request.phone,
            gender=request.gender,
            password_hash=self.vault.hash_password(request.password),
            is_active=False,
            terms_accepted_at=now,
            login_attempts=0,
            two_fa_enabled=False,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("User with this email or phone number already exists")
        self.db.refresh(user)

        logger.info(f"New user registered: {user.id}")

        email_sent = self._send_verification_email(user)
        return SignupResult(user=user, email_sent=email_sent)

    def login(self, email: str, password: str, client_ip: str) -> LoginResult:
        """
        Check a password and start a session.

        Users without 2FA get tokens right away. Users with 2FA get a
        short-lived challenge token to present with their TOTP or backup code.

        Raises:
            LockedAccountError: Too many failed logins on this account
            RateLimitExceeded: Too many attempts from this IP
            InvalidCredentialsError: Unknown email or wrong password
        """
        user = self._user_by_email(email)

        if user is not None and self.lock_policy.is_locked(user):
            remaining = self.lock_policy.lock_remaining(user)
            raise LockedAccountError(retry_after=int(remaining.total_seconds()) + 1)

        self.rate_limiter.enforce(LOGIN_POLICY, client_ip)

        if user is None:
            self.vault.verify_password(password, self.vault.dummy_hash)
            raise InvalidCredentialsError()

        if not self.vault.verify_password(password, user.password_hash):
            self.lock_policy.record_failed_login(user)
            logger.warning(f"Failed login for user {user.id} ({user.login_attempts} consecutive)")
            raise InvalidCredentialsError()

        self.lock_policy.record_successful_login(user)

        if self.vault.needs_rehash(user.password_hash):
            user.password_hash = self.vault.hash_password(password)
            self.db.commit()
            logger.info(f"Upgraded password hash for user {user.id}")

        step = verification_step(user)
        if user.two_fa_enabled:
            logger.info(f"Password accepted for user {user.id}, awaiting 2FA")
            return LoginResult(user=user, step=step, challenge_token=create_two_fa_challenge_token(user.id))

        logger.info(f"User logged in: {user.id} (step: {step.value})")
        return LoginResult(user=user, step=step, tokens=self._issue_session(user))

    def refresh_session(self, refresh_token: str) -> SessionTokens:
        try:
            payload = decode_token(refresh_token, expected_type=TOKEN_TYPE_REFRESH)
            user_id = int(payload.get("sub"))
        except (JWTError, TypeError, ValueError):
            raise AuthenticationRequired("Invalid refresh token")

        user = self.db.get(User, user_id)
        if user is None:
            raise AuthenticationRequired("User not found")
        if self.lock_policy.is_locked(user):
            raise LockedAccountError(retry_after=int(self.lock_policy.lock_remaining(user).total_seconds()) + 1)
        return self._issue_session(user)

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def verify_email(self, token: str, client_ip: str) -> User:
        """
        Redeem an email verification link and activate the account.

        Raises:
            RateLimitExceeded, NotFoundError, ExpiredError, AlreadyVerifiedError,
            AttemptsExceededError, ValidationError
        """
        self.rate_limiter.enforce(VERIFICATION_POLICY, client_ip)

        result = self.verifications.redeem_link(token, allowed_types=EMAIL_LINK_TYPES)
        raise_for_outcome(result.outcome, "Invalid verification token")

        user = self.db.get(User, result.user_id)
        if user is None:
            raise NotFoundError("User not found")

        user.email_verified_at = self.clock()
        user.is_active = True
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Email verified for user {user.id}")
        return user

    def resend_email_verification(self, email: str) -> bool:
        """
        Issue a fresh verification link.

        Raises:
            RateLimitExceeded: Too many resends for this address
            NotFoundError: No such account
            AlreadyVerifiedError: Email already verified
        """
        self.rate_limiter.enforce(VERIFICATION_POLICY, email.strip().lower())

        user = self._user_by_email(email)
        if user is None:
            raise NotFoundError("User not found")
        if user.email_verified_at is not None:
            raise AlreadyVerifiedError("Email is already verified")

        return self._send_verification_email(user)

    # ------------------------------------------------------------------
    # SMS
    # ------------------------------------------------------------------

    def send_sms_code(self, phone: str, user: Optional[User] = None) -> SmsChallenge:
        """
        Send a 6-digit code to a phone number.

        Without `user`, the phone must already belong to an account (signup
        flow). With `user`, a different number replaces the stored one and
        must be verified again.

        Raises:
            ValidationError: Bad number, or email not verified yet
            RateLimitExceeded: Too many SMS to this number
            NotFoundError: No account with this number
            ConflictError: Number belongs to another account
            AlreadyVerifiedError: Number already verified on this account
        """
        formatted = format_phone(phone or "")
        if not is_valid_phone(formatted):
            raise ValidationError("Invalid phone number format. Please include country code (e.g., +1234567890)")

        self.rate_limiter.enforce(SMS_POLICY, formatted)

        if user is None:
            user = self.db.query(User).filter(User.phone == formatted).first()
            if user is None:
                raise NotFoundError("User not found")

        if user.email_verified_at is None:
            raise ValidationError("Please verify your email address first")

        if user.phone != formatted:
            owner = self.db.query(User).filter(User.phone == formatted, User.id != user.id).first()
            if owner is not None:
                raise ConflictError("Phone number is already registered to another account")
            user.phone = formatted
            user.phone_verified_at = None
            self.db.commit()
        elif user.phone_verified_at is not None:
            raise AlreadyVerifiedError("Phone number is already verified")

        issued = self.verifications.create_request(user.id, VerificationType.SMS_VERIFICATION)
        delivered = self.sms_sender.send_code(formatted, issued.code)
        if not delivered:
            logger.error(f"Failed to send verification SMS for user {user.id}")

        return SmsChallenge(
            token=issued.token,
            masked_phone=mask_phone_number(formatted),
            expires=issued.expires,
            delivered=delivered,
        )

    def verify_sms_code(self, token: str, code: str, client_ip: str) -> User:
        """
        Check an SMS code and mark the phone verified.

        Raises:
            RateLimitExceeded, NotFoundError, ExpiredError, AlreadyVerifiedError,
            AttemptsExceededError, ValidationError
        """
        self.rate_limiter.enforce(VERIFICATION_POLICY, f"{client_ip}:{token}")

        result = self.verifications.redeem(
            token,
            lambda request: codes_match(request.code, code),
            allowed_types={VerificationType.SMS_VERIFICATION},
        )
        raise_for_outcome(result.outcome, "Invalid verification code")

        user = self.db.get(User, result.user_id)
        if user is None:
            raise NotFoundError("User not found")

        user.phone_verified_at = self.clock()
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Phone verified for user {user.id}")
        return user

    # ------------------------------------------------------------------
    # Two-factor authentication
    # ------------------------------------------------------------------

    def begin_two_fa_setup(self, user: User) -> TwoFaEnrolment:
        """
        Generate a TOTP secret and a fresh batch of backup codes.

        The secret is stored encrypted but 2FA stays disabled until
        confirm_two_fa_setup() sees a valid code from the authenticator.

        Raises:
            RateLimitExceeded: Too many 2FA operations for this user
            AlreadyVerifiedError: 2FA already enabled
            ValidationError: Phone not verified yet
            EncryptionError: ENCRYPTION_KEY not configured
        """
        self.rate_limiter.enforce(TWO_FA_POLICY, str(user.id))

        if user.two_fa_enabled:
            raise AlreadyVerifiedError("2FA is already enabled")
        if user.email_verified_at is None or user.phone_verified_at is None:
            raise ValidationError("Please verify your email and phone number before enabling 2FA")

        secret = self.two_factor.generate_secret()
        user.two_fa_secret = self.vault.encrypt_field(secret)
        self.db.commit()

        backup_codes = self._replace_backup_codes(user)
        issued = self.verifications.create_request(user.id, VerificationType.TWO_FA_SETUP)
        uri = self.two_factor.provisioning_uri(secret, user.email)

        logger.info(f"2FA setup started for user {user.id}")

        return TwoFaEnrolment(
            secret=secret,
            provisioning_uri=uri,
            qr_code_url=self.qr_renderer(uri),
            backup_codes=backup_codes,
            setup_token=issued.token,
            expires=issued.expires,
        )

    def confirm_two_fa_setup(self, user: User, setup_token: str, code: str) -> User:
        """
        Enable 2FA once the authenticator produces a valid code.

        Raises:
            RateLimitExceeded, AlreadyVerifiedError, ValidationError,
            NotFoundError, ExpiredError, AttemptsExceededError, DecryptionError
        """
        self.rate_limiter.enforce(TWO_FA_POLICY, str(user.id))

        if user.two_fa_enabled:
            raise AlreadyVerifiedError("2FA is already enabled")
        if not user.two_fa_secret:
            raise ValidationError("No 2FA setup in progress. Please start setup again.")

        request = self.verifications.get_by_token(setup_token)
        if request is None or request.user_id != user.id:
            raise NotFoundError("Verification request not found")

        secret = self.vault.decrypt_field(user.two_fa_secret)
        outcome = self.verifications.verify_with(
            setup_token,
            lambda _: self.two_factor.verify_code(code, secret, for_time=self.clock()),
            allowed_types={VerificationType.TWO_FA_SETUP},
        )
        raise_for_outcome(outcome, "Invalid verification code")

        user.two_fa_enabled = True
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"2FA enabled for user {user.id}")
        return user

    def disable_two_fa(self, user: User, code: Optional[str] = None, backup_code: Optional[str] = None) -> User:
        """
        Turn 2FA off after checking a TOTP code or consuming a backup code.

        Raises:
            RateLimitExceeded, ValidationError, DecryptionError
        """
        self.rate_limiter.enforce(TWO_FA_POLICY, str(user.id))

        if not user.two_fa_enabled:
            raise ValidationError("2FA is not enabled")
        if not self._check_second_factor(user, code, backup_code):
            raise ValidationError("Invalid verification code or backup code")

        user.two_fa_enabled = False
        user.two_fa_secret = None
        self.db.execute(
            delete(BackupCode)
            .where(BackupCode.user_id == user.id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"2FA disabled for user {user.id}")
        return user

    def verify_two_fa_login(
        self,
        challenge_token: str,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
    ) -> TwoFaLogin:
        """
        Finish a 2FA login and issue session tokens.

        Raises:
            AuthenticationRequired: Challenge token invalid or expired
            RateLimitExceeded, NotFoundError, ValidationError, DecryptionError
        """
        try:
            payload = decode_token(challenge_token, expected_type=TOKEN_TYPE_TWO_FA)
            user_id = int(payload.get("sub"))
        except (JWTError, TypeError, ValueError):
            raise AuthenticationRequired("Invalid or expired 2FA challenge. Please log in again.")

        self.rate_limiter.enforce(TWO_FA_POLICY, str(user_id))

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.two_fa_enabled or not user.two_fa_secret:
            raise ValidationError("2FA is not enabled for this user")

        if not self._check_second_factor(user, code, backup_code):
            logger.warning(f"Invalid 2FA code for user {user.id}")
            raise ValidationError("Invalid 2FA code or backup code")

        self.lock_policy.record_successful_login(user)
        logger.info(f"2FA login completed for user {user.id}")

        return TwoFaLogin(user=user, tokens=self._issue_session(user), backup_code_used=bool(backup_code))

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(self, user: User, changes: dict) -> User:
        """
        Change the display name and/or phone number.

        An empty phone removes the number. Any change of number clears phone
        verification, so the user has to verify the new one by SMS.

        Raises:
            ValidationError: Nothing to update, or bad phone format
            ConflictError: Number belongs to another account
        """
        if not changes:
            raise ValidationError("No valid fields to update")

        if changes.get("name") is not None:
            user.name = changes["name"]

        if "phone" in changes:
            phone = changes["phone"] or None
            if phone is not None:
                phone = format_phone(phone)
                if not is_valid_phone(phone):
                    raise ValidationError("Invalid phone number format. Please include country code (e.g., +1234567890)")
                owner = self.db.query(User).filter(User.phone == phone, User.id != user.id).first()
                if owner is not None:
                    raise ConflictError("Phone number is already registered to another account")
            if phone != user.phone:
                user.phone = phone
                user.phone_verified_at = None
                logger.info(f"Phone number changed for user {user.id}; verification reset")

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Phone number is already registered to another account")
        self.db.refresh(user)
        return user

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def backup_code_status(self, user: User) -> BackupCodeStatus:
        codes = list(user.backup_codes)
        used = [code for code in codes if code.used]
        last_used = max((code.used_at for code in used if code.used_at), default=None)
        return BackupCodeStatus(
            total=len(codes),
            used=len(used),
            remaining=len(codes) - len(used),
            last_used_at=last_used,
        )

    def security_settings(self, user: User) -> dict:
        status = self.backup_code_status(user)
        return {
            "email_verified": user.email_verified_at is not None,
            "phone_verified": user.phone_verified_at is not None,
            "two_fa_enabled": bool(user.two_fa_enabled),
            "backup_codes_generated": status.total > 0,
            "verification_step": verification_step(user).value,
            "login_attempts": user.login_attempts or 0,
            "locked_until": user.locked_until if self.lock_policy.is_locked(user) else None,
            "backup_codes": {"total": status.total, "used": status.used, "remaining": status.remaining},
        }
