"""
Core verification request logic.

Handles generation, validation and lifecycle of email links, SMS codes and
2FA setup challenges.
"""

import enum
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.core.exceptions import (
    AlreadyVerifiedError,
    AttemptsExceededError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from app.models.verification_request import VerificationRequest, VerificationType

logger = logging.getLogger(__name__)


# Security constants
MAX_ATTEMPTS = 5
TOKEN_BYTES = 32  # 256-bit tokens, 64 hex characters
CODE_LENGTH = 6

REQUEST_TTL = {
    VerificationType.EMAIL_VERIFICATION: timedelta(hours=24),
    VerificationType.EMAIL_CHANGE: timedelta(hours=24),
    VerificationType.SMS_VERIFICATION: timedelta(minutes=10),
    VerificationType.TWO_FA_SETUP: timedelta(minutes=10),
    VerificationType.PASSWORD_RESET: timedelta(hours=1),
}

# Types proven by possession of the emailed link alone
LINK_TYPES = frozenset({
    VerificationType.EMAIL_VERIFICATION,
    VerificationType.EMAIL_CHANGE,
    VerificationType.PASSWORD_RESET,
})


class VerificationOutcome(str, enum.Enum):
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    WRONG_TYPE = "wrong_type"
    EXPIRED = "expired"
    ALREADY_VERIFIED = "already_verified"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class IssuedVerification:
    """What the caller needs to deliver a new challenge."""
    request_id: int
    type: VerificationType
    token: str
    code: Optional[str]
    expires: datetime


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one redemption, plus the owner of the request it hit."""
    outcome: VerificationOutcome
    user_id: Optional[int] = None

    @property
    def verified(self) -> bool:
        return self.outcome is VerificationOutcome.VERIFIED


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def generate_verification_code() -> str:
    """Uniform 6-digit code in 100000..999999 from a CSPRNG."""
    return str(100000 + secrets.randbelow(900000))


def codes_match(expected: Optional[str], submitted: Optional[str]) -> bool:
    if expected is None or submitted is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), submitted.strip().encode("utf-8"))


def raise_for_outcome(outcome: VerificationOutcome, mismatch_message: str = "Invalid verification code") -> None:
    """Translate a failed outcome into the matching typed error."""
    if outcome is VerificationOutcome.VERIFIED:
        return
    if outcome is VerificationOutcome.NOT_FOUND:
        raise NotFoundError("Verification request not found")
    if outcome is VerificationOutcome.EXPIRED:
        raise ExpiredError()
    if outcome is VerificationOutcome.ALREADY_VERIFIED:
        raise AlreadyVerifiedError("This verification has already been used")
    if outcome is VerificationOutcome.ATTEMPTS_EXCEEDED:
        raise AttemptsExceededError()
    if outcome is VerificationOutcome.WRONG_TYPE:
        raise ValidationError("Verification request cannot be used here")
    raise ValidationError(mismatch_message)


class VerificationManager:
    """
    Lifecycle of VerificationRequest rows.

    Attempt counting and the verified flag are changed with conditional
    UPDATE statements, so concurrent guesses against one token are serialised
    by the database and can never exceed MAX_ATTEMPTS between them.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def create_request(self, user_id: int, type: VerificationType) -> IssuedVerification:
        """
        Create a new verification request for a user.

        - Deletes this user's expired requests of the same type
        - Generates a fresh 256-bit token
        - Generates a 6-digit code for SMS verification only
        - Sets the type-specific expiration

        Returns:
            IssuedVerification: token, optional code and expiry to deliver
        """
        now = self.clock()

        self.db.execute(
            delete(VerificationRequest)
            .where(
                VerificationRequest.user_id == user_id,
                VerificationRequest.type == type,
                VerificationRequest.expires < now,
            )
            .execution_options(synchronize_session=False)
        )

        code = generate_verification_code() if type is VerificationType.SMS_VERIFICATION else None
        request = VerificationRequest(
            user_id=user_id,
            type=type,
            token=generate_token(),
            code=code,
            attempts=0,
            verified=False,
            expires=now + REQUEST_TTL[type],
            created_at=now,
        )
        self.db.add(request)
        self.db.commit()
        self.db.refresh(request)

        logger.info(f"Created {type.value} request {request.id} for user {user_id}")

        return IssuedVerification(
            request_id=request.id,
            type=type,
            token=request.token,
            code=code,
            expires=request.expires,
        )

    def get_by_token(self, token: str) -> Optional[VerificationRequest]:
        if not token:
            return None
        return self.db.query(VerificationRequest).filter(VerificationRequest.token == token).first()

    def _gate(self, request: VerificationRequest, now: datetime) -> Optional[VerificationOutcome]:
        # Expiry wins over every other state
        if now >= request.expires:
            return VerificationOutcome.EXPIRED
        if request.verified:
            return VerificationOutcome.ALREADY_VERIFIED
        if request.attempts >= MAX_ATTEMPTS:
            return VerificationOutcome.ATTEMPTS_EXCEEDED
        return None

    def redeem(
        self,
        token: str,
        matcher: Callable[[VerificationRequest], bool],
        allowed_types: Optional[Iterable[VerificationType]] = None,
    ) -> VerificationResult:
        """
        Consume one attempt on a request and test it with `matcher`.

        The attempt is recorded before the matcher runs, so a wrong guess
        still uses up a retry. The owner is read before any write, so the
        result stays usable even if the row is purged afterwards.
        """
        request = self.get_by_token(token)
        if request is None:
            return VerificationResult(VerificationOutcome.NOT_FOUND)
        user_id = request.user_id
        if allowed_types is not None and request.type not in set(allowed_types):
            return VerificationResult(VerificationOutcome.WRONG_TYPE, user_id)

        now = self.clock()
        blocked = self._gate(request, now)
        if blocked is not None:
            return VerificationResult(blocked, user_id)

        claimed = self.db.execute(
            update(VerificationRequest)
            .where(
                VerificationRequest.id == request.id,
                VerificationRequest.verified.is_(False),
                VerificationRequest.attempts < MAX_ATTEMPTS,
                VerificationRequest.expires > now,
            )
            .values(attempts=VerificationRequest.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(request)

        if claimed.rowcount != 1:
            # Another caller got there first; report what it left behind
            outcome = self._gate(request, now) or VerificationOutcome.ATTEMPTS_EXCEEDED
            return VerificationResult(outcome, user_id)

        if not matcher(request):
            logger.info(f"Verification mismatch on request {request.id} (attempt {request.attempts}/{MAX_ATTEMPTS})")
            return VerificationResult(VerificationOutcome.MISMATCH, user_id)

        marked = self.db.execute(
            update(VerificationRequest)
            .where(VerificationRequest.id == request.id, VerificationRequest.verified.is_(False))
            .values(verified=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if marked.rowcount != 1:
            return VerificationResult(VerificationOutcome.ALREADY_VERIFIED, user_id)

        logger.info(f"Verification request {request.id} ({request.type.value}) verified")
        return VerificationResult(VerificationOutcome.VERIFIED, user_id)

    def verify_with(
        self,
        token: str,
        matcher: Callable[[VerificationRequest], bool],
        allowed_types: Optional[Iterable[VerificationType]] = None,
    ) -> VerificationOutcome:
        return self.redeem(token, matcher, allowed_types).outcome

    def check_code(self, token: str, code: str) -> VerificationOutcome:
        return self.verify_with(token, lambda request: codes_match(request.code, code))

    def verify_by_code(self, token: str, code: str) -> bool:
        """Verify a code-based request (SMS). Returns False on any failure."""
        return self.check_code(token, code) is VerificationOutcome.VERIFIED

    def redeem_link(
        self, token: str, allowed_types: Iterable[VerificationType] = LINK_TYPES
    ) -> VerificationResult:
        if not set(allowed_types) <= LINK_TYPES:
            raise ValueError("Only link-based requests can be verified by token alone")
        return self.redeem(token, lambda request: True, allowed_types=allowed_types)

    def check_token_only(
        self, token: str, allowed_types: Iterable[VerificationType] = LINK_TYPES
    ) -> VerificationOutcome:
        return self.redeem_link(token, allowed_types).outcome

    def verify_by_token_only(self, token: str) -> bool:
        """Verify a link-based request; holding the token is the proof."""
        return self.check_token_only(token) is VerificationOutcome.VERIFIED

    def cleanup_expired(self) -> int:
        """
        Delete every request whose expiry has passed.

        Safe to run alongside live verification calls: only rows that can no
        longer validate are removed.

        Returns:
            int: Number of requests deleted
        """
        result = self.db.execute(
            delete(VerificationRequest)
            .where(VerificationRequest.expires < self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0
