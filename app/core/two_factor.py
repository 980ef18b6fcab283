"""
TOTP two-factor authentication (RFC 6238) and backup codes.

- 160-bit base32 secrets, 30-second steps, 6 digits
- +/- one step of clock drift tolerated
- Backup codes are stored as salted SHA-256 hashes and compared in constant
  time, the same treatment passwords get
"""

import enum
import hashlib
import hmac
import os
import re
import secrets
import string
from datetime import datetime
from typing import Iterable, List, Optional

import pyotp

from app.core.database import utcnow
from app.models.backup_code import BackupCode

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_SECRET_LENGTH = 32  # base32 characters = 160 bits
DEFAULT_SKEW_STEPS = 1

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_SALT_BYTES = 16

_TOTP_PATTERN = re.compile(r"^\d{6}$")
_BACKUP_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")


class VerificationStep(str, enum.Enum):
    """Where an account is in the email -> phone -> 2FA onboarding chain."""
    NEEDS_EMAIL = "needs_email"
    NEEDS_PHONE = "needs_phone"
    NEEDS_2FA = "needs_2fa"
    COMPLETE = "complete"


def verification_step(user) -> VerificationStep:
    """Derive the onboarding step from the user's verification columns."""
    if not user.email_verified_at:
        return VerificationStep.NEEDS_EMAIL
    if not user.phone_verified_at:
        return VerificationStep.NEEDS_PHONE
    if not user.two_fa_enabled:
        return VerificationStep.NEEDS_2FA
    return VerificationStep.COMPLETE


class TwoFactorAuth:
    """Stateless TOTP and backup-code helpers."""

    def __init__(self, issuer: str = "Naggery"):
        self.issuer = issuer

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32(length=TOTP_SECRET_LENGTH)

    def provisioning_uri(self, secret: str, account_label: str, issuer: Optional[str] = None) -> str:
        """Build the otpauth:// URI an authenticator app scans from a QR code."""
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.provisioning_uri(name=account_label, issuer_name=issuer or self.issuer)

    @staticmethod
    def current_code(secret: str, for_time: Optional[datetime] = None) -> str:
        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.at(for_time) if for_time is not None else totp.now()

    @staticmethod
    def verify_code(
        code: str,
        secret: str,
        skew_steps: int = DEFAULT_SKEW_STEPS,
        for_time: Optional[datetime] = None,
    ) -> bool:
        """
        Check a 6-digit TOTP code.

        Every candidate step is compared with hmac.compare_digest and the loop
        never exits early, so timing does not reveal which step matched.
        """
        if not code or not secret:
            return False
        code = code.strip()
        if not _TOTP_PATTERN.match(code):
            return False

        totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        when = for_time if for_time is not None else utcnow()
        matched = False
        for offset in range(-skew_steps, skew_steps + 1):
            if hmac.compare_digest(totp.at(when, offset), code):
                matched = True
        return matched

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    @staticmethod
    def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
        """Return `count` unique random 8-character codes."""
        codes: List[str] = []
        seen = set()
        while len(codes) < count:
            code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            if code not in seen:
                seen.add(code)
                codes.append(code)
        return codes

    @staticmethod
    def hash_backup_code(code: str, salt: Optional[bytes] = None) -> str:
        salt = salt if salt is not None else os.urandom(BACKUP_CODE_SALT_BYTES)
        digest = hashlib.sha256(salt + code.strip().upper().encode("utf-8")).hexdigest()
        return f"{salt.hex()}:{digest}"

    @classmethod
    def backup_code_matches(cls, code: str, code_hash: str) -> bool:
        salt_hex, sep, _ = code_hash.partition(":")
        if not sep:
            return False
        try:
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            return False
        return hmac.compare_digest(cls.hash_backup_code(code, salt), code_hash)

    @classmethod
    def validate_backup_code(cls, user_codes: Iterable[BackupCode], submitted: str) -> Optional[BackupCode]:
        """
        Find the unused backup code matching `submitted`, case-insensitively.

        The caller is responsible for marking the returned code as used.
        """
        if not submitted:
            return None
        candidate = submitted.strip().upper()
        if not _BACKUP_CODE_PATTERN.match(candidate):
            return None

        match = None
        for backup_code in user_codes:
            if backup_code.used:
                continue
            if cls.backup_code_matches(candidate, backup_code.code_hash) and match is None:
                match = backup_code
        return match
