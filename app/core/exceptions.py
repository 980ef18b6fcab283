"""
Typed errors raised by the account security core.

The core never chooses HTTP status codes. main.py maps each class to a
response in a single exception handler.
"""

from typing import Optional


class SecurityError(Exception):
    """Base class for every error the security core raises on purpose."""

    default_message = "Security check failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SecurityError):
    default_message = "Invalid request"


class ConflictError(SecurityError):
    default_message = "Resource already exists"


class NotFoundError(SecurityError):
    default_message = "Not found"


class ExpiredError(SecurityError):
    default_message = "Verification has expired. Please request a new one."


class AlreadyVerifiedError(SecurityError):
    default_message = "Already verified"


class AttemptsExceededError(SecurityError):
    default_message = "Too many attempts. Please request a new code."


class InvalidCredentialsError(SecurityError):
    default_message = "Invalid email or password"


class AuthenticationRequired(SecurityError):
    default_message = "Could not validate credentials"


class RateLimitExceeded(SecurityError):
    """Carries the number of seconds until the window resets."""

    default_message = "Too many attempts, please try again later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        self.retry_after = max(0, int(retry_after))
        super().__init__(message)


class LockedAccountError(SecurityError):
    default_message = "Account is temporarily locked"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        self.retry_after = max(0, int(retry_after))
        if message is None:
            minutes = max(1, -(-self.retry_after // 60))
            message = f"Account is locked. Try again in {minutes} minutes."
        super().__init__(message)


class EncryptionError(SecurityError):
    default_message = "Failed to encrypt data"


class DecryptionError(SecurityError):
    default_message = "Failed to decrypt data"
