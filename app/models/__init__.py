"""
Database models package.
"""

from app.models.user import User, Gender
from app.models.verification_request import VerificationRequest, VerificationType
from app.models.backup_code import BackupCode
from app.models.api_key import ApiKey, ApiProvider

__all__ = [
    "User",
    "Gender",
    "VerificationRequest",
    "VerificationType",
    "BackupCode",
    "ApiKey",
    "ApiProvider",
]
