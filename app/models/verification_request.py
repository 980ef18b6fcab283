"""
Verification request model for email links, SMS codes and 2FA setup.

Each request is single-use, time-limited and attempt-limited. The token is
the lookup key; SMS requests also carry a 6-digit code.
"""

import enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Integer, ForeignKey, Index, Enum
from sqlalchemy.orm import relationship
from app.core.database import Base, UTCDateTime


class VerificationType(str, enum.Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    EMAIL_CHANGE = "EMAIL_CHANGE"
    SMS_VERIFICATION = "SMS_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FA_SETUP = "TWO_FA_SETUP"


class VerificationRequest(Base):
    """
    Features:
    - 256-bit random token (unique)
    - 6-digit numeric code for SMS only
    - Type-specific expiration
    - Attempt tracking for brute force protection
    - verified only ever goes from False to True
    """
    __tablename__ = "verification_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Enum(VerificationType), nullable=False)

    token = Column(String(64), unique=True, nullable=False, index=True)
    code = Column(String(6), nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    verified = Column(Boolean, nullable=False, default=False)

    expires = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="verification_requests")

    __table_args__ = (
        Index('ix_verification_requests_user_type', 'user_id', 'type'),
        Index('ix_verification_requests_expires', 'expires'),
    )

    def __repr__(self):
        # Token and code are secrets; keep them out of reprs and logs
        return f"<VerificationRequest(id={self.id}, user_id={self.user_id}, type={self.type}, expires={self.expires})>"
