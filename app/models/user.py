"""
User model, security-relevant columns.

Journal entries and voice notes reference users.id but live outside this
subsystem.
"""

import enum
from sqlalchemy import Column, Integer, String, Boolean, Enum, func
from sqlalchemy.orm import relationship
from app.core.database import Base, UTCDateTime


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"
    PREFER_NOT_TO_SAY = "PREFER_NOT_TO_SAY"


class User(Base):
    """
    Journal account.

    Accounts start inactive and are activated by email verification.
    two_fa_secret is stored encrypted by the CredentialVault, never in clear.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Profile
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    phone = Column(String, unique=True, nullable=True, index=True)  # E.164
    gender = Column(Enum(Gender), nullable=True)
    terms_accepted_at = Column(UTCDateTime, nullable=True)

    # Credentials
    password_hash = Column(String, nullable=False)

    # Verification state
    is_active = Column(Boolean, default=False, nullable=False)
    email_verified_at = Column(UTCDateTime, nullable=True)
    phone_verified_at = Column(UTCDateTime, nullable=True)

    # Two-factor authentication
    two_fa_secret = Column(String, nullable=True)
    two_fa_enabled = Column(Boolean, default=False, nullable=False)

    # Lockout
    login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(UTCDateTime, nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())
    last_login_at = Column(UTCDateTime, nullable=True)

    # Relationships
    verification_requests = relationship("VerificationRequest", back_populates="user", cascade="all, delete-orphan")
    backup_codes = relationship("BackupCode", back_populates="user", cascade="all, delete-orphan")
    api_keys = relationship("ApiKey", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"
