"""
Pydantic schemas for signup, login and session tokens.
"""

from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional
from datetime import datetime
import re

from app.models.user import Gender
from app.services.sms_service import format_phone, is_valid_phone


class SignupRequest(BaseModel):
    """Request schema for account creation."""
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="Password must be 8-128 characters with uppercase, lowercase, number, and special character"
    )
    phone: str = Field(..., description="Phone number with country code, e.g. +1234567890")
    gender: Gender
    terms_accepted: bool

    @field_validator('name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Name is required')
        return v

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v: str) -> str:
        """Validate password contains required character types."""
        if not re.search(r'[a-z]', v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not re.search(r'[A-Z]', v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not re.search(r'\d', v):
            raise ValueError('Password must contain at least one number')
        if not re.search(r'[!@#$%^&*(),.?":{}|<>]', v):
            raise ValueError('Password must contain at least one special character (!@#$%^&*(),.?":{}|<>)')
        return v

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        formatted = format_phone(v)
        if not is_valid_phone(formatted):
            raise ValueError('Invalid phone number format. Please include country code (e.g., +1234567890)')
        return formatted

    @field_validator('terms_accepted')
    @classmethod
    def require_terms(cls, v: bool) -> bool:
        if not v:
            raise ValueError('You must accept the Terms and Conditions to create an account')
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenRefreshRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    """User profile response (no secrets)."""
    id: int
    name: str
    email: str
    phone: Optional[str]
    is_active: bool
    email_verified_at: Optional[datetime]
    phone_verified_at: Optional[datetime]
    two_fa_enabled: bool
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class SignupResponse(BaseModel):
    message: str
    user: UserResponse
    next_step: str


class LoginResponse(BaseModel):
    """
    Either a full session (access/refresh tokens) or, when 2FA is enabled,
    a challenge token to present to /verify-2fa.
    """
    requires_two_fa: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    challenge_token: Optional[str] = None
    verification_step: str
    user: Optional[UserResponse] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
