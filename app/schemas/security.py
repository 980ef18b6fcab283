"""
Pydantic schemas for security settings and the API key vault.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime

from app.models.api_key import ApiProvider
from app.schemas.user import UserResponse


class BackupCodeCounts(BaseModel):
    total: int
    used: int
    remaining: int


class SecuritySettingsResponse(BaseModel):
    email_verified: bool
    phone_verified: bool
    two_fa_enabled: bool
    backup_codes_generated: bool
    verification_step: str
    login_attempts: int
    locked_until: Optional[datetime]
    backup_codes: BackupCodeCounts


class ProfileUpdateRequest(BaseModel):
    """Only the fields sent are changed. An empty phone removes the number."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=32)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be blank")
        return v

    def changes(self) -> dict:
        return self.model_dump(include=self.model_fields_set)


class ProfileUpdateResponse(BaseModel):
    success: bool
    message: str
    user: UserResponse


class ApiKeyCreateRequest(BaseModel):
    provider: ApiProvider
    key_name: str = Field(..., min_length=1, max_length=100)
    api_key: str = Field(..., min_length=1, max_length=512)


class ApiKeyUpdateRequest(BaseModel):
    key_name: Optional[str] = Field(None, min_length=1, max_length=100)
    api_key: Optional[str] = Field(None, min_length=1, max_length=512)
    is_active: Optional[bool] = None


class ApiKeyResponse(BaseModel):
    """Metadata only; the key itself is never returned."""
    id: int
    provider: ApiProvider
    key_name: str
    is_active: bool
    last_used: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class ApiKeyListResponse(BaseModel):
    api_keys: List[ApiKeyResponse]


class ApiKeyPreviewResponse(BaseModel):
    id: int
    provider: ApiProvider
    masked_key: str
