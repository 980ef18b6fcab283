"""
Pydantic schemas for email, SMS and two-factor verification endpoints.

Each action has its own request model; the two ways of proving 2FA (TOTP
code or backup code) are a tagged union on `method`.
"""

from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator
from typing import Annotated, List, Literal, Optional, Union
from datetime import datetime
import re


def _six_digits(v: str) -> str:
    v = v.strip()
    if not re.match(r'^\d{6}$', v):
        raise ValueError('Code must be exactly 6 digits')
    return v


SixDigitCode = Annotated[str, AfterValidator(_six_digits)]


class ResendEmailRequest(BaseModel):
    email: EmailStr


class SendSmsRequest(BaseModel):
    phone: str = Field(..., min_length=2, max_length=20)


class VerifySmsRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    code: SixDigitCode


class TotpProof(BaseModel):
    method: Literal["totp"]
    code: SixDigitCode


class BackupCodeProof(BaseModel):
    method: Literal["backup_code"]
    backup_code: str = Field(..., min_length=8, max_length=8)

    @field_validator('backup_code')
    @classmethod
    def normalise(cls, v: str) -> str:
        v = v.strip().upper()
        if not re.match(r'^[A-Z0-9]{8}$', v):
            raise ValueError('Backup code must be 8 letters or digits')
        return v


TwoFactorProof = Annotated[Union[TotpProof, BackupCodeProof], Field(discriminator="method")]


class ConfirmTwoFaSetupRequest(BaseModel):
    setup_token: str = Field(..., min_length=1, max_length=128)
    code: SixDigitCode


class DisableTwoFaRequest(BaseModel):
    proof: TwoFactorProof


class VerifyTwoFaLoginRequest(BaseModel):
    challenge_token: str
    proof: TwoFactorProof


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class SmsSentResponse(BaseModel):
    success: bool
    message: str
    token: str
    masked_phone: str
    expires: datetime


class TwoFaSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_code_url: str
    backup_codes: List[str]
    setup_token: str
    expires: datetime
    message: str


class TwoFaLoginResponse(BaseModel):
    success: bool = True
    message: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    backup_code_used: bool = False


class BackupCodeStatusResponse(BaseModel):
    """Plaintext codes are only shown at generation time; counts after that."""
    remaining_count: int
    used_count: int
    total_count: int
    last_used_at: Optional[datetime] = None
