"""
Security settings overview and the AI provider API key vault.
"""

import logging
from fastapi import APIRouter, Depends, status

from app.core.deps import get_api_key_service, get_current_user, get_security_service
from app.models.user import User
from app.schemas.user import UserResponse
from app.schemas.security import (
    ApiKeyCreateRequest,
    ApiKeyListResponse,
    ApiKeyPreviewResponse,
    ApiKeyResponse,
    ApiKeyUpdateRequest,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    SecuritySettingsResponse,
)
from app.schemas.verification import MessageResponse
from app.services.api_key_service import ApiKeyService
from app.services.security_service import SecurityOrchestrator

router = APIRouter(prefix="/security", tags=["Security"])
logger = logging.getLogger(__name__)


@router.get("/settings", response_model=SecuritySettingsResponse)
def get_security_settings(
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """Verification state, 2FA status and lockout information for the current user."""
    return SecuritySettingsResponse(**service.security_settings(current_user))


@router.put("/settings", response_model=ProfileUpdateResponse)
def update_profile(
    request: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: SecurityOrchestrator = Depends(get_security_service),
):
    """
    Update name and/or phone number.

    A new phone number starts out unverified.

    Raises:
        400: No fields given or invalid phone format
        409: Phone number belongs to another account
    """
    user = service.update_profile(current_user, request.changes())
    return ProfileUpdateResponse(
        success=True,
        message="Profile updated successfully",
        user=UserResponse.model_validate(user),
    )


@router.get("/api-keys", response_model=ApiKeyListResponse)
def list_api_keys(
    current_user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    keys = service.list_keys(current_user)
    return ApiKeyListResponse(api_keys=[ApiKeyResponse.model_validate(k) for k in keys])


@router.post("/api-keys", status_code=status.HTTP_201_CREATED, response_model=ApiKeyResponse)
def create_api_key(
    request: ApiKeyCreateRequest,
    current_user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    """
    Store an API key, encrypted.

    Raises:
        400: Key format does not match the provider
        409: A key for this provider already exists
    """
    return service.create_key(current_user, request.provider, request.key_name, request.api_key)


@router.put("/api-keys/{key_id}", response_model=ApiKeyResponse)
def update_api_key(
    key_id: int,
    request: ApiKeyUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return service.update_key(
        current_user,
        key_id,
        key_name=request.key_name,
        api_key=request.api_key,
        is_active=request.is_active,
    )


@router.delete("/api-keys/{key_id}", response_model=MessageResponse)
def delete_api_key(
    key_id: int,
    current_user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    service.delete_key(current_user, key_id)
    return MessageResponse(message="API key deleted successfully")


@router.get("/api-keys/{key_id}/preview", response_model=ApiKeyPreviewResponse)
def preview_api_key(
    key_id: int,
    current_user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    """Masked form of the stored key, so the user can tell which key is saved."""
    record, masked = service.preview_key(current_user, key_id)
    return ApiKeyPreviewResponse(id=record.id, provider=record.provider, masked_key=masked)
