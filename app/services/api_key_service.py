"""
CRUD for users' AI provider API keys.

Keys are sealed by the ApiKeyVault before they are stored. Listing returns
metadata only; preview decrypts and masks.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.credential_vault import ApiKeyVault
from app.core.exceptions import ConflictError, NotFoundError
from app.models.api_key import ApiKey, ApiProvider
from app.models.user import User

logger = logging.getLogger(__name__)


class ApiKeyService:
    def __init__(self, db: Session, key_vault: ApiKeyVault):
        self.db = db
        self.key_vault = key_vault

    def _get_owned(self, user: User, key_id: int) -> ApiKey:
        api_key = (
            self.db.query(ApiKey)
            .filter(ApiKey.id == key_id, ApiKey.user_id == user.id)
            .first()
        )
        if api_key is None:
            raise NotFoundError("API key not found")
        return api_key

    def list_keys(self, user: User) -> List[ApiKey]:
        return (
            self.db.query(ApiKey)
            .filter(ApiKey.user_id == user.id)
            .order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
            .all()
        )

    def create_key(self, user: User, provider: ApiProvider, key_name: str, api_key: str) -> ApiKey:
        """
        Store a new key for a provider.

        Raises:
            ValidationError: Key does not look like one from this provider
            ConflictError: The user already has a key for this provider
            EncryptionError: ENCRYPTION_KEY not configured
        """
        provider = ApiProvider(provider)
        self.key_vault.validate_format(api_key, provider.value)

        existing = (
            self.db.query(ApiKey)
            .filter(ApiKey.user_id == user.id, ApiKey.provider == provider)
            .first()
        )
        if existing is not None:
            raise ConflictError(
                f"You already have an API key for {provider.value}. Please update the existing one instead."
            )

        record = ApiKey(
            user_id=user.id,
            provider=provider,
            key_name=key_name.strip(),
            encrypted_key=self.key_vault.seal(api_key),
            is_active=True,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(f"You already have an API key for {provider.value}.")
        self.db.refresh(record)

        logger.info(f"API key {record.id} ({provider.value}) stored for user {user.id}")
        return record

    def update_key(
        self,
        user: User,
        key_id: int,
        key_name: Optional[str] = None,
        api_key: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> ApiKey:
        record = self._get_owned(user, key_id)

        if api_key is not None:
            self.key_vault.validate_format(api_key, record.provider.value)
            record.encrypted_key = self.key_vault.seal(api_key)
        if key_name is not None:
            record.key_name = key_name.strip()
        if is_active is not None:
            record.is_active = is_active

        self.db.commit()
        self.db.refresh(record)

        logger.info(f"API key {record.id} updated for user {user.id}")
        return record

    def delete_key(self, user: User, key_id: int) -> None:
        record = self._get_owned(user, key_id)
        self.db.delete(record)
        self.db.commit()
        logger.info(f"API key {key_id} deleted for user {user.id}")

    def preview_key(self, user: User, key_id: int) -> Tuple[ApiKey, str]:
        """
        Decrypt a stored key and return the record with the key masked.

        Raises:
            NotFoundError: Key missing or owned by someone else
            DecryptionError: Stored value cannot be decrypted with the current key
        """
        record = self._get_owned(user, key_id)
        return record, self.key_vault.mask(self.key_vault.unseal(record.encrypted_key))
