"""
At-rest secret protection.

- Passwords: PBKDF2-HMAC-SHA512 with a random per-password salt, stored as
  "salt:hash". Legacy bcrypt hashes are still accepted and flagged for rehash.
- Sensitive fields and API keys: AES-256-GCM with a fresh nonce per message.
  The AES key is derived from the configured passphrase with HKDF over a
  per-message salt, so the passphrase itself is never used as a key.
"""

import base64
import binascii
import hmac
import logging
import os
import secrets
from functools import cached_property
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from passlib.context import CryptContext

from app.core.exceptions import DecryptionError, EncryptionError, ValidationError

logger = logging.getLogger(__name__)

# Hashes written by the previous bcrypt-based signup route
legacy_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

PASSWORD_SALT_BYTES = 16
PASSWORD_HASH_BYTES = 64
DEFAULT_PASSWORD_ITERATIONS = 210_000

ENVELOPE_VERSION = 1
ENVELOPE_SALT_BYTES = 16
NONCE_BYTES = 12
HKDF_INFO = b"naggery/field-encryption/v1"


class CredentialVault:
    """
    Password hashing and authenticated symmetric encryption.

    Pure CPU work, no I/O. One instance is built by the composition root and
    shared by request handlers.
    """

    def __init__(self, encryption_key: Optional[str] = None, iterations: int = DEFAULT_PASSWORD_ITERATIONS):
        self.encryption_key = encryption_key or ""
        self.iterations = iterations
        if not self.encryption_key:
            logger.warning(
                "ENCRYPTION_KEY not set. Sensitive fields cannot be encrypted until it is configured."
            )

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def _pbkdf2(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=PASSWORD_HASH_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    def hash_password(self, password: str) -> str:
        """
        Hash a password for storage.

        Returns:
            str: "salt_hex:hash_hex"

        Raises:
            ValidationError: If the password is empty
        """
        if not password:
            raise ValidationError("Password cannot be empty")
        salt = os.urandom(PASSWORD_SALT_BYTES)
        digest = self._pbkdf2(password, salt)
        return f"{salt.hex()}:{digest.hex()}"

    def verify_password(self, password: str, stored_hash: str) -> bool:
        """Verify a plain password against a stored hash in constant time."""
        if not password or not stored_hash:
            return False

        if self.is_legacy_hash(stored_hash):
            # Bcrypt has a 72-byte limit - truncate like the original hasher did
            try:
                return legacy_pwd_context.verify(password.encode("utf-8")[:72], stored_hash)
            except ValueError:
                return False

        salt_hex, sep, hash_hex = stored_hash.partition(":")
        if not sep:
            return False
        try:
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(hash_hex)
        except ValueError:
            return False

        return hmac.compare_digest(self._pbkdf2(password, salt), expected)

    @cached_property
    def dummy_hash(self) -> str:
        """Hash checked against when the account does not exist, so timing matches."""
        return self.hash_password(secrets.token_urlsafe(16))

    @staticmethod
    def is_legacy_hash(stored_hash: str) -> bool:
        return stored_hash.startswith("$2")

    def needs_rehash(self, stored_hash: str) -> bool:
        """True when the stored hash predates the current password scheme."""
        return self.is_legacy_hash(stored_hash)

    # ------------------------------------------------------------------
    # Authenticated encryption
    # ------------------------------------------------------------------

    @staticmethod
    def _derive_key(key: str, salt: bytes) -> bytes:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=HKDF_INFO)
        return hkdf.derive(key.encode("utf-8"))

    def encrypt(self, plaintext: str, key: str) -> str:
        """
        Encrypt a secret with AES-256-GCM.

        Args:
            plaintext: Secret to protect
            key: Passphrase; the AES key is derived from it per message

        Returns:
            str: urlsafe base64 of version | salt | nonce | ciphertext+tag

        Raises:
            EncryptionError: If the key is empty
        """
        if not key:
            raise EncryptionError("Encryption key cannot be empty")

        salt = os.urandom(ENVELOPE_SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        header = bytes([ENVELOPE_VERSION])
        aead = AESGCM(self._derive_key(key, salt))
        ciphertext = aead.encrypt(nonce, plaintext.encode("utf-8"), header)
        return base64.urlsafe_b64encode(header + salt + nonce + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str, key: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            DecryptionError: Wrong key, tampered or malformed input. Never
                returns partially decrypted data.
        """
        if not key:
            raise DecryptionError("Decryption key cannot be empty")

        try:
            blob = base64.b64decode(ciphertext.encode("ascii"), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError):
            raise DecryptionError("Ciphertext is not valid base64")
        # Only the exact encoding encrypt() emits is accepted
        if base64.urlsafe_b64encode(blob).decode("ascii") != ciphertext:
            raise DecryptionError("Ciphertext is not canonically encoded")

        minimum = 1 + ENVELOPE_SALT_BYTES + NONCE_BYTES + 16
        if len(blob) < minimum:
            raise DecryptionError("Ciphertext is truncated")
        if blob[0] != ENVELOPE_VERSION:
            raise DecryptionError("Unsupported ciphertext version")

        header = blob[:1]
        salt = blob[1:1 + ENVELOPE_SALT_BYTES]
        nonce = blob[1 + ENVELOPE_SALT_BYTES:1 + ENVELOPE_SALT_BYTES + NONCE_BYTES]
        body = blob[1 + ENVELOPE_SALT_BYTES + NONCE_BYTES:]

        try:
            plaintext = AESGCM(self._derive_key(key, salt)).decrypt(nonce, body, header)
        except InvalidTag:
            raise DecryptionError("Ciphertext failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted data is not valid UTF-8")

    def encrypt_field(self, value: str) -> str:
        """Encrypt a sensitive column value with the configured key."""
        return self.encrypt(value, self.encryption_key)

    def decrypt_field(self, value: str) -> str:
        return self.decrypt(value, self.encryption_key)


class ApiKeyVault:
    """
    Storage rules for user-supplied AI provider API keys.

    Keys are validated, trimmed and sealed with the CredentialVault before
    they reach the database; plaintext is only recovered for immediate use.
    """

    PREFIXES = {
        "OPENAI": ("sk-", 'OpenAI API keys must start with "sk-"', "OpenAI"),
        "CLAUDE": ("sk-ant-", 'Claude API keys must start with "sk-ant-"', "Claude"),
    }
    MIN_LENGTH = 20

    def __init__(self, vault: CredentialVault):
        self.vault = vault

    def validate_format(self, api_key: str, provider: str) -> None:
        """Raise ValidationError if the key cannot belong to the provider."""
        if not api_key or not api_key.strip():
            raise ValidationError("API key cannot be empty")

        rule = self.PREFIXES.get(provider)
        if rule is None:
            raise ValidationError("Unsupported API provider")

        prefix, prefix_error, label = rule
        key = api_key.strip()
        if not key.startswith(prefix):
            raise ValidationError(prefix_error)
        if len(key) < self.MIN_LENGTH:
            raise ValidationError(f"{label} API key appears to be too short")

    def seal(self, api_key: str) -> str:
        if not api_key or not api_key.strip():
            raise ValidationError("API key cannot be empty")
        return self.vault.encrypt_field(api_key.strip())

    def unseal(self, encrypted_key: str) -> str:
        if not encrypted_key or not encrypted_key.strip():
            raise DecryptionError("Encrypted API key cannot be empty")
        return self.vault.decrypt_field(encrypted_key.strip())

    @staticmethod
    def mask(api_key: str) -> str:
        """Show only the first and last four characters."""
        if not api_key or len(api_key) < 8:
            return "****"
        hidden = "*" * max(4, len(api_key) - 8)
        return f"{api_key[:4]}{hidden}{api_key[-4:]}"
