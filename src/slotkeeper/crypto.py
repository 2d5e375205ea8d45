"""AES-256-GCM encryption for OAuth tokens and other secrets at rest.

Every encryption draws a fresh 128-bit IV and produces a 128-bit
authentication tag.  Ciphertext, IV, and tag travel together as a single
:class:`EncryptedValue`, stored as lowercase hex::

    cipher = CredentialCipher.from_env()
    sealed = cipher.encrypt("ya29.a0Af...")
    sealed.model_dump(by_alias=True)
    # {"ciphertext": "...", "iv": "...", "authTag": "..."}
    cipher.decrypt(sealed)

Decryption never returns incorrect plaintext: a wrong key, a modified
ciphertext, IV or tag, or malformed hex all raise
:class:`~slotkeeper.errors.CredentialError`.  Plaintext and key material are
never logged.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, Field, field_validator

from slotkeeper.errors import CredentialError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
ENCRYPTION_VERSION = "1"

ENCRYPTION_KEY_ENV = "SLOTKEEPER_ENCRYPTION_KEY"


class EncryptedValue(BaseModel):
    """Ciphertext plus the IV and tag required to open it (all hex)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ciphertext: str
    iv: str
    auth_tag: str = Field(alias="authTag")

    @field_validator("ciphertext", "iv", "auth_tag")
    @classmethod
    def _normalize_hex(cls, value: str) -> str:
        return value.strip().lower()

    def __repr__(self) -> str:
        return f"EncryptedValue(ciphertext=<{len(self.ciphertext) // 2} bytes>, iv={self.iv!r})"

    __str__ = __repr__


def _parse_key(key: str | bytes) -> bytes:
    if isinstance(key, bytes):
        raw = key
    else:
        normalized = key.strip()
        if len(normalized) != KEY_LENGTH * 2:
            raise CredentialError(
                f"Encryption key must be {KEY_LENGTH * 2} hex characters "
                f"({KEY_LENGTH} bytes). Current length: {len(normalized)}"
            )
        try:
            raw = bytes.fromhex(normalized)
        except ValueError as exc:
            raise CredentialError("Encryption key must be hex encoded") from exc
    if len(raw) != KEY_LENGTH:
        raise CredentialError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(raw)}")
    return raw


class CredentialCipher:
    """AES-256-GCM cipher bound to a single 256-bit key."""

    def __init__(self, key: str | bytes) -> None:
        self._aead = AESGCM(_parse_key(key))

    @classmethod
    def from_env(cls, env_var: str = ENCRYPTION_KEY_ENV) -> CredentialCipher:
        """Build a cipher from the hex key stored in *env_var*.

        Raises
        ------
        CredentialError
            If the variable is unset or does not hold a 64-character hex key.
        """
        key = os.environ.get(env_var)
        if not key:
            raise CredentialError(
                f"{env_var} environment variable is not set. "
                "Generate one with: slotkeeper generate-key"
            )
        return cls(key)

    def __repr__(self) -> str:
        return "CredentialCipher(key=<redacted>)"

    def encrypt(self, plaintext: str) -> EncryptedValue:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return EncryptedValue(ciphertext=ciphertext.hex(), iv=iv.hex(), auth_tag=tag.hex())

    def decrypt(self, value: EncryptedValue) -> str:
        """Open *value*, verifying its authentication tag.

        Raises
        ------
        CredentialError
            If the value was tampered with, was sealed under another key, or
            is malformed.
        """
        try:
            ciphertext = bytes.fromhex(value.ciphertext)
            iv = bytes.fromhex(value.iv)
            tag = bytes.fromhex(value.auth_tag)
        except ValueError as exc:
            logger.error("Encrypted value is not valid hex")
            raise CredentialError("Failed to decrypt data - corrupted data") from exc

        if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH:
            logger.error(
                "Encrypted value has wrong IV/tag length (iv=%d, tag=%d)", len(iv), len(tag)
            )
            raise CredentialError("Failed to decrypt data - corrupted data")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.error("Encrypted value failed authentication")
            raise CredentialError(
                "Failed to decrypt data - data may be corrupted or tampered with"
            ) from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialError("Decrypted data is not valid UTF-8") from exc

    def encrypt_json(self, data: Any) -> EncryptedValue:
        return self.encrypt(json.dumps(data, separators=(",", ":")))

    def decrypt_json(self, value: EncryptedValue) -> Any:
        plaintext = self.decrypt(value)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as exc:
            logger.error("Decrypted data is not valid JSON")
            raise CredentialError("Failed to parse decrypted data as JSON") from exc


def generate_key() -> str:
    """Return a fresh random 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_LENGTH)


# ---------------------------------------------------------------------------
# Module-level helpers bound to the environment key
# ---------------------------------------------------------------------------


def encrypt(plaintext: str) -> EncryptedValue:
    return CredentialCipher.from_env().encrypt(plaintext)


def decrypt(ciphertext: str, iv: str, auth_tag: str) -> str:
    value = EncryptedValue(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag)
    return CredentialCipher.from_env().decrypt(value)


def encrypt_json(data: Any) -> EncryptedValue:
    return CredentialCipher.from_env().encrypt_json(data)


def decrypt_json(ciphertext: str, iv: str, auth_tag: str) -> Any:
    value = EncryptedValue(ciphertext=ciphertext, iv=iv, auth_tag=auth_tag)
    return CredentialCipher.from_env().decrypt_json(value)


def is_encryption_configured(env_var: str = ENCRYPTION_KEY_ENV) -> bool:
    """Return True when *env_var* holds a usable key."""
    try:
        CredentialCipher.from_env(env_var)
    except CredentialError:
        return False
    return True


def encryption_info(env_var: str = ENCRYPTION_KEY_ENV) -> dict[str, Any]:
    """Describe the encryption setup for diagnostics.  Never includes the key."""
    return {
        "algorithm": ALGORITHM,
        "key_length": KEY_LENGTH,
        "iv_length": IV_LENGTH,
        "auth_tag_length": AUTH_TAG_LENGTH,
        "version": ENCRYPTION_VERSION,
        "configured": is_encryption_configured(env_var),
    }
