# ABOUTME: Symmetric encryption of stored Git credentials with Fernet key rotation
# ABOUTME: Maps HTTPAuth / SSHAuth to an (auth_type, ciphertext) pair and back

"""Credential vault for Git authentication at rest.

Stored form is a pair ``(auth_type, ciphertext)`` where auth_type is "http" or
"ssh" and the ciphertext is a Fernet token over JSON of the populated variant
only, e.g. ``{"http": {"username": "token", "password": "..."}}``.

Keys are urlsafe-base64 Fernet keys, comma separated. The first key encrypts,
every key decrypts, so a new key can be prepended and old tokens re-encrypted
with rotate() before the old key is dropped.
"""

from __future__ import annotations

import json

import structlog
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from compose_gitops.domain import GitAuth
from compose_gitops.errors import DecryptionError, ValidationError

logger = structlog.get_logger(__name__)

AUTH_TYPES = ("http", "ssh")

_AUTH_ADAPTER: TypeAdapter[GitAuth] = TypeAdapter(GitAuth)


def generate_key() -> str:
    """Return a fresh Fernet key suitable for GITOPS_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode()


class CredentialVault:
    """Encrypts and decrypts Git auth for persistence."""

    def __init__(self, keys: str | list[str]) -> None:
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",")]
        keys = [k for k in keys if k]
        if not keys:
            raise ValidationError("encryption key is required")
        try:
            self._fernet = MultiFernet([Fernet(k.encode()) for k in keys])
        except (ValueError, TypeError) as e:
            raise ValidationError(f"invalid encryption key: {e}") from e
        self._key_count = len(keys)

    def encrypt(self, auth: GitAuth | None) -> tuple[str | None, str | None]:
        """Encrypt auth. Returns (None, None) when there is nothing to store."""
        if auth is None:
            return None, None
        payload = json.dumps({auth.kind: auth.to_payload()})
        token = self._fernet.encrypt(payload.encode()).decode()
        return auth.kind, token

    def decrypt(self, auth_type: str | None, ciphertext: str | None) -> GitAuth | None:
        """
        Decrypt a stored pair.

        Raises:
            DecryptionError: Invalid token (wrong key, tampered data), unknown
                auth type, or a payload that does not match the auth type.
        """
        if not auth_type and not ciphertext:
            return None
        if not auth_type or not ciphertext:
            raise DecryptionError("incomplete stored credentials")

        if auth_type not in AUTH_TYPES:
            raise DecryptionError(f"unknown auth type: {auth_type}")

        try:
            plaintext = self._fernet.decrypt(ciphertext.encode())
        except InvalidToken as e:
            raise DecryptionError("credentials could not be decrypted with the configured keys") from e

        try:
            payload = json.loads(plaintext)
            return _AUTH_ADAPTER.validate_python({"kind": auth_type, **payload[auth_type]})
        except (json.JSONDecodeError, KeyError, TypeError, PydanticValidationError) as e:
            raise DecryptionError(f"stored credentials do not match auth type {auth_type}") from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a token under the primary key."""
        try:
            rotated = self._fernet.rotate(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise DecryptionError("credentials could not be decrypted with the configured keys") from e
        logger.debug("Rotated credentials token", keys=self._key_count)
        return rotated

    @property
    def key_count(self) -> int:
        return self._key_count
