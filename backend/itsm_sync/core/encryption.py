"""Symmetric encryption for platform credentials stored in connection records."""

from __future__ import annotations

import base64
import hashlib
import json
import logging

from cryptography.fernet import Fernet, InvalidToken

from itsm_sync.config import settings

logger = logging.getLogger(__name__)

_PREFIX = "enc:"


def _derive_key() -> bytes:
    """Derive a 32-byte Fernet key from SECRET_KEY using SHA-256."""
    raw = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
    return base64.urlsafe_b64encode(raw)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string. Returns a prefixed ciphertext."""
    if not plaintext:
        return plaintext
    f = Fernet(_derive_key())
    return _PREFIX + f.encrypt(plaintext.encode()).decode()


def decrypt_value(stored: str) -> str:
    """Decrypt a stored value.

    Values without the prefix are returned unchanged. A token that no longer
    decrypts (SECRET_KEY rotated) yields an empty string so the operator is
    forced to re-enter the secret.
    """
    if not stored or not stored.startswith(_PREFIX):
        return stored
    f = Fernet(_derive_key())
    try:
        return f.decrypt(stored[len(_PREFIX) :].encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt stored credentials - SECRET_KEY may have changed")
        return ""


def is_encrypted(value: str) -> bool:
    return bool(value) and value.startswith(_PREFIX)


def encrypt_credentials(creds: dict) -> str:
    """Encrypt a credential dict into an ``enc:`` credential reference."""
    return encrypt_value(json.dumps(creds, sort_keys=True))


def decrypt_credentials(credential_ref: str) -> dict:
    """Inverse of :func:`encrypt_credentials`; returns ``{}`` when unreadable."""
    plain = decrypt_value(credential_ref)
    if not plain:
        return {}
    try:
        creds = json.loads(plain)
    except ValueError:
        return {}
    return creds if isinstance(creds, dict) else {}
