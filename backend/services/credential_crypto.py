"""Credential sealing for queue transit using AES-256-GCM.

The GitHub credential of a job passes through the broker and, on terminal
failure, the dead-letter queue. It is sealed before publication and opened
in-memory only inside the consumer.

SECURITY:
- Opened credentials are NEVER logged or persisted
- Credentials are NEVER included in error messages or notifications
- Uses AES-256-GCM authenticated encryption (AEAD)
- Nonce (IV) is prepended to the ciphertext, the result is base64 for JSON
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import Settings, get_settings
from app.exceptions import CredentialSealError

# Nonce size for AES-GCM (96 bits = 12 bytes, NIST recommended)
_NONCE_SIZE = 12


def _derive_encryption_key(username: str, settings: Settings | None = None) -> bytes:
    """Derive a 256-bit AES key from the server secret + username.

    The username acts as a salt, binding the sealed value to its job.
    """
    settings = settings or get_settings()
    secret_bytes = settings.credential_encryption_key.get_secret_value().encode("utf-8")
    return hashlib.sha256(secret_bytes + username.encode("utf-8")).digest()


def seal_credential(credential: str, username: str, settings: Settings | None = None) -> str:
    """Encrypt a credential. Format: base64(nonce (12 bytes) || ciphertext+tag)."""
    aesgcm = AESGCM(_derive_encryption_key(username, settings))
    nonce = os.urandom(_NONCE_SIZE)
    ciphertext = aesgcm.encrypt(nonce, credential.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def open_credential(sealed: str, username: str, settings: Settings | None = None) -> str:
    """Decrypt a sealed credential.

    Raises:
        CredentialSealError: wrong key, other user's credential, tampered data.
    """
    try:
        data = base64.b64decode(sealed.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        raise CredentialSealError() from None

    if len(data) < _NONCE_SIZE + 1:
        raise CredentialSealError()

    aesgcm = AESGCM(_derive_encryption_key(username, settings))
    try:
        plaintext = aesgcm.decrypt(data[:_NONCE_SIZE], data[_NONCE_SIZE:], None)
    except InvalidTag:
        # NEVER expose the reason for failure
        raise CredentialSealError() from None
    return plaintext.decode("utf-8")
