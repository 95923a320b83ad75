"""
Custodial key encryption.

Private keys are encrypted at rest using Fernet symmetric encryption.
The Fernet key is derived from the process-wide SOLTIP_ENCRYPTION_KEY via
HMAC-SHA256, so rotating that secret makes every stored key unreadable.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken

from soltip.errors import DecryptionFailure

logger = logging.getLogger("soltip.crypto")

_DERIVATION_LABEL = b"soltip-custodial-key-encryption"


def generate_process_secret() -> str:
    """A fresh value suitable for SOLTIP_ENCRYPTION_KEY."""
    return secrets.token_hex(32)


class KeyVault:
    """Encrypts and decrypts raw key material with a process-wide secret."""

    def __init__(self, process_secret: str):
        if not process_secret:
            raise ValueError("KeyVault needs a non-empty process secret")
        derived = hmac.new(
            process_secret.encode(),
            _DERIVATION_LABEL,
            hashlib.sha256,
        ).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    def encrypt_secret(self, raw_key_material: bytes) -> str:
        return self._fernet.encrypt(bytes(raw_key_material)).decode()

    def decrypt_secret(self, blob: str) -> bytes:
        if not blob:
            raise DecryptionFailure("no encrypted key material stored")
        try:
            return self._fernet.decrypt(blob.encode())
        except (InvalidToken, ValueError, TypeError) as e:
            # Never include the blob itself in the message
            logger.warning("failed to decrypt custodial key material")
            raise DecryptionFailure("failed to decrypt custodial key material") from e
