"""
OGS Manager — Settings Encryption
AES-GCM for sensitive values stored in the settings table.
"""

from __future__ import annotations

import base64
import logging
import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger("ogs.crypto")

NONCE_SIZE = 12
_VALID_KEY_SIZES = (16, 24, 32)


class SettingsCipher:
    """Encrypts strings as base64(nonce || ciphertext+tag)."""

    def __init__(self, key: Optional[bytes] = None):
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
            logger.warning(
                "SETTINGS_ENCRYPTION_KEY not set — using a random per-process key; "
                "encrypted settings will not survive a restart"
            )
        if len(key) not in _VALID_KEY_SIZES:
            raise ValueError(f"encryption key must be 16, 24 or 32 bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_env(cls, value: Optional[str]) -> "SettingsCipher":
        if not value:
            return cls(None)
        try:
            key = base64.b64decode(value, validate=True)
        except (ValueError, TypeError) as exc:
            raise ValueError("SETTINGS_ENCRYPTION_KEY is not valid base64") from exc
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        raw = base64.b64decode(token)
        if len(raw) < NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
