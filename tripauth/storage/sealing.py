from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tripauth.logging import get_logger

logger = get_logger(__name__)


class TokenSealer:
    """Fernet wrapper for identity-provider tokens stored beside a session.

    Provider tokens grant access to the user's Google account, so they are
    never written to disk or to the database in clear text.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("token sealing key material must not be empty")
        try:
            self._cipher = Fernet(self._derive_cipher_key(key_material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize token cipher") from exc

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @classmethod
    def from_settings(cls, settings) -> "TokenSealer":
        return cls(settings.token_encryption_key or settings.jwt_secret)

    def seal(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def unseal(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            # Written under a rotated key; the provider token is unrecoverable
            logger.warning("external_token_unseal_failed")
            return None
