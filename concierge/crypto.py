"""
Credential references.

Tenant credentials (LLM API keys, custom tool bearer tokens) are stored as
Fernet tokens. The key comes from ENCRYPTION_KEY; `seal` is idempotent so the
configuration API can pass every credential field through it on write.
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialError

logger = logging.getLogger("tenant-concierge")


class CredentialCipher:
    def __init__(self, key: Optional[str]) -> None:
        self._fernet = Fernet(key.encode("utf-8")) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    def _require(self) -> Fernet:
        if self._fernet is None:
            raise CredentialError("ENCRYPTION_KEY is not configured")
        return self._fernet

    def encrypt(self, secret: str) -> str:
        return self._require().encrypt(secret.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self._require().decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialError("Credential reference could not be decrypted") from exc

    def is_sealed(self, value: str) -> bool:
        try:
            self.decrypt(value)
        except CredentialError:
            return False
        return True

    def seal(self, value: Optional[str]) -> Optional[str]:
        """Encrypt `value` unless it already is a token for this key."""
        if not value:
            return value
        if self.is_sealed(value):
            return value
        return self.encrypt(value)
