"""Encryption of channel bot tokens at rest."""

from __future__ import annotations

import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken


class CredentialDecryptError(RuntimeError):
    pass


def derive_key(secret: str) -> bytes:
    """Fernet wants 32 url-safe base64 bytes; any secret string is stretched to that."""
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())


class CredentialStore:
    def __init__(self, secret: str | None = None) -> None:
        secret = secret if secret is not None else os.environ.get("ENCRYPTION_SECRET", "")
        if not secret:
            raise ValueError("ENCRYPTION_SECRET must be set")
        self._fernet = Fernet(derive_key(secret))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialDecryptError("Failed to decrypt credential") from exc
