from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Protocol

from cryptography.fernet import Fernet

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

_TOKEN_BYTES = 48


class EncryptionProvider(Protocol):
    def encrypt(self, value: str) -> str:
        ...

    def decrypt(self, token: str) -> str:
        ...


class FernetEncryptionProvider:
    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of *body* keyed with *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of *signature* against the HMAC of *body*."""
    return hmac.compare_digest(sign_payload(body, secret), signature)


def generate_unsubscribe_token() -> str:
    """Return an opaque, URL-safe, unguessable token (64 characters)."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


@dataclass(slots=True)
class SecurityService:
    hash_salt: str
    encryption_provider: EncryptionProvider | None = None

    def hash_destination(self, destination: str) -> str:
        payload = f"{self.hash_salt}:{destination.strip().lower()}".encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    @property
    def can_encrypt(self) -> bool:
        return self.encryption_provider is not None

    def encrypt(self, value: str) -> str:
        if self.encryption_provider is None:
            raise ValueError("Encryption provider is required for this operation")
        return self.encryption_provider.encrypt(value)

    def decrypt(self, token: str) -> str:
        if self.encryption_provider is None:
            raise ValueError("Encryption provider is required for this operation")
        return self.encryption_provider.decrypt(token)

    @classmethod
    def from_settings(cls, settings) -> SecurityService:
        provider = FernetEncryptionProvider(settings.fernet_key) if settings.fernet_key else None
        return cls(hash_salt=settings.hash_salt, encryption_provider=provider)
