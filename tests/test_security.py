"""Tests for parcelnotify/core/security.py."""
from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from parcelnotify.core.security import (
    FernetEncryptionProvider,
    SecurityService,
    generate_unsubscribe_token,
    sign_payload,
    verify_signature,
)


class TestSignatures:
    def test_signature_is_hex_sha256(self):
        signature = sign_payload(b'{"a":1}', "secret")
        assert len(signature) == 64
        int(signature, 16)

    def test_verify_accepts_matching_signature(self):
        body = b'{"event":"shipment.updated"}'
        assert verify_signature(body, sign_payload(body, "secret"), "secret") is True

    def test_verify_rejects_tampered_body(self):
        signature = sign_payload(b'{"a":1}', "secret")
        assert verify_signature(b'{"a":2}', signature, "secret") is False

    def test_verify_rejects_wrong_secret(self):
        body = b"payload"
        assert verify_signature(body, sign_payload(body, "secret"), "other") is False


class TestTokens:
    def test_token_length_and_alphabet(self):
        token = generate_unsubscribe_token()
        assert len(token) == 64
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_tokens_are_unique(self):
        assert len({generate_unsubscribe_token() for _ in range(50)}) == 50


class TestSecurityService:
    def test_hash_is_case_and_whitespace_insensitive(self):
        service = SecurityService(hash_salt="salt")
        assert service.hash_destination(" Alice@Example.com ") == service.hash_destination("alice@example.com")

    def test_hash_depends_on_salt(self):
        assert SecurityService("a").hash_destination("x") != SecurityService("b").hash_destination("x")

    def test_encrypt_roundtrip(self):
        provider = FernetEncryptionProvider(Fernet.generate_key().decode("utf-8"))
        service = SecurityService(hash_salt="salt", encryption_provider=provider)
        token = service.encrypt("+66812345678")
        assert token != "+66812345678"
        assert service.decrypt(token) == "+66812345678"

    def test_can_encrypt_follows_fernet_key(self, settings):
        assert SecurityService.from_settings(settings).can_encrypt is False
        key = Fernet.generate_key().decode("utf-8")
        service = SecurityService.from_settings(settings.model_copy(update={"fernet_key": key}))
        assert service.can_encrypt is True
        assert service.decrypt(service.encrypt("alice@example.com")) == "alice@example.com"

    def test_encrypt_without_provider_raises(self):
        with pytest.raises(ValueError, match="Encryption provider"):
            SecurityService(hash_salt="salt").encrypt("value")
