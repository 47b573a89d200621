"""Column types for contact data at rest.

``EncryptedString`` stores values Fernet-encrypted when ``FERNET_KEY`` is
configured and as plain text otherwise.  Lookups must never filter on an
encrypted column; use the matching ``*_hash`` column instead.
"""
from __future__ import annotations

from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from parcelnotify.core.security import SecurityService
from parcelnotify.core.settings import get_settings


def _security() -> SecurityService:
    return SecurityService.from_settings(get_settings())


class EncryptedString(TypeDecorator):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        security = _security()
        return security.encrypt(value) if security.can_encrypt else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        security = _security()
        return security.decrypt(value) if security.can_encrypt else value
