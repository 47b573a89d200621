"""Per-channel destination validation.

email   → mailbox address (``email_normalizer``)
sms     → E.164 phone number (``phone_normalizer``)
chat    → opaque recipient id issued by the messaging platform
webhook → absolute ``http``/``https`` URL with a host
"""
from __future__ import annotations

import re

import httpx

from parcelnotify.core.constants import ChannelType
from parcelnotify.normalization.email_normalizer import normalize_email
from parcelnotify.normalization.phone_normalizer import normalize_phone

_CHAT_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def normalize_chat_id(raw: str) -> str | None:
    stripped = (raw or "").strip()
    return stripped if _CHAT_ID_RE.match(stripped) else None


def normalize_webhook_url(raw: str) -> str | None:
    stripped = (raw or "").strip()
    if not stripped:
        return None
    try:
        url = httpx.URL(stripped)
    except (httpx.InvalidURL, TypeError):
        return None
    if url.scheme not in ("http", "https") or not url.host:
        return None
    return str(url)


def normalize_destination(channel: str, raw: str, *, default_region: str = "TH") -> str | None:
    """Return the canonical destination for *channel*, or ``None`` if undeliverable.

    Raises ``ValueError`` for an unknown channel.
    """
    if channel == ChannelType.EMAIL:
        return normalize_email(raw)
    if channel == ChannelType.SMS:
        return normalize_phone(raw, default_region=default_region)
    if channel == ChannelType.CHAT:
        return normalize_chat_id(raw)
    if channel == ChannelType.WEBHOOK:
        return normalize_webhook_url(raw)
    raise ValueError(f"Unknown channel {channel!r}")
