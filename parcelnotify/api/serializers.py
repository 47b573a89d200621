"""Response serializers shared by the API routes.

Destinations are always masked in responses; unsubscribe tokens are never
returned.
"""
from __future__ import annotations

from datetime import datetime

from parcelnotify.core.constants import ChannelType
from parcelnotify.db.models import DeliveryRecord, Subscription


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def mask_email(email: str | None) -> str:
    """Keep the first character of the mailbox and the domain."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


def mask_phone(phone: str | None) -> str:
    """Show last 4 digits only."""
    if not phone:
        return ""
    digits = "".join(c for c in phone if c.isdigit())
    if len(digits) >= 4:
        return f"***-***-{digits[-4:]}"
    return "***"


def mask_destination(channel: str, destination: str | None) -> str:
    if not destination:
        return ""
    if channel == ChannelType.EMAIL:
        return mask_email(destination)
    if channel == ChannelType.SMS:
        return mask_phone(destination)
    if channel == ChannelType.WEBHOOK:
        scheme, _, rest = destination.partition("://")
        host = rest.split("/", 1)[0]
        return f"{scheme}://{host}/***"
    return f"{destination[:4]}***"


def serialize_subscription(subscription: Subscription) -> dict:
    return {
        "id": str(subscription.id),
        "shipment_id": str(subscription.shipment_id),
        "channel": subscription.channel,
        "destination": mask_destination(subscription.channel, subscription.destination),
        "locale": subscription.locale,
        "event_filter": list(subscription.event_filter or []),
        "consent_state": subscription.consent_state,
        "active": subscription.active,
        "consent_given": subscription.consent_given,
        "consent_at": _iso(subscription.consent_at),
        "created_at": _iso(subscription.created_at),
    }


def serialize_record(record: DeliveryRecord) -> dict:
    return {
        "id": str(record.id),
        "subscription_id": str(record.subscription_id),
        "event_id": str(record.event_id),
        "channel": record.channel,
        "status": record.status,
        "attempt_count": record.attempt_count,
        "provider_ref": record.provider_ref,
        "failure_kind": record.failure_kind,
        "retry_exhausted": record.retry_exhausted,
        "next_attempt_at": _iso(record.next_attempt_at),
        "created_at": _iso(record.created_at),
        "last_attempt_at": _iso(record.last_attempt_at),
        "sent_at": _iso(record.sent_at),
        "delivered_at": _iso(record.delivered_at),
    }
