"""Canonical event codes, channels, and ledger statuses.

Event codes
-----------
Produced by the ingestion collaborator.  ``Custom`` is the generic code
used for ad-hoc messages; it also names the generic template every
channel must ship for each supported locale.

Critical events
---------------
Events a subscriber must always hear about.  They bypass notification
throttling.
"""
from __future__ import annotations

from enum import StrEnum


class EventCode(StrEnum):
    CREATED = "Created"
    PICKED_UP = "PickedUp"
    IN_TRANSIT = "InTransit"
    AT_HUB = "AtHub"
    OUT_FOR_DELIVERY = "OutForDelivery"
    DELIVERED = "Delivered"
    DELIVERY_ATTEMPTED = "DeliveryAttempted"
    EXCEPTION_RAISED = "ExceptionRaised"
    EXCEPTION_RESOLVED = "ExceptionResolved"
    CUSTOMS = "Customs"
    RETURNED = "Returned"
    CUSTOM = "Custom"


class ChannelType(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    CHAT = "chat"
    WEBHOOK = "webhook"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    THROTTLED = "throttled"


# Wildcard entry for ``Subscription.event_filter``.
ALL_EVENTS = "all"

VALID_EVENT_CODES: frozenset[str] = frozenset(code.value for code in EventCode)
VALID_CHANNELS: frozenset[str] = frozenset(channel.value for channel in ChannelType)

CRITICAL_EVENT_CODES: frozenset[str] = frozenset({
    EventCode.DELIVERY_ATTEMPTED,
    EventCode.DELIVERED,
    EventCode.EXCEPTION_RAISED,
    EventCode.RETURNED,
    EventCode.CUSTOM,
})

# Ledger statuses that close a (subscription, event) pair successfully.
SUCCESS_STATUSES: frozenset[str] = frozenset({DeliveryStatus.SENT, DeliveryStatus.DELIVERED})

SUPPORTED_LOCALES: frozenset[str] = frozenset({"en", "th"})

# Every template may reference these; missing values render as "".
TEMPLATE_PLACEHOLDERS: tuple[str, ...] = (
    "tracking_number",
    "current_status",
    "event_code",
    "event_description",
    "event_time",
    "facility",
    "location",
    "eta",
    "service_type",
    "unsubscribe_url",
)
