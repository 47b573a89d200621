"""Event type constants for the append-only audit trail."""
from __future__ import annotations

EVENT_SUBSCRIPTION_CREATED = "subscription_created"
EVENT_CONSENT_GIVEN = "consent_given"
EVENT_CONSENT_WITHDRAWN = "consent_withdrawn"
EVENT_PREFERENCES_UPDATED = "preferences_updated"
EVENT_DELIVERY_CONFIRMED = "delivery_confirmed"
EVENT_DELIVERY_EXHAUSTED = "delivery_exhausted"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_CONSENT_GIVEN,
    EVENT_CONSENT_WITHDRAWN,
    EVENT_PREFERENCES_UPDATED,
    EVENT_DELIVERY_CONFIRMED,
    EVENT_DELIVERY_EXHAUSTED,
})
