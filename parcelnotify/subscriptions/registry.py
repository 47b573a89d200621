"""Subscription registry with consent tracking.

Consent states (``Subscription.consent_state``)::

    pending_consent → active → inactive
                   ↘ inactive  ↺ active (fresh consent only)

- opt-in without consent creates a ``pending_consent`` subscription that
  receives nothing until ``give_consent``
- ``deactivate`` / ``unsubscribe_by_token`` move to ``inactive`` and clear
  the consent flag, so nothing reactivates without a new consent record
- re-subscribing with the same destination reuses the existing record
  (matched on the destination hash, never on the destination itself)

Every transition is written to the audit trail.  Methods flush but do
not commit; the caller owns the transaction.

Safety: destinations and tokens are never logged.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from parcelnotify.audit.audit_log import record_event
from parcelnotify.audit.events import (
    EVENT_CONSENT_GIVEN,
    EVENT_CONSENT_WITHDRAWN,
    EVENT_PREFERENCES_UPDATED,
    EVENT_SUBSCRIPTION_CREATED,
)
from parcelnotify.core.constants import (
    ALL_EVENTS,
    SUCCESS_STATUSES,
    SUPPORTED_LOCALES,
    VALID_CHANNELS,
    VALID_EVENT_CODES,
    DeliveryStatus,
)
from parcelnotify.core.security import SecurityService, generate_unsubscribe_token
from parcelnotify.db.models import Subscription
from parcelnotify.db.repositories import ShipmentRepository, SubscriptionRepository
from parcelnotify.normalization import normalize_destination
from parcelnotify.notification.ledger import DeliveryLedger

logger = logging.getLogger(__name__)

STATE_PENDING = "pending_consent"
STATE_ACTIVE = "active"
STATE_INACTIVE = "inactive"

# Allowed transitions: current state → {valid target states}
_TRANSITIONS: dict[str, set[str]] = {
    STATE_PENDING: {STATE_ACTIVE, STATE_INACTIVE},
    STATE_ACTIVE: {STATE_INACTIVE},
    STATE_INACTIVE: {STATE_ACTIVE},
}


def validate_event_filter(codes: Iterable[str] | None) -> list[str]:
    """Return a de-duplicated filter list; an empty or missing filter means all."""
    if not codes:
        return [ALL_EVENTS]
    cleaned: list[str] = []
    for code in codes:
        if code != ALL_EVENTS and code not in VALID_EVENT_CODES:
            raise ValueError(
                f"Invalid event code {code!r}; must be {ALL_EVENTS!r} or one of {sorted(VALID_EVENT_CODES)}"
            )
        if code not in cleaned:
            cleaned.append(code)
    return [ALL_EVENTS] if ALL_EVENTS in cleaned else cleaned


def _validate_locale(locale: str | None) -> str | None:
    if locale is not None and locale not in SUPPORTED_LOCALES:
        raise ValueError(f"Unsupported locale {locale!r}; must be one of {sorted(SUPPORTED_LOCALES)}")
    return locale


class SubscriptionRegistry:
    """CRUD and consent transitions for ``Subscription`` rows."""

    def __init__(
        self,
        db_session: Session,
        security: SecurityService,
        *,
        default_phone_region: str = "TH",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db_session
        self.security = security
        self.default_phone_region = default_phone_region
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.repo = SubscriptionRepository(db_session)
        self.shipments = ShipmentRepository(db_session)

    # -- lookups ------------------------------------------------------------

    def get(self, subscription_id: UUID) -> Subscription:
        subscription = self.repo.get(subscription_id)
        if subscription is None:
            raise KeyError(f"Subscription {subscription_id} not found")
        return subscription

    def list_for_shipment(self, shipment_id: UUID, *, active_only: bool = False) -> list[Subscription]:
        return self.repo.list_for_shipment(shipment_id, active_only=active_only)

    def eligible_for_event(self, shipment_id: UUID, event_code: str) -> list[Subscription]:
        """Active, consented subscriptions whose filter accepts *event_code*."""
        return [s for s in self.repo.list_consented(shipment_id) if s.matches_event(event_code)]

    # -- opt-in -------------------------------------------------------------

    def subscribe(
        self,
        shipment_id: UUID,
        channel: str,
        destination: str,
        *,
        event_filter: Iterable[str] | None = None,
        locale: str | None = None,
        consent_given: bool = False,
        consent_source_ip: str | None = None,
        actor: str = "subscriber",
    ) -> Subscription:
        """Create or refresh the subscription for (shipment, channel, destination).

        Raises
        ------
        KeyError
            If the shipment does not exist.
        ValueError
            For an unknown channel, an undeliverable destination, an
            unknown event code, or an unsupported locale.
        """
        if channel not in VALID_CHANNELS:
            raise ValueError(f"Invalid channel {channel!r}; must be one of {sorted(VALID_CHANNELS)}")
        if self.shipments.get(shipment_id) is None:
            raise KeyError(f"Shipment {shipment_id} not found")
        normalized = normalize_destination(channel, destination, default_region=self.default_phone_region)
        if normalized is None:
            raise ValueError(f"Destination is not a valid {channel} address")
        codes = validate_event_filter(event_filter)
        _validate_locale(locale)

        destination_hash = self.security.hash_destination(normalized)
        subscription = self.repo.find_existing(shipment_id, channel, destination_hash)
        if subscription is None:
            subscription = self.repo.create(
                shipment_id=shipment_id,
                channel=channel,
                destination=normalized,
                destination_hash=destination_hash,
                locale=locale,
                event_filter=codes,
                active=True,
                consent_given=False,
                unsubscribe_token=generate_unsubscribe_token(),
            )
            record_event(
                self.db,
                EVENT_SUBSCRIPTION_CREATED,
                actor=actor,
                subscription_id=str(subscription.id),
                detail={"channel": channel},
            )
            logger.info("Subscription %s created on %s", subscription.id, channel)
        else:
            subscription.event_filter = codes
            if locale is not None:
                subscription.locale = locale
            if not subscription.active:
                # Re-subscription comes back as pending until consent is given.
                subscription.active = True
                subscription.consent_given = False
            self.db.flush()
            logger.info("Subscription %s refreshed by repeat opt-in", subscription.id)

        if consent_given and not subscription.consent_given:
            self._grant(subscription, consent_source_ip, actor)
        return subscription

    # -- consent transitions ------------------------------------------------

    def give_consent(
        self, subscription_id: UUID, *, source_ip: str | None = None, actor: str = "subscriber"
    ) -> Subscription:
        """Record fresh consent, activating a pending or inactive subscription.

        Raises ``ValueError`` if consent is already active.
        """
        subscription = self.get(subscription_id)
        self._check_transition(subscription, STATE_ACTIVE)
        self._grant(subscription, source_ip, actor)
        return subscription

    def deactivate(self, subscription_id: UUID, *, actor: str = "subscriber") -> Subscription:
        """Move the subscription to ``inactive``; already inactive is a no-op."""
        subscription = self.get(subscription_id)
        if subscription.consent_state != STATE_INACTIVE:
            self._withdraw(subscription, actor)
        return subscription

    def unsubscribe_by_token(self, token: str) -> bool:
        """Deactivate the subscription owning *token*.

        Returns False for an unknown token.  Repeated calls with a valid
        token succeed and leave the subscription inactive.
        """
        subscription = self.repo.get_by_token(token) if token else None
        if subscription is None:
            logger.info("Unsubscribe requested with unknown token")
            return False
        if subscription.consent_state != STATE_INACTIVE:
            self._withdraw(subscription, "unsubscribe_link")
        return True

    def update_preferences(
        self,
        subscription_id: UUID,
        *,
        event_filter: Iterable[str] | None = None,
        locale: str | None = None,
        actor: str = "subscriber",
    ) -> Subscription:
        """Change the event filter and/or locale.  Never changes consent."""
        subscription = self.get(subscription_id)
        changes: dict[str, object] = {}
        if event_filter is not None:
            subscription.event_filter = validate_event_filter(event_filter)
            changes["event_filter"] = subscription.event_filter
        if locale is not None:
            subscription.locale = _validate_locale(locale)
            changes["locale"] = locale
        self.db.flush()
        record_event(
            self.db,
            EVENT_PREFERENCES_UPDATED,
            actor=actor,
            subscription_id=str(subscription.id),
            detail=changes,
        )
        return subscription

    # -- analytics ----------------------------------------------------------

    def statistics(self, subscription_id: UUID) -> dict:
        """Delivery counts, delivery rate and last send time for a subscription."""
        subscription = self.get(subscription_id)
        ledger = DeliveryLedger(self.db)
        counts = ledger.status_counts(subscription_id=subscription.id)
        total = sum(counts.values())
        succeeded = sum(counts.get(status, 0) for status in SUCCESS_STATUSES)
        last_sent_at = ledger.last_sent_at(subscription.id)
        return {
            "subscription_id": str(subscription.id),
            "consent_state": subscription.consent_state,
            "total": total,
            "sent": counts.get(DeliveryStatus.SENT, 0),
            "delivered": counts.get(DeliveryStatus.DELIVERED, 0),
            "failed": counts.get(DeliveryStatus.FAILED, 0),
            "throttled": counts.get(DeliveryStatus.THROTTLED, 0),
            "pending": counts.get(DeliveryStatus.PENDING, 0),
            "delivery_rate": round(succeeded / total * 100, 2) if total else 0.0,
            "last_sent_at": last_sent_at.isoformat() if last_sent_at else None,
        }

    # -- internals ----------------------------------------------------------

    def _check_transition(self, subscription: Subscription, target: str) -> None:
        current = subscription.consent_state
        if target not in _TRANSITIONS.get(current, set()):
            raise ValueError(f"Invalid transition {current!r} → {target!r}")

    def _grant(self, subscription: Subscription, source_ip: str | None, actor: str) -> None:
        subscription.active = True
        subscription.consent_given = True
        subscription.consent_at = self._clock()
        subscription.consent_source_ip = source_ip
        self.db.flush()
        record_event(self.db, EVENT_CONSENT_GIVEN, actor=actor, subscription_id=str(subscription.id))
        logger.info("Consent recorded for subscription %s", subscription.id)

    def _withdraw(self, subscription: Subscription, actor: str) -> None:
        self._check_transition(subscription, STATE_INACTIVE)
        subscription.active = False
        subscription.consent_given = False
        self.db.flush()
        record_event(self.db, EVENT_CONSENT_WITHDRAWN, actor=actor, subscription_id=str(subscription.id))
        logger.info("Subscription %s deactivated", subscription.id)
