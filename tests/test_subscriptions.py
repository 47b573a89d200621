"""Tests for parcelnotify/subscriptions/registry.py."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from parcelnotify.audit.audit_log import get_subscription_history
from parcelnotify.audit.events import (
    EVENT_CONSENT_GIVEN,
    EVENT_CONSENT_WITHDRAWN,
    EVENT_PREFERENCES_UPDATED,
    EVENT_SUBSCRIPTION_CREATED,
)
from parcelnotify.core.constants import ALL_EVENTS, DeliveryStatus
from parcelnotify.db.models import DeliveryRecord
from parcelnotify.subscriptions.registry import (
    STATE_ACTIVE,
    STATE_INACTIVE,
    STATE_PENDING,
    validate_event_filter,
)


# ===========================================================================
# validate_event_filter
# ===========================================================================

class TestValidateEventFilter:
    def test_empty_means_all(self):
        assert validate_event_filter([]) == [ALL_EVENTS]
        assert validate_event_filter(None) == [ALL_EVENTS]

    def test_all_collapses_other_codes(self):
        assert validate_event_filter(["Delivered", "all"]) == [ALL_EVENTS]

    def test_duplicates_removed_in_order(self):
        assert validate_event_filter(["Delivered", "Created", "Delivered"]) == ["Delivered", "Created"]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValueError, match="Invalid event code"):
            validate_event_filter(["Teleported"])


# ===========================================================================
# subscribe
# ===========================================================================

class TestSubscribe:
    def test_with_consent_is_active(self, registry, make_shipment):
        shipment = make_shipment()
        sub = registry.subscribe(
            shipment.id, "email", "alice@example.com", consent_given=True, consent_source_ip="203.0.113.7"
        )
        assert sub.consent_state == STATE_ACTIVE
        assert sub.consent_at is not None
        assert sub.consent_source_ip == "203.0.113.7"
        assert sub.event_filter == [ALL_EVENTS]

    def test_without_consent_is_pending(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "sms", "081 234 5678")
        assert sub.consent_state == STATE_PENDING
        assert sub.destination == "+66812345678"

    def test_token_is_unguessable_and_unique(self, registry, make_shipment):
        shipment = make_shipment()
        a = registry.subscribe(shipment.id, "email", "a@example.com")
        b = registry.subscribe(shipment.id, "email", "b@example.com")
        assert len(a.unsubscribe_token) >= 32
        assert a.unsubscribe_token != b.unsubscribe_token

    def test_destination_hashed(self, registry, security, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com")
        assert sub.destination_hash == security.hash_destination("alice@example.com")
        assert "alice" not in sub.destination_hash

    def test_invalid_channel(self, registry, make_shipment):
        with pytest.raises(ValueError, match="Invalid channel"):
            registry.subscribe(make_shipment().id, "pigeon", "coop-7")

    def test_invalid_destination(self, registry, make_shipment):
        with pytest.raises(ValueError, match="not a valid email"):
            registry.subscribe(make_shipment().id, "email", "not-an-address")

    def test_invalid_webhook_url(self, registry, make_shipment):
        with pytest.raises(ValueError):
            registry.subscribe(make_shipment().id, "webhook", "ftp://merchant.example/hook")

    def test_invalid_locale(self, registry, make_shipment):
        with pytest.raises(ValueError, match="Unsupported locale"):
            registry.subscribe(make_shipment().id, "email", "a@example.com", locale="xx")

    def test_unknown_shipment(self, registry):
        with pytest.raises(KeyError):
            registry.subscribe(uuid4(), "email", "a@example.com")

    def test_repeat_opt_in_reuses_record(self, registry, make_shipment):
        shipment = make_shipment()
        first = registry.subscribe(shipment.id, "email", "alice@example.com", event_filter=["Delivered"])
        second = registry.subscribe(shipment.id, "email", "ALICE@Example.com", event_filter=["Created"])
        assert first.id == second.id
        assert second.event_filter == ["Created"]
        assert len(registry.list_for_shipment(shipment.id)) == 1

    def test_resubscribe_after_unsubscribe_needs_fresh_consent(self, registry, make_shipment):
        shipment = make_shipment()
        sub = registry.subscribe(shipment.id, "email", "alice@example.com", consent_given=True)
        registry.deactivate(sub.id)

        again = registry.subscribe(shipment.id, "email", "alice@example.com")
        assert again.id == sub.id
        assert again.consent_state == STATE_PENDING

        again = registry.subscribe(shipment.id, "email", "alice@example.com", consent_given=True)
        assert again.consent_state == STATE_ACTIVE

    def test_audit_trail_written(self, registry, db_session, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        types = {e.event_type for e in get_subscription_history(db_session, str(sub.id))}
        assert types == {EVENT_SUBSCRIPTION_CREATED, EVENT_CONSENT_GIVEN}

    def test_destination_not_logged(self, registry, make_shipment, caplog):
        with caplog.at_level("DEBUG"):
            registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        assert "alice@example.com" not in caplog.text


# ===========================================================================
# Consent transitions
# ===========================================================================

class TestConsent:
    def test_give_consent_activates_pending(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com")
        registry.give_consent(sub.id, source_ip="198.51.100.1")
        assert sub.consent_state == STATE_ACTIVE
        assert sub.consent_source_ip == "198.51.100.1"

    def test_give_consent_twice_rejected(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        with pytest.raises(ValueError, match="Invalid transition"):
            registry.give_consent(sub.id)

    def test_give_consent_reactivates_inactive(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        registry.deactivate(sub.id)
        registry.give_consent(sub.id)
        assert sub.consent_state == STATE_ACTIVE

    def test_deactivate_clears_consent(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        registry.deactivate(sub.id)
        assert sub.consent_state == STATE_INACTIVE
        assert sub.consent_given is False

    def test_deactivate_is_idempotent(self, registry, db_session, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        registry.deactivate(sub.id)
        registry.deactivate(sub.id)
        withdrawn = [
            e for e in get_subscription_history(db_session, str(sub.id)) if e.event_type == EVENT_CONSENT_WITHDRAWN
        ]
        assert len(withdrawn) == 1

    def test_deactivate_pending(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com")
        registry.deactivate(sub.id)
        assert sub.consent_state == STATE_INACTIVE

    def test_unknown_subscription(self, registry):
        with pytest.raises(KeyError):
            registry.deactivate(uuid4())

    def test_consent_timestamp_from_clock(self, db_session, security, make_shipment):
        from parcelnotify.subscriptions.registry import SubscriptionRegistry

        fixed = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
        registry = SubscriptionRegistry(db_session, security, clock=lambda: fixed)
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        assert sub.consent_at == fixed


# ===========================================================================
# unsubscribe_by_token
# ===========================================================================

class TestUnsubscribeByToken:
    def test_valid_token_deactivates(self, registry, db_session, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        assert registry.unsubscribe_by_token(sub.unsubscribe_token) is True
        assert sub.consent_state == STATE_INACTIVE
        [withdrawn] = [
            e for e in get_subscription_history(db_session, str(sub.id)) if e.event_type == EVENT_CONSENT_WITHDRAWN
        ]
        assert withdrawn.actor == "unsubscribe_link"

    def test_repeat_is_successful(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        registry.unsubscribe_by_token(sub.unsubscribe_token)
        assert registry.unsubscribe_by_token(sub.unsubscribe_token) is True
        assert sub.consent_state == STATE_INACTIVE

    def test_unknown_token(self, registry):
        assert registry.unsubscribe_by_token("no-such-token") is False

    def test_empty_token(self, registry):
        assert registry.unsubscribe_by_token("") is False


# ===========================================================================
# Preferences and eligibility
# ===========================================================================

class TestPreferences:
    def test_update_filter_and_locale(self, registry, db_session, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        registry.update_preferences(sub.id, event_filter=["Delivered"], locale="th")
        assert sub.event_filter == ["Delivered"]
        assert sub.locale == "th"
        assert sub.consent_state == STATE_ACTIVE
        [last] = [
            e for e in get_subscription_history(db_session, str(sub.id)) if e.event_type == EVENT_PREFERENCES_UPDATED
        ]
        assert last.detail == {"event_filter": ["Delivered"], "locale": "th"}

    def test_invalid_code_rejected(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com")
        with pytest.raises(ValueError):
            registry.update_preferences(sub.id, event_filter=["Nope"])

    def test_eligible_for_event(self, registry, make_shipment):
        shipment = make_shipment()
        email = registry.subscribe(
            shipment.id, "email", "alice@example.com", event_filter=["Delivered"], consent_given=True
        )
        sms = registry.subscribe(shipment.id, "sms", "+66812345678", consent_given=True)
        registry.subscribe(shipment.id, "chat", "U123")  # pending, never eligible

        assert {s.id for s in registry.eligible_for_event(shipment.id, "Delivered")} == {email.id, sms.id}
        assert {s.id for s in registry.eligible_for_event(shipment.id, "InTransit")} == {sms.id}
        assert {s.id for s in registry.eligible_for_event(shipment.id, "Custom")} == {email.id, sms.id}


# ===========================================================================
# statistics
# ===========================================================================

class TestStatistics:
    def test_empty(self, registry, make_shipment):
        sub = registry.subscribe(make_shipment().id, "email", "alice@example.com", consent_given=True)
        stats = registry.statistics(sub.id)
        assert stats["total"] == 0
        assert stats["delivery_rate"] == 0.0
        assert stats["last_sent_at"] is None

    def test_counts_and_rate(self, registry, db_session, make_shipment, make_event):
        shipment = make_shipment()
        sub = registry.subscribe(shipment.id, "email", "alice@example.com", consent_given=True)
        sent_at = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
        statuses = [DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.THROTTLED]
        for status in statuses:
            event = make_event(shipment, "InTransit")
            db_session.add(
                DeliveryRecord(
                    subscription_id=sub.id,
                    event_id=event.id,
                    channel="email",
                    status=status,
                    sent_at=sent_at if status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED) else None,
                )
            )
        db_session.commit()

        stats = registry.statistics(sub.id)
        assert stats["total"] == 4
        assert stats["sent"] == 1
        assert stats["delivered"] == 1
        assert stats["failed"] == 1
        assert stats["throttled"] == 1
        assert stats["delivery_rate"] == 50.0
        assert stats["last_sent_at"].startswith("2026-10-19T09:00:00")
