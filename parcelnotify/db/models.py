from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parcelnotify.core.constants import ALL_EVENTS, EventCode
from parcelnotify.db.base import Base
from parcelnotify.db.types import EncryptedString


class Shipment(Base):
    """Read model of a tracked shipment.

    Owned by the tracking collaborator; the notification subsystem only
    reads it to fill template variables and to scope subscriptions.
    """

    __tablename__ = "shipments"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tracking_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    current_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    estimated_delivery: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locale: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    events: Mapped[list[Event]] = relationship(back_populates="shipment")
    subscriptions: Mapped[list[Subscription]] = relationship(back_populates="shipment")


class Event(Base):
    """Immutable shipment event produced by the ingestion pipeline."""

    __tablename__ = "events"
    __table_args__ = (Index("ix_events_shipment_id", "shipment_id"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    shipment_id: Mapped[UUID] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    event_code: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    facility: Mapped[str | None] = mapped_column(String(256), nullable=True)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    shipment: Mapped[Shipment] = relationship(back_populates="events")


class Subscription(Base):
    """A subscriber's opt-in to status updates for one shipment on one channel.

    Consent states (derived, see ``consent_state``):

        pending_consent → active → inactive
                       ↘ inactive      ↺ active (fresh consent only)
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_shipment_channel", "shipment_id", "channel"),
        Index("ix_subscriptions_destination_hash", "destination_hash"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    shipment_id: Mapped[UUID] = mapped_column(ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    destination: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    destination_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    locale: Mapped[str | None] = mapped_column(String(16), nullable=True)
    event_filter: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: [ALL_EVENTS])
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sql_text("true"))
    consent_given: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sql_text("false")
    )
    consent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consent_source_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    unsubscribe_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    shipment: Mapped[Shipment] = relationship(back_populates="subscriptions")
    delivery_records: Mapped[list[DeliveryRecord]] = relationship(back_populates="subscription")

    @property
    def consent_state(self) -> str:
        if not self.active:
            return "inactive"
        return "active" if self.consent_given else "pending_consent"

    def matches_event(self, event_code: str) -> bool:
        """Return True if *event_code* passes the event filter.

        ``Custom`` events always match; ad-hoc messages are not filtered
        by event preferences.
        """
        if event_code == EventCode.CUSTOM:
            return True
        codes = self.event_filter or []
        return ALL_EVENTS in codes or event_code in codes

    def is_eligible(self, event_code: str) -> bool:
        return bool(self.active and self.consent_given and self.matches_event(event_code))


class DeliveryRecord(Base):
    """Dispatch ledger entry, one row per (subscription, event) pair.

    The unique constraint on the pair is the idempotence boundary: a
    worker must insert the ``pending`` row before sending, and a worker
    that loses the insert race treats the pair as already handled.
    """

    __tablename__ = "delivery_records"
    __table_args__ = (
        UniqueConstraint("subscription_id", "event_id", name="uq_delivery_records_subscription_event"),
        Index("ix_delivery_records_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[UUID] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    provider_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    provider_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    retry_exhausted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sql_text("false")
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    subscription: Mapped[Subscription] = relationship(back_populates="delivery_records")
    event: Mapped[Event] = relationship()


class AuditEvent(Base):
    """Append-only trail of consent and delivery lifecycle events."""

    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_subscription_id", "subscription_id"),)

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128), nullable=False, default="system", server_default=sql_text("'system'"),
    )
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivery_record_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    detail: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
