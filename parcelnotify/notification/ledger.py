"""Delivery ledger: the single source of truth for dispatch outcomes.

Claim protocol
--------------
``claim`` inserts a ``pending`` row for the (subscription, event) pair and
commits *before* any channel is called.  The unique constraint on the
pair decides races: the worker whose insert commits owns the pair; every
other worker gets ``DuplicateDispatchSkipped`` and must not send.

Retries re-claim an existing ``failed`` row with a compare-and-set update
(``failed`` → ``pending``), so two workers retrying the same record cannot
both send.

Status transitions::

    pending → sent → delivered
    pending → failed → pending (retry claim) → ...
    pending → throttled

Safety: provider responses are stored, destinations are not.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parcelnotify.audit.audit_log import record_event
from parcelnotify.audit.events import EVENT_DELIVERY_CONFIRMED
from parcelnotify.core.constants import DeliveryStatus
from parcelnotify.db.models import DeliveryRecord, Event, Subscription
from parcelnotify.db.repositories import DeliveryRecordRepository
from parcelnotify.notification.channels.base import DeliveryResult, clip_response
from parcelnotify.notification.errors import DuplicateDispatchSkipped, FailureKind

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Reads and writes ``DeliveryRecord`` rows for one database session."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.records = DeliveryRecordRepository(db_session)

    def get(self, record_id: UUID) -> DeliveryRecord:
        record = self.records.get(record_id)
        if record is None:
            raise KeyError(f"DeliveryRecord {record_id} not found")
        return record

    # -- claims -------------------------------------------------------------

    def claim(self, subscription: Subscription, event: Event) -> DeliveryRecord:
        """Insert and commit the ``pending`` row for the pair.

        Raises
        ------
        DuplicateDispatchSkipped
            If a row for the pair already exists, whatever its status.
        """
        subscription_id, event_id = subscription.id, event.id
        record = DeliveryRecord(
            subscription_id=subscription_id,
            event_id=event_id,
            channel=subscription.channel,
            status=DeliveryStatus.PENDING,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.records.get_for_pair(subscription_id, event_id)
            raise DuplicateDispatchSkipped(
                subscription_id,
                event_id,
                existing.status if existing is not None else "unknown",
                delivery_record_id=existing.id if existing is not None else None,
            ) from None
        return record

    def claim_retry(self, record_id: UUID, now: datetime | None = None) -> bool:
        """Move a scheduled ``failed`` record back to ``pending``.

        *now*, when given, becomes ``last_attempt_at``.

        Returns False when the record is not (or no longer) awaiting a
        retry: already re-claimed by another worker, exhausted, cancelled,
        or permanently failed.
        """
        values = {"status": DeliveryStatus.PENDING, "next_attempt_at": None}
        if now is not None:
            values["last_attempt_at"] = now
        stmt = (
            update(DeliveryRecord)
            .where(
                DeliveryRecord.id == record_id,
                DeliveryRecord.status == DeliveryStatus.FAILED,
                DeliveryRecord.retry_exhausted.is_(False),
                DeliveryRecord.next_attempt_at.is_not(None),
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        claimed = self.db.execute(stmt).rowcount == 1
        self.db.commit()
        return claimed

    # -- outcomes -----------------------------------------------------------

    def mark_sent(self, record: DeliveryRecord, result: DeliveryResult, now: datetime) -> DeliveryRecord:
        record.status = DeliveryStatus.SENT
        record.attempt_count += 1
        record.last_attempt_at = now
        record.sent_at = now
        record.provider_ref = result.provider_ref
        record.provider_response = clip_response(result.provider_response)
        record.failure_kind = None
        record.next_attempt_at = None
        self.db.flush()
        return record

    def record_failure(
        self,
        record: DeliveryRecord,
        kind: FailureKind,
        message: str | None,
        now: datetime,
    ) -> DeliveryRecord:
        record.status = DeliveryStatus.FAILED
        record.attempt_count += 1
        record.last_attempt_at = now
        record.failure_kind = kind
        record.provider_response = clip_response(message)
        record.next_attempt_at = None
        self.db.flush()
        return record

    def mark_throttled(self, record: DeliveryRecord, now: datetime) -> DeliveryRecord:
        record.status = DeliveryStatus.THROTTLED
        record.last_attempt_at = now
        self.db.flush()
        return record

    def mark_delivered(self, record_id: UUID, now: datetime, actor: str = "provider") -> DeliveryRecord:
        """Transition a ``sent`` record to ``delivered``.

        Repeated confirmations of a ``delivered`` record are a no-op.

        Raises
        ------
        KeyError
            If the record does not exist.
        ValueError
            If the record was never sent.
        """
        record = self.get(record_id)
        if record.status == DeliveryStatus.DELIVERED:
            return record
        if record.status != DeliveryStatus.SENT:
            raise ValueError(
                f"Cannot confirm delivery of record {record_id} in status {record.status!r}"
            )
        record.status = DeliveryStatus.DELIVERED
        record.delivered_at = now
        self.db.flush()
        record_event(
            self.db,
            EVENT_DELIVERY_CONFIRMED,
            actor=actor,
            subscription_id=str(record.subscription_id),
            delivery_record_id=str(record.id),
        )
        logger.info("Delivery record %s confirmed delivered", record.id)
        return record

    # -- queries ------------------------------------------------------------

    def has_recent_send(self, subscription_id: UUID, since: datetime) -> bool:
        stmt = (
            select(DeliveryRecord.id)
            .where(
                DeliveryRecord.subscription_id == subscription_id,
                DeliveryRecord.sent_at.is_not(None),
                DeliveryRecord.sent_at >= since,
            )
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def list_failed(self, limit: int = 100, *, stale_before: datetime | None = None) -> list[DeliveryRecord]:
        """Failed records that will not be retried (permanent or exhausted).

        With *stale_before*, ``pending`` rows claimed before that time are
        included too; their worker never recorded an outcome.
        """
        condition = (DeliveryRecord.status == DeliveryStatus.FAILED) & DeliveryRecord.next_attempt_at.is_(None)
        if stale_before is not None:
            claimed_at = func.coalesce(DeliveryRecord.last_attempt_at, DeliveryRecord.created_at)
            condition = or_(
                condition,
                (DeliveryRecord.status == DeliveryStatus.PENDING) & (claimed_at < stale_before),
            )
        stmt = (
            select(DeliveryRecord)
            .where(condition)
            .order_by(DeliveryRecord.last_attempt_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def status_counts(self, *, subscription_id: UUID | None = None) -> dict[str, int]:
        stmt = select(DeliveryRecord.status, func.count()).group_by(DeliveryRecord.status)
        if subscription_id is not None:
            stmt = stmt.where(DeliveryRecord.subscription_id == subscription_id)
        return {status: count for status, count in self.db.execute(stmt).all()}

    def last_sent_at(self, subscription_id: UUID) -> datetime | None:
        stmt = select(func.max(DeliveryRecord.sent_at)).where(
            DeliveryRecord.subscription_id == subscription_id
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def summary_for_shipment(self, shipment_id: UUID) -> dict[str, dict[str, int]]:
        """Per-channel status counts for every record of a shipment."""
        stmt = (
            select(DeliveryRecord.channel, DeliveryRecord.status, func.count())
            .join(Subscription, DeliveryRecord.subscription_id == Subscription.id)
            .where(Subscription.shipment_id == shipment_id)
            .group_by(DeliveryRecord.channel, DeliveryRecord.status)
        )
        summary: dict[str, dict[str, int]] = {}
        for channel, status, count in self.db.execute(stmt).all():
            summary.setdefault(channel, {})[status] = count
        return summary
