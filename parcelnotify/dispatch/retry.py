"""Retry policy and scheduler.

This is the only place that decides retry versus give-up.  The decision
uses the ``FailureKind`` recorded for the attempt:

- permanent kind            → no retry, record stays ``failed``
- transient kind, attempts
  below ``max_attempts``    → ``next_attempt_at = now + backoff``
- transient kind, attempts
  at ``max_attempts``       → ``retry_exhausted``; logged at ERROR and
                              written to the audit trail

Backoff is ``base_delay × 2^(attempt-1)`` capped at ``max_delay``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from parcelnotify.audit.audit_log import record_event
from parcelnotify.audit.events import EVENT_DELIVERY_EXHAUSTED
from parcelnotify.core.constants import DeliveryStatus
from parcelnotify.db.models import DeliveryRecord, Subscription
from parcelnotify.dispatch.queue import DispatchQueue, RetryDeliveryTask
from parcelnotify.notification.errors import TRANSIENT_FAILURE_KINDS, FailureKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 30.0
    max_delay_s: float = 3600.0

    def is_retryable(self, kind: FailureKind | str | None) -> bool:
        return kind in TRANSIENT_FAILURE_KINDS

    def delay_for(self, attempt: int) -> timedelta:
        """Backoff before the attempt following attempt number *attempt*."""
        seconds = self.base_delay_s * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_delay_s))

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        )


class RetryScheduler:
    """Applies a ``RetryPolicy`` to failed ledger records.

    Parameters
    ----------
    policy:
        Backoff and attempt cap.
    queue:
        Optional dispatch queue.  When set, scheduled retries are
        enqueued with their not-before time; without one they are picked
        up later by ``requeue_scheduled``.
    """

    def __init__(self, policy: RetryPolicy | None = None, queue: DispatchQueue | None = None) -> None:
        self.policy = policy or RetryPolicy()
        self.queue = queue

    def evaluate(
        self,
        db_session: Session,
        record: DeliveryRecord,
        kind: FailureKind | str,
        now: datetime,
    ) -> datetime | None:
        """Decide the fate of a record that has just failed.

        Returns the time of the next attempt, or None when the record
        will not be retried.  Flushes but does not commit.
        """
        if not self.policy.is_retryable(kind):
            record.next_attempt_at = None
            db_session.flush()
            logger.error(
                "Delivery record %s failed permanently (%s); not retrying", record.id, kind
            )
            return None

        if record.attempt_count >= self.policy.max_attempts:
            record.next_attempt_at = None
            record.retry_exhausted = True
            db_session.flush()
            record_event(
                db_session,
                EVENT_DELIVERY_EXHAUSTED,
                subscription_id=str(record.subscription_id),
                delivery_record_id=str(record.id),
                detail={"attempts": record.attempt_count, "failure_kind": str(kind)},
            )
            logger.error(
                "Delivery record %s exhausted %d attempts (%s)", record.id, record.attempt_count, kind
            )
            return None

        next_attempt_at = now + self.policy.delay_for(record.attempt_count)
        record.next_attempt_at = next_attempt_at
        db_session.flush()
        logger.warning(
            "Delivery record %s failed (%s), attempt %d/%d; retry at %s",
            record.id, kind, record.attempt_count, self.policy.max_attempts,
            next_attempt_at.isoformat(),
        )
        return next_attempt_at

    def schedule(self, record_id: UUID, next_attempt_at: datetime) -> None:
        """Enqueue a retry task; call only after the record's state is committed."""
        if self.queue is not None:
            self.queue.enqueue_once(RetryDeliveryTask(record_id), not_before=next_attempt_at)

    def requeue_scheduled(self, db_session: Session) -> int:
        """Enqueue every scheduled retry not already waiting on the queue.

        Each task keeps its ``next_attempt_at`` as not-before time, so
        retries that are not due yet survive a restart too.  Returns how
        many tasks were added.
        """
        if self.queue is None:
            return 0
        stmt = select(DeliveryRecord.id, DeliveryRecord.next_attempt_at).where(
            DeliveryRecord.status == DeliveryStatus.FAILED,
            DeliveryRecord.retry_exhausted.is_(False),
            DeliveryRecord.next_attempt_at.is_not(None),
        )
        added = 0
        for record_id, next_attempt_at in db_session.execute(stmt).all():
            if self.queue.enqueue_once(RetryDeliveryTask(record_id), not_before=next_attempt_at):
                added += 1
        if added:
            logger.info("Re-enqueued %d scheduled retries", added)
        return added

    def cancel_for_shipment(self, db_session: Session, shipment_id: UUID) -> int:
        """Stop further retries for a shipment's failed records.

        Tasks already queued become no-ops because the retry claim
        requires a scheduled ``next_attempt_at``.  Flushes but does not
        commit.
        """
        subscription_ids = select(Subscription.id).where(Subscription.shipment_id == shipment_id)
        stmt = (
            update(DeliveryRecord)
            .where(
                DeliveryRecord.subscription_id.in_(subscription_ids),
                DeliveryRecord.status == DeliveryStatus.FAILED,
                DeliveryRecord.next_attempt_at.is_not(None),
            )
            .values(next_attempt_at=None)
            .execution_options(synchronize_session="fetch")
        )
        cancelled = db_session.execute(stmt).rowcount
        db_session.flush()
        logger.info("Cancelled %d pending retries for shipment %s", cancelled, shipment_id)
        return cancelled
