"""NotificationService: event → eligible subscriptions → sends → ledger.

Per event, work runs in three phases:

1. **Prepare** (sequential, database): claim the ledger row, apply
   throttling, resolve locale and render.  Failures here are recorded
   against that subscription only.
2. **Send** (bounded thread pool, no database access): each channel call
   has its own timeout, and a slow transport only occupies one worker.
3. **Record** (sequential, database): persist each outcome, hand failures
   to the retry scheduler, commit, then enqueue scheduled retries.

A failure for one subscription never aborts the others; every
subscription yields a ``DispatchOutcome``.

Safety: destinations and unsubscribe tokens are never logged.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from parcelnotify.core.constants import CRITICAL_EVENT_CODES, DeliveryStatus
from parcelnotify.core.settings import Settings, get_settings
from parcelnotify.db.models import DeliveryRecord, Event, Shipment, Subscription
from parcelnotify.db.repositories import SubscriptionRepository
from parcelnotify.dispatch.retry import RetryPolicy, RetryScheduler
from parcelnotify.notification.channels.base import Channel, DeliveryResult
from parcelnotify.notification.errors import (
    ConsentRequiredError,
    DuplicateDispatchSkipped,
    FailureKind,
    TemplateNotFoundError,
)
from parcelnotify.notification.ledger import DeliveryLedger
from parcelnotify.notification.template_manager import RenderedMessage, TemplateManager

logger = logging.getLogger(__name__)

_THAI_SCRIPT = re.compile(r"[\u0E00-\u0E7F]")

SKIP_DUPLICATE = "duplicate"
SKIP_THROTTLED = "throttled"
SKIP_NOT_RETRYABLE = "not_retryable"


@dataclass
class DispatchOutcome:
    """Result of dispatching one event to one subscription."""

    subscription_id: UUID
    event_id: UUID
    channel: str
    status: str  # "sent" | "failed" | "skipped"
    delivery_record_id: UUID | None = None
    provider_ref: str | None = None
    failure_kind: FailureKind | None = None
    skip_reason: str | None = None
    error_message: str | None = None
    next_attempt_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "subscription_id": str(self.subscription_id),
            "event_id": str(self.event_id),
            "channel": self.channel,
            "status": self.status,
            "delivery_record_id": str(self.delivery_record_id) if self.delivery_record_id else None,
            "provider_ref": self.provider_ref,
            "failure_kind": str(self.failure_kind) if self.failure_kind else None,
            "skip_reason": self.skip_reason,
            "error_message": self.error_message,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }


@dataclass
class _SendJob:
    subscription: Subscription
    event: Event
    record: DeliveryRecord
    channel: Channel
    destination: str
    message: RenderedMessage


def detect_locale(destination: str | None, default: str) -> str:
    """Return ``"th"`` when *destination* contains Thai script, else *default*."""
    if destination and _THAI_SCRIPT.search(destination):
        return "th"
    return default


class NotificationService:
    """Orchestrates dispatch for one unit of work (one database session).

    Parameters
    ----------
    db_session:
        Session used for subscriptions and the ledger.  The service
        commits at each ledger step.
    channels:
        Transport per channel name; built once and shared across
        services.
    templates:
        Shared ``TemplateManager``.
    settings:
        Defaults to ``get_settings()``.
    retry_scheduler:
        Shared scheduler; defaults to one built from settings with no
        queue attached.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db_session: Session,
        channels: Mapping[str, Channel],
        templates: TemplateManager,
        settings: Settings | None = None,
        *,
        retry_scheduler: RetryScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db_session
        self.channels = channels
        self.templates = templates
        self.settings = settings or get_settings()
        self.retry_scheduler = retry_scheduler or RetryScheduler(RetryPolicy.from_settings(self.settings))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.ledger = DeliveryLedger(db_session)
        self.subscriptions = SubscriptionRepository(db_session)

    # -- public API ---------------------------------------------------------

    def notify_for_event(self, event: Event) -> list[DispatchOutcome]:
        """Dispatch *event* to every eligible subscription of its shipment."""
        event_id = event.id
        candidates = [
            subscription
            for subscription in self.subscriptions.list_consented(event.shipment_id)
            if subscription.matches_event(event.event_code)
        ]
        logger.info(
            "Dispatching event %s (%s) to %d eligible subscriptions",
            event_id, event.event_code, len(candidates),
        )

        outcomes: list[DispatchOutcome | None] = []
        jobs: list[tuple[int, _SendJob]] = []
        for subscription in candidates:
            prepared = self._prepare(subscription, event, throttle=True)
            if isinstance(prepared, _SendJob):
                jobs.append((len(outcomes), prepared))
                outcomes.append(None)
            else:
                outcomes.append(prepared)

        results = self._send_all([job for _, job in jobs])
        for (index, job), result in zip(jobs, results):
            outcomes[index] = self._record(job, result)

        summary = {"sent": 0, "failed": 0, "skipped": 0}
        for outcome in outcomes:
            summary[outcome.status] += 1
        logger.info(
            "Event %s dispatch complete: sent=%d failed=%d skipped=%d",
            event_id, summary["sent"], summary["failed"], summary["skipped"],
        )
        return outcomes

    def send_notification(self, subscription: Subscription, event: Event) -> DispatchOutcome:
        """Send *event* to one subscription, bypassing event-filter matching.

        Still honours consent and the idempotence ledger.  Throttling is
        not applied to direct sends.

        Raises
        ------
        ConsentRequiredError
            If the subscription has no recorded consent or was deactivated.
        """
        if not (subscription.active and subscription.consent_given):
            raise ConsentRequiredError(
                f"Subscription {subscription.id} has no active consent"
            )
        prepared = self._prepare(subscription, event, throttle=False)
        if not isinstance(prepared, _SendJob):
            return prepared
        return self._record(prepared, self._safe_send(prepared))

    def retry_delivery(self, record_id: UUID) -> DispatchOutcome:
        """Run a scheduled retry for a failed ledger record.

        Raises ``KeyError`` if the record does not exist.
        """
        record = self.ledger.get(record_id)
        if not self.ledger.claim_retry(record.id, self._clock()):
            logger.info("Delivery record %s is not awaiting a retry; skipping", record_id)
            return self._skipped(record.subscription, record.event, SKIP_NOT_RETRYABLE, record.id)

        subscription, event = record.subscription, record.event
        if not (subscription.active and subscription.consent_given):
            return self._fail(
                subscription, event, record,
                FailureKind.CONSENT_REQUIRED, "Consent withdrawn before retry",
            )
        prepared = self._build_job(subscription, event, record)
        if not isinstance(prepared, _SendJob):
            return prepared
        return self._record(prepared, self._safe_send(prepared))

    def confirm_delivery(self, record_id: UUID, actor: str = "provider") -> DeliveryRecord:
        """Inbound delivery confirmation: ``sent`` → ``delivered`` (idempotent)."""
        record = self.ledger.mark_delivered(record_id, self._clock(), actor=actor)
        self.db.commit()
        return record

    def refresh_delivery_status(self, record_id: UUID) -> dict:
        """Poll the provider for a ``sent`` record and promote it when delivered."""
        record = self.ledger.get(record_id)
        if record.status != DeliveryStatus.SENT or not record.provider_ref:
            return {"status": record.status, "provider_ref": record.provider_ref}
        channel = self.channels.get(record.channel)
        if channel is None:
            return {"status": "unknown", "provider_ref": record.provider_ref}

        status = channel.check_delivery_status(record.provider_ref)
        if status.get("status") == DeliveryStatus.DELIVERED:
            self.confirm_delivery(record.id, actor="status_poll")
        return status

    # -- locale and variables -----------------------------------------------

    def resolve_locale(self, subscription: Subscription, shipment: Shipment | None) -> str:
        if subscription.locale:
            return subscription.locale
        if shipment is not None and shipment.locale:
            return shipment.locale
        return detect_locale(subscription.destination, self.settings.default_locale)

    def build_variables(self, subscription: Subscription, event: Event) -> dict[str, object]:
        shipment = subscription.shipment
        eta = shipment.estimated_delivery if shipment is not None else None
        return {
            "tracking_number": shipment.tracking_number if shipment is not None else "",
            "current_status": (shipment.current_status if shipment is not None else None) or event.event_code,
            "event_code": event.event_code,
            "event_description": event.description,
            "event_time": event.occurred_at,
            "facility": event.facility,
            "location": event.location,
            "eta": eta.strftime("%Y-%m-%d") if eta else None,
            "service_type": shipment.service_type if shipment is not None else None,
            "unsubscribe_url": (
                f"{self.settings.public_base_url.rstrip('/')}/unsubscribe/{subscription.unsubscribe_token}"
            ),
        }

    # -- phases -------------------------------------------------------------

    def _prepare(
        self, subscription: Subscription, event: Event, *, throttle: bool
    ) -> _SendJob | DispatchOutcome:
        try:
            record = self.ledger.claim(subscription, event)
        except DuplicateDispatchSkipped as exc:
            logger.info(
                "Subscription %s / event %s already handled (%s); skipping",
                exc.subscription_id, exc.event_id, exc.status,
            )
            return self._skipped(subscription, event, SKIP_DUPLICATE, exc.delivery_record_id)

        try:
            if throttle and self._is_throttled(subscription, event):
                self.ledger.mark_throttled(record, self._clock())
                self.db.commit()
                logger.info("Subscription %s throttled for event %s", subscription.id, event.id)
                return self._skipped(subscription, event, SKIP_THROTTLED, record.id)
            return self._build_job(subscription, event, record)
        except Exception as exc:
            logger.exception("Unexpected error preparing dispatch for subscription %s", subscription.id)
            self.db.rollback()
            return self._fail(subscription, event, record, FailureKind.INTERNAL_ERROR, type(exc).__name__)

    def _build_job(
        self, subscription: Subscription, event: Event, record: DeliveryRecord
    ) -> _SendJob | DispatchOutcome:
        channel = self.channels.get(subscription.channel)
        if channel is None:
            return self._fail(
                subscription, event, record, FailureKind.CHANNEL_UNAVAILABLE,
                f"No transport configured for channel {subscription.channel!r}",
            )
        try:
            locale = self.resolve_locale(subscription, subscription.shipment)
            template = self.templates.resolve(subscription.channel, event.event_code, locale)
        except TemplateNotFoundError as exc:
            return self._fail(subscription, event, record, exc.failure_kind, str(exc))

        message = self.templates.render(template, self.build_variables(subscription, event))
        return _SendJob(
            subscription=subscription,
            event=event,
            record=record,
            channel=channel,
            destination=subscription.destination,
            message=message,
        )

    def _send_all(self, jobs: list[_SendJob]) -> list[DeliveryResult]:
        workers = min(len(jobs), max(self.settings.dispatch_max_workers, 1))
        if workers <= 1:
            return [self._safe_send(job) for job in jobs]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch-send") as pool:
            return list(pool.map(self._safe_send, jobs))

    def _safe_send(self, job: _SendJob) -> DeliveryResult:
        try:
            return job.channel.send(job.destination, job.message)
        except Exception as exc:
            logger.exception("Channel %s raised during send", job.channel.name)
            return DeliveryResult.failed(FailureKind.INTERNAL_ERROR, type(exc).__name__)

    def _record(self, job: _SendJob, result: DeliveryResult) -> DispatchOutcome:
        if not result.success:
            return self._fail(
                job.subscription, job.event, job.record,
                result.error_kind or FailureKind.INTERNAL_ERROR,
                result.error_message or result.provider_response,
            )
        self.ledger.mark_sent(job.record, result, self._clock())
        self.db.commit()
        logger.info(
            "Notification sent: subscription=%s event=%s channel=%s record=%s",
            job.subscription.id, job.event.id, job.record.channel, job.record.id,
        )
        return DispatchOutcome(
            subscription_id=job.subscription.id,
            event_id=job.event.id,
            channel=job.record.channel,
            status=DeliveryStatus.SENT.value,
            delivery_record_id=job.record.id,
            provider_ref=result.provider_ref,
        )

    def _fail(
        self,
        subscription: Subscription,
        event: Event,
        record: DeliveryRecord,
        kind: FailureKind,
        message: str | None,
    ) -> DispatchOutcome:
        now = self._clock()
        self.ledger.record_failure(record, kind, message, now)
        next_attempt_at = self.retry_scheduler.evaluate(self.db, record, kind, now)
        self.db.commit()
        if next_attempt_at is not None:
            self.retry_scheduler.schedule(record.id, next_attempt_at)
        return DispatchOutcome(
            subscription_id=subscription.id,
            event_id=event.id,
            channel=record.channel,
            status=DeliveryStatus.FAILED.value,
            delivery_record_id=record.id,
            failure_kind=kind,
            error_message=message,
            next_attempt_at=next_attempt_at,
        )

    def _skipped(
        self, subscription: Subscription, event: Event, reason: str, record_id: UUID | None
    ) -> DispatchOutcome:
        return DispatchOutcome(
            subscription_id=subscription.id,
            event_id=event.id,
            channel=subscription.channel,
            status="skipped",
            delivery_record_id=record_id,
            skip_reason=reason,
        )

    def _is_throttled(self, subscription: Subscription, event: Event) -> bool:
        window = self.settings.throttle_window_minutes
        if window <= 0 or event.event_code in CRITICAL_EVENT_CODES:
            return False
        since = self._clock() - timedelta(minutes=window)
        return self.ledger.has_recent_send(subscription.id, since)
