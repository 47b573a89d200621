"""Dispatch worker: drains the queue, one database session per task.

A failing task is logged and rolled back; it never stops the worker.
Retries the task schedules go back onto the same queue through the
shared ``RetryScheduler``.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from parcelnotify.core.settings import Settings, get_settings
from parcelnotify.db.models import Event
from parcelnotify.dispatch.queue import DispatchQueue, NotifyEventTask, RetryDeliveryTask
from parcelnotify.dispatch.retry import RetryPolicy, RetryScheduler
from parcelnotify.notification.channels.base import Channel
from parcelnotify.notification.service import DispatchOutcome, NotificationService
from parcelnotify.notification.template_manager import TemplateManager

logger = logging.getLogger(__name__)


class DispatchWorker:
    def __init__(
        self,
        queue: DispatchQueue,
        session_factory: Callable[[], Session],
        channels: Mapping[str, Channel],
        templates: TemplateManager,
        settings: Settings | None = None,
        *,
        retry_scheduler: RetryScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.queue = queue
        self.session_factory = session_factory
        self.channels = channels
        self.templates = templates
        self.settings = settings or get_settings()
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            RetryPolicy.from_settings(self.settings), queue=queue
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def service_for(self, db_session: Session) -> NotificationService:
        return NotificationService(
            db_session,
            self.channels,
            self.templates,
            self.settings,
            retry_scheduler=self.retry_scheduler,
            clock=self._clock,
        )

    def handle(self, db_session: Session, task) -> list[DispatchOutcome]:
        service = self.service_for(db_session)
        if isinstance(task, NotifyEventTask):
            event = db_session.get(Event, task.event_id)
            if event is None:
                logger.warning("Event %s not found; dropping dispatch task", task.event_id)
                return []
            return service.notify_for_event(event)
        if isinstance(task, RetryDeliveryTask):
            return [service.retry_delivery(task.delivery_record_id)]
        raise TypeError(f"Unsupported dispatch task {type(task).__name__}")

    def run_once(self, now: datetime | None = None) -> int:
        """Process every task due at *now*; return how many were handled."""
        now = now or self._clock()
        handled = 0
        while True:
            task = self.queue.pop_due(now)
            if task is None:
                return handled
            handled += 1
            db_session = self.session_factory()
            try:
                self.handle(db_session, task)
            except Exception:
                db_session.rollback()
                logger.exception("Dispatch task %r failed", task)
            finally:
                db_session.close()

    def recover(self) -> int:
        """Enqueue every scheduled retry recorded in the ledger.

        Run at start-up and then every ``dispatch_sweep_interval_s`` so
        retries scheduled before a restart, or by another process, are
        picked up.  Retries already on the queue are not added twice.
        """
        db_session = self.session_factory()
        try:
            return self.retry_scheduler.requeue_scheduled(db_session)
        finally:
            db_session.close()

    def run_forever(self) -> None:
        self.recover()
        last_sweep = time.monotonic()
        logger.info("Dispatch worker started")
        while not self._stop.is_set():
            if time.monotonic() - last_sweep >= self.settings.dispatch_sweep_interval_s:
                try:
                    self.recover()
                except Exception:
                    logger.exception("Retry sweep failed")
                last_sweep = time.monotonic()
            self.run_once()
            self.queue.wait(self.settings.dispatch_poll_interval_s)
        logger.info("Dispatch worker stopped")

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="dispatch-worker", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self.queue.wake()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
