"""FastAPI dependency injection: database sessions and service factories.

Transports, templates, the dispatch queue and the retry scheduler are
process-wide singletons; registries and the notification service are
built per request around the request's session.
"""
from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from parcelnotify.core.security import SecurityService
from parcelnotify.core.settings import get_settings
from parcelnotify.db.session import get_session_factory
from parcelnotify.dispatch.queue import DispatchQueue
from parcelnotify.dispatch.retry import RetryPolicy, RetryScheduler
from parcelnotify.notification.channels import Channel, build_channels
from parcelnotify.notification.service import NotificationService
from parcelnotify.notification.template_manager import TemplateManager
from parcelnotify.subscriptions.registry import SubscriptionRegistry


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_template_manager() -> TemplateManager:
    return TemplateManager.default(get_settings())


@lru_cache(maxsize=1)
def get_channels() -> dict[str, Channel]:
    return build_channels(get_settings())


@lru_cache(maxsize=1)
def get_dispatch_queue() -> DispatchQueue:
    return DispatchQueue()


@lru_cache(maxsize=1)
def get_retry_scheduler() -> RetryScheduler:
    return RetryScheduler(RetryPolicy.from_settings(get_settings()), queue=get_dispatch_queue())


def get_security_service() -> SecurityService:
    return SecurityService.from_settings(get_settings())


def get_subscription_registry(
    db: Session = Depends(get_db),
    security: SecurityService = Depends(get_security_service),
) -> SubscriptionRegistry:
    return SubscriptionRegistry(db, security, default_phone_region=get_settings().default_phone_region)


def get_notification_service(
    db: Session = Depends(get_db),
    channels: dict[str, Channel] = Depends(get_channels),
    templates: TemplateManager = Depends(get_template_manager),
    retry_scheduler: RetryScheduler = Depends(get_retry_scheduler),
) -> NotificationService:
    return NotificationService(db, channels, templates, get_settings(), retry_scheduler=retry_scheduler)
