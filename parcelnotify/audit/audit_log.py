"""Append-only audit logger.

Provides ``record_event()`` to persist ``AuditEvent`` rows for consent
and delivery lifecycle changes.

Safety: destinations and unsubscribe tokens are never written to the
trail or the log; only ids and the event type are kept, plus the actor.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from parcelnotify.audit.events import VALID_EVENT_TYPES
from parcelnotify.db.models import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db_session: Session,
    event_type: str,
    actor: str = "system",
    subscription_id: str | None = None,
    delivery_record_id: str | None = None,
    detail: dict | None = None,
) -> AuditEvent:
    """Create and persist an ``AuditEvent``.

    Raises ``ValueError`` for invalid inputs.  Flushes but does **not**
    commit; the caller controls the transaction boundary.
    """
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )

    if not actor or not actor.strip():
        raise ValueError("actor must be a non-empty string")

    event = AuditEvent(
        event_type=event_type,
        actor=actor,
        subscription_id=subscription_id,
        delivery_record_id=delivery_record_id,
        detail=detail,
    )
    db_session.add(event)
    db_session.flush()

    logger.info("Audit event recorded: type=%s actor=%s", event_type, actor)
    return event


def get_subscription_history(
    db_session: Session,
    subscription_id: str,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows for *subscription_id*, ordered by timestamp."""
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.subscription_id == subscription_id)
        .order_by(AuditEvent.timestamp.asc(), AuditEvent.audit_event_id)
    )
    return list(db_session.execute(stmt).scalars().all())


def get_events_by_type(
    db_session: Session,
    event_type: str,
) -> list[AuditEvent]:
    """Return all ``AuditEvent`` rows of *event_type*, ordered by timestamp."""
    if event_type not in VALID_EVENT_TYPES:
        raise ValueError(
            f"Invalid event_type {event_type!r}; "
            f"must be one of {sorted(VALID_EVENT_TYPES)}"
        )
    stmt = (
        select(AuditEvent)
        .where(AuditEvent.event_type == event_type)
        .order_by(AuditEvent.timestamp.asc())
    )
    return list(db_session.execute(stmt).scalars().all())
