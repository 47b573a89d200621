"""Notification dispatch routes.

POST /notifications/send        ad-hoc send of one event to one subscription
POST /notifications/dispatch    enqueue an event for asynchronous dispatch
"""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from parcelnotify.api.deps import get_db, get_dispatch_queue, get_notification_service
from parcelnotify.db.models import Event, Subscription
from parcelnotify.dispatch.queue import DispatchQueue, NotifyEventTask
from parcelnotify.notification.errors import ConsentRequiredError
from parcelnotify.notification.service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


class SendBody(BaseModel):
    subscription_id: UUID
    event_id: UUID


class DispatchBody(BaseModel):
    event_id: UUID


@router.post("/send", summary="Send one event to one subscription")
def send_notification(
    body: SendBody,
    db: Session = Depends(get_db),
    service: NotificationService = Depends(get_notification_service),
):
    subscription = db.get(Subscription, body.subscription_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail=f"Subscription {body.subscription_id} not found")
    event = db.get(Event, body.event_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Event {body.event_id} not found")
    try:
        outcome = service.send_notification(subscription, event)
    except ConsentRequiredError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return outcome.to_dict()


@router.post("/dispatch", status_code=202, summary="Queue an event for dispatch")
def dispatch_event(
    body: DispatchBody,
    db: Session = Depends(get_db),
    queue: DispatchQueue = Depends(get_dispatch_queue),
):
    if db.get(Event, body.event_id) is None:
        raise HTTPException(status_code=404, detail=f"Event {body.event_id} not found")
    queue.enqueue(NotifyEventTask(body.event_id))
    return {"event_id": str(body.event_id), "queued": True}
