"""Subscription management routes.

POST   /subscriptions                           opt in (optionally with consent)
GET    /subscriptions?tracking_number=          list a shipment's subscriptions
PATCH  /subscriptions/{id}/preferences          change event filter / locale
POST   /subscriptions/{id}/consent              record fresh consent
DELETE /subscriptions/{id}                      deactivate
GET    /subscriptions/{id}/analytics            delivery statistics + history

Destinations are masked in every response.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from parcelnotify.api.deps import get_db, get_subscription_registry
from parcelnotify.api.serializers import serialize_record, serialize_subscription
from parcelnotify.db.repositories import DeliveryRecordRepository, ShipmentRepository
from parcelnotify.subscriptions.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SubscribeBody(BaseModel):
    tracking_number: str
    channel: str
    destination: str
    event_filter: list[str] | None = None
    locale: str | None = None
    consent: bool = False


class PreferencesBody(BaseModel):
    event_filter: list[str] | None = Field(default=None)
    locale: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _shipment_id(db: Session, tracking_number: str) -> UUID:
    shipment = ShipmentRepository(db).get_by_tracking_number(tracking_number)
    if shipment is None:
        raise HTTPException(status_code=404, detail=f"Shipment {tracking_number} not found")
    return shipment.id


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("", status_code=201, summary="Opt in to shipment notifications")
def subscribe(
    body: SubscribeBody,
    request: Request,
    db: Session = Depends(get_db),
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    shipment_id = _shipment_id(db, body.tracking_number)
    try:
        subscription = registry.subscribe(
            shipment_id,
            body.channel,
            body.destination,
            event_filter=body.event_filter,
            locale=body.locale,
            consent_given=body.consent,
            consent_source_ip=_client_ip(request) if body.consent else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_subscription(subscription)


@router.get("", summary="List subscriptions for a shipment")
def list_subscriptions(
    tracking_number: str = Query(...),
    db: Session = Depends(get_db),
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    shipment_id = _shipment_id(db, tracking_number)
    return [serialize_subscription(s) for s in registry.list_for_shipment(shipment_id)]


@router.patch("/{subscription_id}/preferences", summary="Update event preferences")
def update_preferences(
    subscription_id: UUID,
    body: PreferencesBody,
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    try:
        subscription = registry.update_preferences(
            subscription_id, event_filter=body.event_filter, locale=body.locale
        )
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_subscription(subscription)


@router.post("/{subscription_id}/consent", summary="Record fresh consent")
def give_consent(
    subscription_id: UUID,
    request: Request,
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    try:
        subscription = registry.give_consent(subscription_id, source_ip=_client_ip(request))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return serialize_subscription(subscription)


@router.delete("/{subscription_id}", summary="Deactivate a subscription")
def deactivate(
    subscription_id: UUID,
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    try:
        subscription = registry.deactivate(subscription_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    return serialize_subscription(subscription)


@router.get("/{subscription_id}/analytics", summary="Delivery statistics for a subscription")
def analytics(
    subscription_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
):
    try:
        stats = registry.statistics(subscription_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Subscription {subscription_id} not found")
    history = DeliveryRecordRepository(db).list_for_subscription(subscription_id, limit=limit)
    return {**stats, "recent_deliveries": [serialize_record(r) for r in history]}
