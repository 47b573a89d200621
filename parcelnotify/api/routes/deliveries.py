"""Delivery ledger routes.

POST /deliveries/confirm                    provider delivery callback (sent → delivered)
GET  /deliveries?tracking_number=           per-channel tracking summary for a shipment
GET  /deliveries/failed                     records that will not be retried, plus stale pending claims
POST /deliveries/{id}/refresh-status        poll the provider for delivery status
POST /deliveries/cancel-retries             stop further retries for a shipment
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from parcelnotify.api.deps import get_db, get_notification_service, get_retry_scheduler
from parcelnotify.api.serializers import serialize_record
from parcelnotify.core.settings import get_settings
from parcelnotify.db.repositories import ShipmentRepository
from parcelnotify.dispatch.retry import RetryScheduler
from parcelnotify.notification.ledger import DeliveryLedger
from parcelnotify.notification.service import NotificationService

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class ConfirmBody(BaseModel):
    delivery_record_id: UUID


class CancelRetriesBody(BaseModel):
    tracking_number: str


def _shipment(db: Session, tracking_number: str):
    shipment = ShipmentRepository(db).get_by_tracking_number(tracking_number)
    if shipment is None:
        raise HTTPException(status_code=404, detail=f"Shipment {tracking_number} not found")
    return shipment


@router.post("/confirm", summary="Delivery confirmation callback")
def confirm_delivery(body: ConfirmBody, service: NotificationService = Depends(get_notification_service)):
    try:
        record = service.confirm_delivery(body.delivery_record_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"DeliveryRecord {body.delivery_record_id} not found")
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return serialize_record(record)


@router.get("", summary="Delivery tracking summary for a shipment")
def tracking_summary(tracking_number: str = Query(...), db: Session = Depends(get_db)):
    shipment = _shipment(db, tracking_number)
    ledger = DeliveryLedger(db)
    return {
        "tracking_number": shipment.tracking_number,
        "by_channel": ledger.summary_for_shipment(shipment.id),
        "deliveries": [serialize_record(r) for r in ledger.records.list_for_shipment(shipment.id)],
    }


@router.get("/failed", summary="Failed deliveries that will not be retried")
def failed_deliveries(limit: int = Query(100, ge=1, le=500), db: Session = Depends(get_db)):
    stale_before = datetime.now(timezone.utc) - timedelta(minutes=get_settings().pending_stale_minutes)
    records = DeliveryLedger(db).list_failed(limit=limit, stale_before=stale_before)
    return [serialize_record(r) for r in records]


@router.post("/{record_id}/refresh-status", summary="Poll the provider for delivery status")
def refresh_status(record_id: UUID, service: NotificationService = Depends(get_notification_service)):
    try:
        return service.refresh_delivery_status(record_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"DeliveryRecord {record_id} not found")


@router.post("/cancel-retries", summary="Stop further retries for a shipment")
def cancel_retries(
    body: CancelRetriesBody,
    db: Session = Depends(get_db),
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
):
    shipment = _shipment(db, body.tracking_number)
    return {"tracking_number": shipment.tracking_number, "cancelled": scheduler.cancel_for_shipment(db, shipment.id)}
