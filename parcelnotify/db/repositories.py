from __future__ import annotations

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from parcelnotify.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity

    def delete(self, entity: ModelT) -> None:
        self.db.delete(entity)
        self.db.flush()


class ShipmentRepository(BaseRepository[models.Shipment]):
    model = models.Shipment

    def get_by_tracking_number(self, tracking_number: str) -> models.Shipment | None:
        stmt = select(models.Shipment).where(models.Shipment.tracking_number == tracking_number)
        return self.db.execute(stmt).scalar_one_or_none()


class EventRepository(BaseRepository[models.Event]):
    model = models.Event


class SubscriptionRepository(BaseRepository[models.Subscription]):
    model = models.Subscription

    def get_by_token(self, token: str) -> models.Subscription | None:
        stmt = select(models.Subscription).where(models.Subscription.unsubscribe_token == token)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_existing(
        self, shipment_id: UUID, channel: str, destination_hash: str
    ) -> models.Subscription | None:
        stmt = select(models.Subscription).where(
            models.Subscription.shipment_id == shipment_id,
            models.Subscription.channel == channel,
            models.Subscription.destination_hash == destination_hash,
        )
        return self.db.execute(stmt).scalars().first()

    def list_for_shipment(self, shipment_id: UUID, *, active_only: bool = False) -> list[models.Subscription]:
        stmt = select(models.Subscription).where(models.Subscription.shipment_id == shipment_id)
        if active_only:
            stmt = stmt.where(models.Subscription.active.is_(True))
        stmt = stmt.order_by(models.Subscription.created_at.asc())
        return list(self.db.execute(stmt).scalars().all())

    def list_consented(self, shipment_id: UUID) -> list[models.Subscription]:
        """Active subscriptions with consent; event filtering is left to the caller."""
        stmt = (
            select(models.Subscription)
            .where(
                models.Subscription.shipment_id == shipment_id,
                models.Subscription.active.is_(True),
                models.Subscription.consent_given.is_(True),
            )
            .order_by(models.Subscription.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class DeliveryRecordRepository(BaseRepository[models.DeliveryRecord]):
    model = models.DeliveryRecord

    def get_for_pair(self, subscription_id: UUID, event_id: UUID) -> models.DeliveryRecord | None:
        stmt = select(models.DeliveryRecord).where(
            models.DeliveryRecord.subscription_id == subscription_id,
            models.DeliveryRecord.event_id == event_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_subscription(self, subscription_id: UUID, limit: int = 20) -> list[models.DeliveryRecord]:
        stmt = (
            select(models.DeliveryRecord)
            .where(models.DeliveryRecord.subscription_id == subscription_id)
            .order_by(models.DeliveryRecord.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_shipment(self, shipment_id: UUID) -> list[models.DeliveryRecord]:
        stmt = (
            select(models.DeliveryRecord)
            .join(models.Subscription, models.DeliveryRecord.subscription_id == models.Subscription.id)
            .where(models.Subscription.shipment_id == shipment_id)
            .order_by(models.DeliveryRecord.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())


class AuditEventRepository(BaseRepository[models.AuditEvent]):
    model = models.AuditEvent
