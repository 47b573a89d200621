#!/usr/bin/env python3
"""Seed demo data: 2 shipments, their events, and 4 subscriptions.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py
"""
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from parcelnotify.core.security import SecurityService
from parcelnotify.core.settings import get_settings
from parcelnotify.db.base import Base
from parcelnotify.db.models import Event, Shipment
from parcelnotify.subscriptions.registry import SubscriptionRegistry


def seed(session: Session) -> None:
    """Insert demo shipments, events and consented subscriptions."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    registry = SubscriptionRegistry(
        session,
        SecurityService.from_settings(settings),
        default_phone_region=settings.default_phone_region,
    )

    demo_shipments = [
        # (tracking number, status, locale, event codes)
        ("TH1234567890", "InTransit", "th", ["Created", "PickedUp", "InTransit"]),
        ("TH0987654321", "OutForDelivery", "en", ["Created", "PickedUp", "AtHub", "OutForDelivery"]),
    ]
    shipments: list[Shipment] = []
    event_count = 0
    for tracking_number, status, locale, codes in demo_shipments:
        shipment = Shipment(
            tracking_number=tracking_number,
            current_status=status,
            service_type="Standard",
            estimated_delivery=now + timedelta(days=2),
            locale=locale,
        )
        session.add(shipment)
        session.flush()
        for offset, code in enumerate(codes):
            session.add(
                Event(
                    shipment_id=shipment.id,
                    event_code=code,
                    description=f"Demo event {code}",
                    occurred_at=now - timedelta(hours=len(codes) - offset),
                    facility="Bangkok Distribution Center",
                    location="Bangkok",
                )
            )
            event_count += 1
        shipments.append(shipment)
    session.flush()

    demo_subscriptions = [
        # (shipment index, channel, destination, event filter)
        (0, "email", "customer@example.com", None),
        (0, "sms", "0812345678", ["OutForDelivery", "Delivered"]),
        (1, "chat", "U4af4980629", None),
        (1, "webhook", "https://merchant.example.com/hooks/tracking", None),
    ]
    for index, channel, destination, event_filter in demo_subscriptions:
        registry.subscribe(
            shipments[index].id,
            channel,
            destination,
            event_filter=event_filter,
            consent_given=True,
            consent_source_ip="127.0.0.1",
            actor="demo-seed",
        )

    session.commit()
    print(
        f"Seeded {len(shipments)} Shipments, {event_count} Events, "
        f"{len(demo_subscriptions)} Subscriptions."
    )


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session)


if __name__ == "__main__":
    main()
