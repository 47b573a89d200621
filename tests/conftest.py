import os
import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from parcelnotify.core.constants import ChannelType
from parcelnotify.core.security import SecurityService
from parcelnotify.core.settings import Settings
from parcelnotify.db.base import Base
from parcelnotify.db.models import Event, Shipment
from parcelnotify.notification.channels.base import Channel, DeliveryResult
from parcelnotify.notification.template_manager import TemplateManager
from parcelnotify.subscriptions.registry import SubscriptionRegistry

TEST_SALT = "test-salt"
TEST_WEBHOOK_SECRET = "test-webhook-secret"


class FakeChannel(Channel):
    """In-memory transport.  Queued results are returned in order, then success."""

    def __init__(self, name: str, results=None) -> None:
        self.name = name
        self.sent: list[tuple[str, object]] = []
        self.results = list(results or [])
        self.status_reports: dict[str, dict] = {}
        self._lock = threading.Lock()

    def _deliver(self, destination, message):
        with self._lock:
            self.sent.append((destination, message))
            result = self.results.pop(0) if self.results else None
            count = len(self.sent)
        if isinstance(result, BaseException):
            raise result
        if result is None:
            result = DeliveryResult(success=True, provider_ref=f"{self.name}-{count}")
        return result

    def check_delivery_status(self, provider_ref):
        return self.status_reports.get(provider_ref, {"status": "sent", "provider_ref": provider_ref})


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from parcelnotify.core.settings import get_settings
    from parcelnotify.db.session import reset_engine

    get_settings.cache_clear()
    reset_engine()

    from parcelnotify.main import app

    with TestClient(app) as test_client:
        yield test_client

    get_settings.cache_clear()
    reset_engine()
    os.environ.pop("DATABASE_URL", None)


@pytest.fixture()
def db_session():
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+pysqlite:///:memory:",
        PUBLIC_BASE_URL="https://track.example.com",
        HASH_SALT=TEST_SALT,
        WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        DISPATCH_MAX_WORKERS=1,
        THROTTLE_WINDOW_MINUTES=120,
        RETRY_MAX_ATTEMPTS=5,
        RETRY_BASE_DELAY_S=30,
        RETRY_MAX_DELAY_S=3600,
    )


@pytest.fixture()
def templates(settings) -> TemplateManager:
    return TemplateManager.default(settings)


@pytest.fixture()
def channels() -> dict[str, FakeChannel]:
    return {channel.value: FakeChannel(channel.value) for channel in ChannelType}


@pytest.fixture()
def security() -> SecurityService:
    return SecurityService(hash_salt=TEST_SALT)


@pytest.fixture()
def registry(db_session, security) -> SubscriptionRegistry:
    return SubscriptionRegistry(db_session, security)


@pytest.fixture()
def make_shipment(db_session):
    def _make(tracking_number: str = "TH1234567890", **kwargs) -> Shipment:
        fields = {
            "current_status": "InTransit",
            "service_type": "Standard",
            "estimated_delivery": datetime(2026, 10, 21, 12, 0, tzinfo=timezone.utc),
        }
        fields.update(kwargs)
        shipment = Shipment(tracking_number=tracking_number, **fields)
        db_session.add(shipment)
        db_session.commit()
        return shipment

    return _make


@pytest.fixture()
def make_event(db_session):
    def _make(shipment: Shipment, event_code: str = "OutForDelivery", **kwargs) -> Event:
        fields = {
            "description": f"Shipment {event_code}",
            "occurred_at": datetime.now(timezone.utc) - timedelta(minutes=5),
            "facility": "Bangkok Distribution Center",
            "location": "Bangkok",
        }
        fields.update(kwargs)
        event = Event(shipment_id=shipment.id, event_code=event_code, **fields)
        db_session.add(event)
        db_session.commit()
        return event

    return _make


@pytest.fixture()
def subscribe(db_session, registry):
    """Create a subscription and commit it; consented unless told otherwise."""

    def _subscribe(shipment: Shipment, channel: str, destination: str, *, consent: bool = True, **kwargs):
        subscription = registry.subscribe(
            shipment.id, channel, destination, consent_given=consent, consent_source_ip="203.0.113.7", **kwargs
        )
        db_session.commit()
        return subscription

    return _subscribe


@pytest.fixture()
def make_channel():
    """Factory for ``FakeChannel`` instances with queued results."""
    return FakeChannel
