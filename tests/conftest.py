"""
Pytest configuration and shared fixtures.

Test environment defaults are seeded here before any courier import, so the
settings and engine are built against the test database. Values already set
in the environment (e.g. from .env.test) win.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_courier.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from courier.config import get_settings
get_settings.cache_clear()

from courier.errors import TransportError
from courier.main import app, get_notifier, get_transport
from courier.models import Message, User
from courier.realtime import RealtimeNotifier
from courier.storage import Base, SessionLocal, engine


class FakeTransport:
    """Transport double that records dispatches and hands out provider ids."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.return_none = False

    async def send_text(self, phone_number: str, body: str):
        self.calls.append((phone_number, body))
        if self.fail_with is not None:
            raise self.fail_with
        if self.return_none:
            return None
        return f"wamid.{len(self.calls)}"


class RecordingNotifier(RealtimeNotifier):
    """Notifier that keeps published events instead of broadcasting them."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, message):
        self.published.append(self.build_event(message))
        return None


@pytest.fixture
def db():
    """Fresh tables and a session for store-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def recording_notifier():
    return RecordingNotifier()


@pytest.fixture
def client(fake_transport, recording_notifier):
    """Test client with fresh tables, a fake transport and a recording notifier."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_transport] = lambda: fake_transport
    app.dependency_overrides[get_notifier] = lambda: recording_notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


def count_messages() -> int:
    with SessionLocal() as session:
        return session.query(Message).count()


def count_users() -> int:
    with SessionLocal() as session:
        return session.query(User).count()


def transport_error() -> TransportError:
    return TransportError("WhatsApp API request timed out")
