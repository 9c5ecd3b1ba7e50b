"""
Pytest configuration and fixtures for reminder engine tests.

Provides shared fixtures for:
- Test database sessions (in-memory and file-backed SQLite)
- VAPID and subscriber key material
- Settings factories
- A fake push service built on httpx.MockTransport
- Sample data factories
"""

import os
import threading
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ['REMINDER_DB_URL'] = 'sqlite:///:memory:'
os.environ['REMINDER_ENV'] = 'development'
for _name in ('VAPID_PUBLIC_KEY', 'VAPID_PRIVATE_KEY', 'VAPID_SUBJECT',
              'GOOGLE_CALENDAR_API_KEY', 'GOOGLE_CALENDAR_ID'):
    os.environ.pop(_name, None)

from cryptography.hazmat.primitives.asymmetric import ec

from reminder_engine.config.settings import AppSettings, reset_settings_cache
from reminder_engine.models import Base, PushSubscription, ScheduledReminder
from reminder_engine.utils.crypto import b64url_encode, generate_vapid_keys, public_key_bytes


NOW = datetime(2026, 3, 2, 12, 0, 0)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope='function')
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope='function')
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope='function')
def file_db_sessionmaker(tmp_path):
    """
    Session factory over a file-backed SQLite database.

    Each thread of a concurrency test opens its own session (and connection)
    from this factory, so the database lock arbitrates between them.
    """
    from reminder_engine.db.database import build_engine

    engine = build_engine(f"sqlite:///{tmp_path / 'reminders.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Settings are cached process-wide; start every test from the environment."""
    reset_settings_cache()
    yield
    reset_settings_cache()


# ============================================================================
# Key Material Fixtures
# ============================================================================

@pytest.fixture(scope='session')
def vapid_keys():
    """A valid (public_b64, private_b64) VAPID key pair."""
    return generate_vapid_keys()


class SubscriberKeys:
    """Browser-side key material for one push subscription."""

    def __init__(self):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.auth_secret = os.urandom(16)
        self.p256dh = b64url_encode(public_key_bytes(self.private_key.public_key()))
        self.auth = b64url_encode(self.auth_secret)


@pytest.fixture
def subscriber_keys():
    """Fresh subscriber key material."""
    return SubscriberKeys()


@pytest.fixture
def settings_factory(vapid_keys):
    """
    Factory for AppSettings that ignore the developer's .env file.

    Overrides use environment variable names, e.g.
    settings_factory(CLAIM_TIMEOUT_SECONDS=60).
    """
    def _create(**overrides):
        values = {
            'VAPID_PUBLIC_KEY': vapid_keys[0],
            'VAPID_PRIVATE_KEY': vapid_keys[1],
            'VAPID_SUBJECT': 'mailto:ops@example.com',
            'DISPLAY_TIMEZONE': 'UTC',
        }
        values.update(overrides)
        return AppSettings(_env_file=None, **values)
    return _create


@pytest.fixture
def test_settings(settings_factory):
    """Fully configured settings."""
    return settings_factory()


# ============================================================================
# Fake Push Service
# ============================================================================

class FakePushService:
    """
    Records push requests and answers with scripted status codes.

    Statuses are scripted per endpoint; the last scripted status repeats.
    Unscripted endpoints answer 201 Created.
    """

    def __init__(self):
        self.requests = []
        self.statuses = {}
        self._lock = threading.Lock()

    def set_status(self, endpoint, *statuses):
        self.statuses[endpoint] = list(statuses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            queue = self.statuses.get(str(request.url))
            if queue:
                status = queue.pop(0) if len(queue) > 1 else queue[0]
            else:
                status = 201
        body = "" if status < 300 else f"push service says {status}"
        return httpx.Response(status, text=body)

    @property
    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def requests_to(self, endpoint):
        return [r for r in self.requests if str(r.url) == endpoint]


@pytest.fixture
def fake_push():
    """Fake push service."""
    return FakePushService()


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def create_subscription(test_db_session):
    """Factory for creating push subscriptions with valid key material."""
    _counter = [0]

    def _create(endpoint=None, lead_time_minutes=15, keys=None, session=None):
        _counter[0] += 1
        keys = keys or SubscriberKeys()
        db = session or test_db_session
        sub = PushSubscription(
            endpoint=endpoint or f"https://push.example.com/sub/{_counter[0]}",
            p256dh_key=keys.p256dh,
            auth_key=keys.auth,
            lead_time_minutes=lead_time_minutes,
            device_name="Test Device",
        )
        db.add(sub)
        db.commit()
        db.refresh(sub)
        return sub
    return _create


@pytest.fixture
def create_reminder(test_db_session):
    """Factory for creating scheduled reminders (due one minute before NOW by default)."""
    def _create(
        event_id="evt-1",
        client_name="Ana Souza",
        client_phone="+5511999990000",
        service_name="Haircut",
        appointment_time=None,
        reminder_time=None,
        created_at=None,
        session=None,
        **kwargs
    ):
        db = session or test_db_session
        reminder = ScheduledReminder(
            event_id=event_id,
            client_name=client_name,
            client_phone=client_phone,
            service_name=service_name,
            appointment_time=appointment_time or NOW + timedelta(hours=10),
            reminder_time=reminder_time or NOW - timedelta(minutes=1),
            **kwargs
        )
        if created_at is not None:
            reminder.created_at = created_at
        db.add(reminder)
        db.commit()
        db.refresh(reminder)
        return reminder
    return _create


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session):
    """Create a test client for the FastAPI application."""
    from fastapi.testclient import TestClient
    from reminder_engine.main import app
    from reminder_engine.db.database import get_db

    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = get_test_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
