"""
Test configuration and fixtures for the booking core.
"""
import os

# Set test environment variables before the app reads its settings
os.environ.update({
    "DATABASE_URL": "sqlite:///./test_booking.db",
    "ENVIRONMENT": "test",
    "ADMIN_API_TOKEN": "test-admin-token",
    "ENABLE_RESERVATION_SWEEPER": "false",
    "ENABLE_TRACING": "false",
    "SENTRY_DSN": "",
    "PAYMENT_RETRY_BASE_DELAY": "0",
    "GATEWAY_TIMEOUT_SECONDS": "2",
    "LOG_LEVEL": "WARNING",
})
os.environ.pop("REDIS_URL", None)
os.environ.pop("UPSTASH_REDIS_URL", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from vibewell.main import app
from vibewell.database import Base, get_db
from vibewell.deps.services import get_payment_gateway, get_rate_limiter
from vibewell.services.kv_store import KeyValueStore
from vibewell.services.rate_limiter import RateLimiter
from vibewell.services.reservation_service import ReservationService

from tests.factories import ReservationFactory
from tests.mocks.clock import FrozenClock
from tests.mocks.fake_gateway import FakeGateway
from tests.mocks.fake_redis import FakeRedis

ADMIN_TOKEN = "test-admin-token"

# Create test database; file-backed so worker threads share it
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_booking.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session")
def test_db():
    """Create test database tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(test_db):
    """Services commit, so rows are removed after each test instead of rolled back."""
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture
def session_factory(test_db):
    return TestingSessionLocal


@pytest.fixture
def db_session(test_db):
    """Create a fresh database session for each test."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def reservation_service(db_session, clock):
    return ReservationService(db_session, hold_minutes=10, clock=clock)


@pytest.fixture
def make_reservation(db_session):
    """Persist a reservation built by ReservationFactory."""
    def _make(**kwargs):
        reservation = ReservationFactory(**kwargs)
        db_session.add(reservation)
        db_session.commit()
        db_session.refresh(reservation)
        return reservation
    return _make


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock.time)


@pytest.fixture
def kv_store(fake_redis):
    return KeyValueStore(fake_redis)


@pytest.fixture
def rate_limiter(kv_store, clock):
    return RateLimiter(kv_store, clock=clock.time)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    """Test client with its own session per request, the limiter off and a scripted gateway."""
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(None, enabled=False)
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def limited_client(client, rate_limiter):
    """Test client whose routes consume from the in-memory rate limiter."""
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    return client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
