"""
Pytest configuration and fixtures for testing.

This file provides reusable test fixtures for:
- Database setup/teardown (in-memory SQLite)
- A controllable clock
- Recording email/SMS senders in place of SES/SNS
- The security components, orchestrator and FastAPI test client
"""

import os

# Settings are read at import time; keep tests off Redis, AWS and slow hashing
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("EMAIL_DELIVERY_MODE", "log")
os.environ.setdefault("SMS_DELIVERY_MODE", "log")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-not-for-production")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")
os.environ.setdefault("JSON_LOGS", "false")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.core.credential_vault import CredentialVault
from app.core.database import Base, get_db
from app.core.rate_limiter import InMemoryCounterStore, RateLimiter
from app.core.two_factor import TwoFactorAuth
from app.models.user import Gender, User
from app.services.security_service import SecurityOrchestrator
from main import app


# Use in-memory SQLite for testing (fast, isolated)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_PASSWORD = "Str0ng!Passw0rd"
TEST_ENCRYPTION_KEY = "test-encryption-key-not-for-production"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender:
    def __init__(self):
        self.sent = []
        self.delivered = True

    def send_verification(self, email, token, display_name=None):
        self.sent.append({"email": email, "token": token, "display_name": display_name})
        return self.delivered


class RecordingSmsSender:
    def __init__(self):
        self.sent = []
        self.delivered = True

    def send_code(self, phone, code):
        self.sent.append({"phone": phone, "code": code})
        return self.delivered


@pytest.fixture
def db_session():
    """
    Create a fresh database for each test.
    Tables are dropped after the test completes.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def other_session(db_session):
    """A second session on the same database, standing in for a concurrent request."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    # Mid-window start keeps TOTP step boundaries away from the test's edges
    return FakeClock(datetime(2025, 3, 1, 12, 0, 10, tzinfo=timezone.utc))


@pytest.fixture
def vault():
    return CredentialVault(TEST_ENCRYPTION_KEY, iterations=1000)


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture
def components(clock, vault, email_sender, sms_sender):
    """The long-lived pieces main.py puts on app.state."""
    return {
        "vault": vault,
        "rate_limiter": RateLimiter(InMemoryCounterStore(clock=clock), clock=clock),
        "two_factor": TwoFactorAuth(issuer="Naggery"),
        "email_sender": email_sender,
        "sms_sender": sms_sender,
        "clock": clock,
    }


@pytest.fixture
def orchestrator(db_session, components):
    return SecurityOrchestrator(db_session, **components)


@pytest.fixture
def client(db_session, components):
    """
    FastAPI test client with overridden database dependency and test
    components on app.state. The lifespan is not run, so no Postgres or
    Redis is touched.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    for name, component in components.items():
        setattr(app.state, name, component)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session, vault, clock):
    """
    Factory for users at any onboarding step.

    Usage:
        user = make_user(email_verified=True, phone_verified=True)
    """
    counter = {"n": 0}

    def _make_user(
        email=None,
        phone=None,
        password=TEST_PASSWORD,
        email_verified=False,
        phone_verified=False,
        password_hash=None,
    ):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            name=f"Test User {n}",
            email=email or f"user{n}@example.com",
            phone=phone or f"+1555000{n:04d}",
            gender=Gender.PREFER_NOT_TO_SAY,
            password_hash=password_hash or vault.hash_password(password),
            is_active=email_verified,
            email_verified_at=clock() if email_verified else None,
            phone_verified_at=clock() if phone_verified else None,
            terms_accepted_at=clock(),
            login_attempts=0,
            two_fa_enabled=False,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    """Bearer header for a user, as the API would issue after login."""
    from app.core.security import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(data={'sub': str(user.id)})}"}

    return _headers
