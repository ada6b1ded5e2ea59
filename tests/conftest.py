"""
Shared fixtures: in-memory database, record store, frozen clock and a
captured e-mail outbox.
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone

# Settings are read at import time
os.environ.update({
    "DATABASE_URL": "sqlite:///:memory:",
    "RECORD_STORE": "sql",
    "PAYSTACK_SECRET_KEY": "sk_test_paystack_secret",
    "SUPABASE_JWT_SECRET": "test-supabase-jwt-secret-with-32-plus-chars",
    "SUPER_OPERATOR_EMAIL": "Owner@PredictVIP.test",
    "NOTIFICATION_EMAIL_URL": "",
    "CRON_SECRET": "",
    "SENTRY_DSN": "",
    "ENABLE_RATE_LIMITING": "false",
    "ENVIRONMENT": "testing",
})

import httpx
import jwt
import pytest
from sqlmodel import SQLModel, Session, create_engine
from sqlmodel.pool import StaticPool

from predictvip.core.settings import settings
from predictvip.api.services.notifications import NotificationDispatcher
from predictvip.api.services.state_machine import SubscriptionStateMachine
from predictvip.db.models import Profile, Subscription, UserRole
from predictvip.db.store import SQLRecordStore

TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

NOW = datetime(2026, 3, 10, 6, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock the state machine reads instead of the wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def sign(body: bytes, secret: str = None) -> str:
    """Paystack-style HMAC-SHA512 hex signature of a raw body."""
    secret = secret or settings.paystack_secret_key
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def charge_body(email="U@X.com", amount=850000, plan_id="1_month", reference=None, **data) -> bytes:
    payload_data = {"customer": {"email": email}, "amount": amount}
    if plan_id is not None:
        payload_data["metadata"] = {"plan_id": plan_id}
    if reference is not None:
        payload_data["reference"] = reference
    payload_data.update(data)
    return json.dumps({"event": "charge.success", "data": payload_data}).encode("utf-8")


def make_token(user_id: str, email: str) -> str:
    return jwt.encode(
        {"sub": user_id, "email": email, "aud": "authenticated", "exp": int(time.time()) + 3600},
        settings.supabase_jwt_secret,
        algorithm="HS256",
    )


@pytest.fixture(scope="function")
def setup_test_database():
    """Setup test database for each test."""
    import predictvip.db.models  # noqa: F401
    SQLModel.metadata.create_all(test_engine)

    yield test_engine

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(setup_test_database):
    """Get database session for testing."""
    with Session(setup_test_database) as session:
        yield session


@pytest.fixture
def store(session):
    return SQLRecordStore(session)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def state_machine(store, clock):
    return SubscriptionStateMachine(store, clock=clock)


@pytest.fixture
def make_profile(session):
    """Create a registered profile, optionally with the admin role."""
    def _make(email: str, admin: bool = False) -> str:
        profile = Profile(email=email)
        session.add(profile)
        if admin:
            session.add(UserRole(user_id=profile.id, role="admin"))
        session.commit()
        return profile.id
    return _make


@pytest.fixture
def make_subscription(store):
    """Insert a subscription row directly, bypassing the state machine."""
    def _make(email: str = "payer@example.com", plan_type: str = "1_month",
              status: str = "pending", **fields) -> Subscription:
        return store.insert_subscription(Subscription(
            payment_email=email, plan_type=plan_type, status=status, **fields
        ))
    return _make


@pytest.fixture
def email_outbox():
    """Requests received by the fake e-mail collaborator."""
    return []


@pytest.fixture
def email_transport(email_outbox):
    def handler(request: httpx.Request) -> httpx.Response:
        email_outbox.append({
            "payload": json.loads(request.content),
            "authorization": request.headers.get("authorization"),
        })
        return httpx.Response(200, json={"success": True})
    return httpx.MockTransport(handler)


@pytest.fixture
def notifier(store, email_transport):
    """Dispatcher wired to the fake e-mail collaborator."""
    original_url = settings.notification_email_url
    settings.notification_email_url = "https://notify.predictvip.test/send-subscription-email"
    yield NotificationDispatcher(store, transport=email_transport)
    settings.notification_email_url = original_url
