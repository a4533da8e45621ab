"""Shared pytest fixtures for test suite"""
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator, Optional

import pytest

WEBHOOK_SECRET = "whsec_test_secret"

# Settings are read at import time; keep the app off Postgres and Stripe
os.environ.setdefault("DATASTORE_BACKEND", "memory")
os.environ.setdefault("PAYMENT_PROVIDER_BACKEND", "memory")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from subsync.db.memory_store import InMemoryDatastore
from subsync.db.sql_store import SqlDatastore
from subsync.main import app
from subsync.models import Base
from subsync.models.user import User
from subsync.services.notifications import InMemoryNotifier
from subsync.services.payment_provider import InMemoryPaymentProvider
from subsync.services.signature import sign
from subsync.services.webhook_service import WebhookProcessor


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# 2026-01-01T00:00:00Z, base for event "created" timestamps
BASE_TS = 1767225600


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def sql_store(db_session: Session) -> SqlDatastore:
    return SqlDatastore(TestSessionLocal)


@pytest.fixture(scope="function")
def memory_store() -> InMemoryDatastore:
    return InMemoryDatastore()


@pytest.fixture(scope="function", params=["memory", "sql"])
def store(request):
    """Each datastore implementation in turn"""
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


@pytest.fixture(scope="function")
def add_user(store):
    """Seed an application user into whichever store is under test"""
    def _add_user(user_id: str, customer_ref: Optional[str] = None, email: Optional[str] = None):
        if isinstance(store, InMemoryDatastore):
            store.add_user(user_id, email=email, customer_ref=customer_ref)
            return
        db = TestSessionLocal()
        try:
            db.add(User(id=user_id, email=email, stripe_customer_id=customer_ref))
            db.commit()
        finally:
            db.close()
    return _add_user


@pytest.fixture(scope="function")
def provider() -> InMemoryPaymentProvider:
    return InMemoryPaymentProvider(WEBHOOK_SECRET, tolerance=300)


@pytest.fixture(scope="function")
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture(scope="function")
def processor(store, provider, notifier) -> WebhookProcessor:
    return WebhookProcessor(store, provider, notifier)


@pytest.fixture(scope="function")
def client(memory_store, provider, notifier) -> Generator[TestClient, None, None]:
    """FastAPI test client wired to in-memory doubles"""
    app.state.datastore = memory_store
    app.state.payment_provider = provider
    app.state.notifier = notifier

    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        # Cleanup - always drop the doubles so the next test installs its own
        for name in ("datastore", "payment_provider", "notifier"):
            if hasattr(app.state, name):
                delattr(app.state, name)


# ============================================================================
# EVENT BUILDERS
# ============================================================================

def make_event(event_type: str, obj: dict, event_id: str = "evt_test123", created: int = BASE_TS) -> bytes:
    """Serialized Stripe event envelope"""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> dict:
    return {"Stripe-Signature": sign(body, secret, timestamp if timestamp is not None else int(time.time()))}


def checkout_session(
    user_id: Optional[str] = "user_1",
    customer: str = "cus_test123",
    subscription: Optional[str] = "sub_test123",
    mode: str = "subscription",
    payment_status: str = "paid",
    plan: str = "premium",
    billing_cycle: str = "monthly",
) -> dict:
    metadata = {"plan": plan, "billingCycle": billing_cycle}
    if user_id:
        metadata["userId"] = user_id
    return {
        "id": "cs_test_abc",
        "object": "checkout.session",
        "customer": customer,
        "customer_email": "delivered@resend.dev",
        "subscription": subscription,
        "mode": mode,
        "payment_status": payment_status,
        "amount_total": 999,
        "currency": "usd",
        "metadata": metadata,
    }


def invoice(
    customer: str = "cus_test123",
    subscription: Optional[str] = "sub_test123",
    next_payment_attempt: Optional[int] = BASE_TS + 3 * 86400,
    paid: bool = False,
    amount: int = 999,
) -> dict:
    return {
        "id": "in_test_abc",
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "amount_due": amount,
        "amount_paid": amount if paid else 0,
        "paid": paid,
        "currency": "usd",
        "attempt_count": 1,
        "next_payment_attempt": None if paid else next_payment_attempt,
    }


def subscription_object(
    sub_id: str = "sub_test123",
    customer: str = "cus_test123",
    status: Optional[str] = "active",
    current_period_end: Optional[int] = BASE_TS + 30 * 86400,
    cancel_at_period_end: bool = False,
    lookup_key: str = "premium",
    trial_end: Optional[int] = None,
    user_id: Optional[str] = None,
) -> dict:
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"userId": user_id} if user_id else {},
        "items": {
            "object": "list",
            "data": [{
                "id": "si_test",
                "price": {"id": "price_premium", "lookup_key": lookup_key, "recurring": {"interval": "month"}},
            }],
        },
    }
    if current_period_end is not None:
        obj["current_period_end"] = current_period_end
    if trial_end is not None:
        obj["trial_end"] = trial_end
    if status is None:
        del obj["status"]
    return obj
