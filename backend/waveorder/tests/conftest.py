"""Pytest configuration for billing webhook tests

WHAT: Shared fixtures for endpoint, pipeline and unit tests
WHY: Every test gets an isolated in-memory database, a signed-request helper
     and in-process fakes for Stripe and Resend
REFERENCES:
    - waveorder/main.py: FastAPI application
    - waveorder/deps.py: Settings and dependency providers
    - waveorder/services/billing/webhook_processor.py: Pipeline under test
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone
from typing import Generator, Optional
from uuid import uuid4

import pytest

# Set test environment before waveorder.database reads it at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from waveorder.database import Base, get_db
from waveorder.deps import Settings, get_settings, get_webhook_processor
from waveorder.models import Business, BusinessUser, PlanEnum, User
from waveorder.services.billing import PlanCatalog, StripeWebhookProcessor
from waveorder.services.notification_service import NotificationResult


WEBHOOK_SECRET = "whsec_test_secret"
FRONTEND_URL = "https://app.waveorder.test"
WEBHOOK_URL = "/api/webhooks/stripe"

# 2025-12-28 15:30 UTC: a 7 day grace window crosses into 2026
FIXED_NOW = datetime(2025, 12, 28, 15, 30, tzinfo=timezone.utc)

PERIOD_START = 1767225600  # 2026-01-01 00:00 UTC
PERIOD_END = 1769904000  # 2026-02-01 00:00 UTC
TRIAL_END = 1767830400  # 2026-01-08 00:00 UTC


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; values are always stored in UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ============================================================================
# Stripe payload helpers
# ============================================================================

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header (t=<ts>,v1=<hmac-sha256>)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_subscription(
    sub_id: str = "sub_123",
    customer: str = "cus_123",
    price: Optional[str] = "price_pro_monthly",
    status: str = "active",
    trial_end: Optional[int] = None,
    cancel_at_period_end: bool = False,
    metadata: Optional[dict] = None,
    created: Optional[int] = PERIOD_START,
    canceled_at: Optional[int] = None,
) -> dict:
    items = []
    if price:
        items.append({
            "id": f"si_{sub_id}",
            "object": "subscription_item",
            "price": {"id": price, "object": "price", "unit_amount": 3900, "currency": "usd"},
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
        })
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "items": {"object": "list", "data": items},
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": canceled_at,
        "trial_end": trial_end,
        "created": created,
        "metadata": metadata if metadata is not None else {"source": "waveorder_platform"},
    }


def make_invoice(
    invoice_id: str = "in_123",
    customer: str = "cus_123",
    subscription: Optional[str] = "sub_123",
    price: Optional[str] = "price_pro_monthly",
    billing_reason: str = "subscription_create",
    amount_paid: int = 3900,
    amount_due: int = 3900,
    metadata: Optional[dict] = None,
    next_payment_attempt: Optional[int] = None,
) -> dict:
    lines = []
    if price:
        lines.append({"id": f"il_{invoice_id}", "object": "line_item", "price": {"id": price}})
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "billing_reason": billing_reason,
        "status": "paid" if amount_paid else "open",
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "currency": "usd",
        "customer_email": "owner@example.com",
        "customer_name": "Olivia Owner",
        "description": None,
        "created": PERIOD_START,
        "next_payment_attempt": next_payment_attempt,
        "lines": {"object": "list", "data": lines},
        "parent": {
            "type": "subscription_details",
            "subscription_details": {"subscription": subscription, "metadata": metadata or {}},
        },
    }


def make_checkout_session(
    session_id: str = "cs_123",
    customer: str = "cus_123",
    subscription: Optional[str] = "sub_123",
    mode: str = "subscription",
) -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": mode,
        "customer": customer,
        "subscription": subscription,
    }


def make_event(event_type: str, obj: dict, event_id: Optional[str] = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def make_user(
    db: Session,
    email: str = "owner@example.com",
    customer: Optional[str] = "cus_123",
    plan: PlanEnum = PlanEnum.starter,
    businesses: int = 1,
    trial_ends_at: Optional[datetime] = None,
) -> User:
    """Create a user who owns `businesses` storefronts."""
    user = User(
        email=email,
        name="Olivia Owner",
        stripe_customer_id=customer,
        plan=plan,
        trial_ends_at=trial_ends_at,
    )
    db.add(user)
    for i in range(businesses):
        business = Business(name=f"{email.split('@')[0]} store {i + 1}", subscription_plan=plan)
        db.add(business)
        db.add(BusinessUser(business=business, user=user))
    db.commit()
    db.refresh(user)
    return user


def businesses_of(db: Session, user: User):
    return (
        db.query(Business)
        .join(BusinessUser, BusinessUser.business_id == Business.id)
        .filter(BusinessUser.user_id == user.id)
        .all()
    )


# ============================================================================
# Fakes
# ============================================================================

class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway."""

    def __init__(self):
        self.subscriptions = {}
        self.retrieve_calls = []
        self.cancel_calls = []
        self.portal_calls = []
        self.fail_cancel = False
        self.fail_portal = False

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.retrieve_calls.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise LookupError(f"No such subscription: '{subscription_id}'")
        return self.subscriptions[subscription_id]

    async def cancel_subscription_now(self, subscription_id: str) -> None:
        self.cancel_calls.append(subscription_id)
        if self.fail_cancel:
            raise RuntimeError("Stripe API unavailable")

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_calls.append((customer_id, return_url))
        if self.fail_portal:
            raise RuntimeError("Stripe API unavailable")
        return f"https://billing.stripe.com/p/session/{customer_id}"


class RecordingNotifier:
    """Stand-in for SubscriptionNotificationService that records sends."""

    def __init__(self):
        self.change_emails = []
        self.payment_failed_emails = []
        self.fail = False

    @property
    def change_types(self):
        return [email["change_type"] for email in self.change_emails]

    async def send_subscription_change_email(self, **kwargs) -> NotificationResult:
        if self.fail:
            raise RuntimeError("Resend unavailable")
        self.change_emails.append(kwargs)
        return NotificationResult(success=True, message_id="test-email", recipients=[kwargs["to"]])

    async def send_payment_failed_email(self, **kwargs) -> NotificationResult:
        if self.fail:
            raise RuntimeError("Resend unavailable")
        self.payment_failed_emails.append(kwargs)
        return NotificationResult(success=True, message_id="test-email", recipients=[kwargs["to"]])


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: the TestClient thread must see the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        FRONTEND_URL=FRONTEND_URL,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRODUCT_SOURCE="waveorder_platform",
        STRIPE_STARTER_PRICE_ID="price_starter_monthly",
        STRIPE_STARTER_ANNUAL_PRICE_ID="price_starter_annual",
        STRIPE_STARTER_FREE_PRICE_ID="price_starter_free",
        STRIPE_PRO_PRICE_ID="price_pro_monthly",
        STRIPE_PRO_ANNUAL_PRICE_ID="price_pro_annual",
        STRIPE_PRO_FREE_PRICE_ID="price_pro_free",
        STRIPE_BUSINESS_PRICE_ID="price_business_monthly",
        STRIPE_BUSINESS_ANNUAL_PRICE_ID="price_business_annual",
        STRIPE_BUSINESS_FREE_PRICE_ID="price_business_free",
        GRACE_PERIOD_DAYS=7,
        RESEND_API_KEY=None,
        SENTRY_DSN=None,
    )


@pytest.fixture
def catalog(test_settings) -> PlanCatalog:
    return PlanCatalog.from_settings(test_settings)


@pytest.fixture
def fake_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def processor(fake_gateway, notifier, catalog, clock) -> StripeWebhookProcessor:
    return StripeWebhookProcessor(
        gateway=fake_gateway,
        notifier=notifier,
        catalog=catalog,
        frontend_url=FRONTEND_URL,
        product_source="waveorder_platform",
        grace_period_days=7,
        clock=clock,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, test_settings, processor):
    """Create FastAPI test application."""
    from waveorder.main import create_app

    test_app = create_app()

    def override_get_db():
        # The test keeps using this session for assertions
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: test_settings
    test_app.dependency_overrides[get_webhook_processor] = lambda: processor

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def deliver(client):
    """POST a signed Stripe event to the webhook endpoint."""

    def _deliver(event: dict, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None):
        body = json.dumps(event)
        return client.post(
            WEBHOOK_URL,
            content=body,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": sign_payload(body, secret, timestamp),
            },
        )

    return _deliver
