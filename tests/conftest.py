"""
Pytest fixtures for the eventpay tests.

Provides an in-memory database shared by the app and the test session,
signed Stripe webhook deliveries, identity tokens, and stand-ins for the
Stripe API and email delivery.
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASSWORD"] = ""

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import eventpay.models  # noqa: F401
from eventpay.config import get_settings
from eventpay.database import Base, get_db
from eventpay.main import app
from eventpay.models import Event, Order, OrderStatus, Ticket, TicketType
from eventpay.routers.refunds import limiter
from eventpay.services import notifier
from eventpay.services.catalog import catalog
from eventpay.services.identifiers import generate_confirmation_code
from eventpay.services.payment import PaymentService, RefundResult
from eventpay.time_utils import utcnow

WEBHOOK_SECRET = "whsec_test_secret"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def create_access_token(claims: dict, expires_delta: timedelta = timedelta(minutes=60)) -> str:
    """Sign a token the way the sign-in service issues them."""
    settings = get_settings()
    to_encode = {**claims, "exp": datetime.now(timezone.utc) + expires_delta}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def build_envelope(kind: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({"id": event_id, "type": kind, "data": {"object": obj}}).encode("utf-8")


def purchase_metadata(event_ref: str, items: list[dict], user_id: str = "guest",
                      email: str = "buyer@example.com", name: str = "Jamie Buyer") -> dict:
    return {
        "event_id": event_ref,
        "user_id": user_id,
        "ticket_items": json.dumps(items),
        "customer_email": email,
        "customer_name": name,
    }


def payment_intent(pi_id: str, amount: int, metadata: dict, currency: str = "usd") -> dict:
    return {"id": pi_id, "object": "payment_intent", "amount": amount, "currency": currency, "metadata": metadata}


@pytest.fixture(scope='function')
def db_session():
    """Create a fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope='function')
def client(db_session):
    """Test client bound to the test database. Lifespan (scheduler) is not started."""

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    limiter.enabled = False
    catalog.cache.clear()

    yield TestClient(app)

    app.dependency_overrides.clear()
    limiter.enabled = True
    catalog.cache.clear()


@pytest.fixture(scope='function')
def sent_notifications(monkeypatch):
    """Capture messages handed to background delivery instead of emailing them."""
    sent = []

    async def fake_deliver(message, attempt=1):
        sent.append(message)
        return True

    monkeypatch.setattr(notifier, "deliver_notification", fake_deliver)
    return sent


@pytest.fixture(scope='function')
def post_webhook(client):
    """Deliver a correctly signed notification."""

    def _post(kind: str, obj: dict, event_id: str = "evt_test_1"):
        payload = build_envelope(kind, obj, event_id)
        return client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"}
        )

    return _post


@pytest.fixture(scope='function')
def event_factory(db_session):
    """Create events with one or more ticket types."""

    def _create(slug="spring-gala", start_in=timedelta(days=7), capacity=None,
                cancelled=False, ticket_types=(("General Admission", 2500, 100),), event_id=None):
        event = Event(
            slug=slug,
            title="Spring Gala",
            location="Town Hall",
            start_time=utcnow() + start_in,
            end_time=utcnow() + start_in + timedelta(hours=3),
            capacity=capacity,
            tickets_sold=0,
            cancelled=cancelled
        )
        if event_id:
            event.id = event_id
        db_session.add(event)
        db_session.flush()
        for name, price, tt_capacity in ticket_types:
            db_session.add(TicketType(
                event_id=event.id, name=name, price=price, capacity=tt_capacity, sold_count=0
            ))
        db_session.commit()
        db_session.refresh(event)
        return event

    return _create


@pytest.fixture(scope='function')
def order_factory(db_session):
    """Create a paid order with one ticket per unit."""

    def _create(event, quantity=2, user_id=None, guest_email="guest@example.com",
                status=OrderStatus.COMPLETED, refund_amount=0, payment_intent_id="pi_paid_1",
                order_id=None):
        ticket_type = event.ticket_types[0]
        order = Order(
            user_id=user_id,
            guest_email=None if user_id else guest_email,
            guest_name=None if user_id else "Guest Buyer",
            event_id=event.id,
            total_amount=ticket_type.price * quantity,
            currency="usd",
            status=status,
            refund_amount=refund_amount,
            stripe_payment_intent_id=payment_intent_id
        )
        if order_id:
            order.id = order_id
        db_session.add(order)
        db_session.flush()
        for _ in range(quantity):
            db_session.add(Ticket(
                order_id=order.id,
                ticket_type_id=ticket_type.id,
                event_id=event.id,
                user_id=user_id,
                unit_price=ticket_type.price,
                quantity=1,
                confirmation_code=generate_confirmation_code()
            ))
        db_session.commit()
        db_session.refresh(order)
        return order

    return _create


@pytest.fixture(scope='function')
def auth_headers():
    """Bearer headers for a member, a guest (email only) or staff."""

    def _headers(user_id=None, email=None, is_staff=False):
        claims = {"is_staff": is_staff}
        if user_id:
            claims["sub"] = user_id
        if email:
            claims["email"] = email
        token = create_access_token(claims)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture(scope='function')
def stripe_refunds(monkeypatch):
    """Record refund calls instead of reaching Stripe."""
    calls = []

    def fake_create_refund(payment_intent_id, amount, metadata, idempotency_key):
        calls.append({
            "payment_intent_id": payment_intent_id,
            "amount": amount,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return RefundResult(id=f"re_test_{len(calls)}", status="succeeded", amount=amount)

    monkeypatch.setattr(PaymentService, "create_refund", staticmethod(fake_create_refund))
    return calls
