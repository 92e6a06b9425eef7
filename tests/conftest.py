import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_temp.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYMENT_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("QR_SECRET", "test-qr-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import eventdesk.database
from eventdesk.auth import verify_token
from eventdesk.database import Base
from eventdesk.errors import GatewayError
from eventdesk.gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayPaymentLink,
    GatewayRefund,
    PaymentGateway,
    compute_signature,
    to_minor_units,
)
from eventdesk.main import app as fastapi_app
from eventdesk.models import Attendee, AttendeeStatus, Event, TicketType
from eventdesk.routes import get_gateway, get_sender

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

SIGNING_SECRET = os.environ["PAYMENT_SIGNING_SECRET"]
WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
QR_SECRET = os.environ["QR_SECRET"]
ORGANIZER_ID = "organizer-1"


class FakeGateway(PaymentGateway):
    """In-memory gateway; payments must be registered with ``add_payment``."""

    def __init__(self, signing_secret=SIGNING_SECRET):
        super().__init__(signing_secret)
        self.payments = {}
        self.calls = []
        self.order_error = None
        self.fetch_error = None
        self.refund_error = None

    def sign(self, order_id, payment_id):
        return compute_signature(self.signing_secret, order_id, payment_id)

    def add_payment(self, payment_id, order_id=None, status="captured", method="card",
                    error_description=None):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id,
            status=status,
            order_id=order_id,
            method=method,
            amount=49900,
            error_description=error_description,
            raw={"id": payment_id, "status": status, "method": method},
        )

    def create_order(self, amount, currency, receipt, notes):
        self.calls.append(("create_order", receipt))
        if self.order_error:
            raise self.order_error
        return GatewayOrder(
            id=f"gw_{receipt}",
            amount=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
            client_secret=f"secret_{receipt}",
            raw={"notes": notes},
        )

    def fetch_payment(self, payment_id):
        self.calls.append(("fetch_payment", payment_id))
        if self.fetch_error:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise GatewayError(f"No such payment: {payment_id}")
        return self.payments[payment_id]

    def refund(self, payment_id, amount, reason):
        self.calls.append(("refund", payment_id))
        if self.refund_error:
            raise self.refund_error
        refund_id = f"rfnd_{len(self.calls)}"
        minor = to_minor_units(amount)
        return GatewayRefund(id=refund_id, amount=minor, status="processed",
                             raw={"id": refund_id, "amount": minor, "reason": reason})

    def create_payment_link(self, *, amount, currency, description, customer, notify, notes,
                            callback_url=None):
        self.calls.append(("create_payment_link", notes["order_id"]))
        link_id = f"plink_{notes['order_id']}"
        return GatewayPaymentLink(id=link_id, short_url=f"https://pay.example/{link_id}",
                                  raw={"description": description, "notify": notify})

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


class RecordingSender:

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, body):
        if self.fail:
            raise ConnectionRefusedError("SMTP server unavailable")
        self.sent.append((to, subject, body))


class FrozenClock:

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def signed_webhook(body, secret=WEBHOOK_SECRET):
    raw = json.dumps(body).encode()
    return raw, hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def captured_event(order_id, payment_id):
    return {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id}}},
    }


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def seed(db):
    event = Event(id="evt-1", organizer_id=ORGANIZER_ID, title="PyCon India",
                  location="Hall A", start_date=datetime(2026, 3, 14, 10, 0, tzinfo=timezone.utc))
    other_event = Event(id="evt-2", organizer_id="organizer-2", title="DjangoCon")
    ticket = TicketType(id="tt-1", event_id="evt-1", name="General",
                        price=Decimal("499.00"), currency="INR")
    attendee = Attendee(id="att-1", event_id="evt-1", name="Asha", email="asha@example.com",
                        phone="+911234567890", status=AttendeeStatus.REGISTERED.value)
    cancelled = Attendee(id="att-2", event_id="evt-1", name="Ravi", email="ravi@example.com",
                         status=AttendeeStatus.CANCELLED.value)
    db.add_all([event, other_event, ticket, attendee, cancelled])
    db.commit()
    return SimpleNamespace(event_id="evt-1", other_event_id="evt-2", ticket_type_id="tt-1",
                           attendee_id="att-1", cancelled_id="att-2")


@pytest.fixture
def client(monkeypatch, gateway, sender):
    # Route every request session to the test database
    monkeypatch.setattr(eventdesk.database, "SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[verify_token] = lambda: {"id": ORGANIZER_ID}
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_sender] = lambda: sender
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
