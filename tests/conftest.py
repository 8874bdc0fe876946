import os

# Must be set before the app reads its settings.
os.environ["DATABASE_URL"] = "sqlite:///./test_app.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.setdefault("APP_ENV", "test")

import smtplib

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.routes
import app.webhooks
from app import store
from app.consultation_service import ConsultationGenerator
from app.database import Base
from app.dependencies import Services, get_services
from app.email_service import EmailService
from app.main import app as fastapi_app
from app.paypal_service import PayPalClient, PayPalService
from app.reconciliation import ReconciliationEngine
from app.stripe_service import StripeService

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


class FakeMailer:
    """Stands in for smtplib.SMTP; collects messages instead of sending them."""

    def __init__(self):
        self.outbox = []
        self.fail = False

    def __call__(self, host, port, timeout=None):
        return _FakeConnection(self)


class _FakeConnection:
    def __init__(self, mailer):
        self.mailer = mailer

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, message):
        if self.mailer.fail:
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        self.mailer.outbox.append(message)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def services(mailer):
    return Services(
        stripe=StripeService("sk_test_123", "whsec_test"),
        paypal=PayPalService(
            PayPalClient("paypal-client", "paypal-secret", mode="sandbox", timeout=5),
            webhook_id="WH-TEST",
            frontend_url="http://localhost:3000",
        ),
        generator=ConsultationGenerator(None),
        email=EmailService(
            host="smtp.test",
            port=587,
            username="mailer",
            password="mailer-password",
            sender="CrystalEnergy.com <no-reply@crystalenergy.com>",
            frontend_url="http://localhost:3000",
            smtp_factory=mailer,
        ),
        engine=ReconciliationEngine(),
    )


@pytest.fixture
def client(monkeypatch, services):
    # Route every request-scoped session to the test database
    monkeypatch.setattr(app.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(app.webhooks, "SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[get_services] = lambda: services
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_order(db):
    """Insert a customer and an order directly, bypassing the provider call."""

    def _make(
        *,
        order_type="consultation",
        status="pending",
        payment_method="stripe",
        ref="pi_test_123",
        amount=799,
        consultation_type="comprehensive",
        email="jane@example.com",
    ):
        customer = store.get_or_create_customer(db, email, "Jane Doe")
        order_id = store.new_id()
        refs = {"stripe_payment_intent_id": ref} if payment_method == "stripe" else {"paypal_order_id": ref}
        metadata = {"kind": "consultation", "consultation_type": consultation_type} if order_type == "consultation" else None
        store.create_order(
            db,
            order_id=order_id,
            customer_id=customer.id,
            order_type=order_type,
            amount=amount,
            currency="usd",
            payment_method=payment_method,
            metadata=metadata,
            **refs,
        )
        if status != "pending":
            store.update_order_status(db, order_id, status)
        store.commit(db)
        return store.get_order(db, order_id)

    return _make
