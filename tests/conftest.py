# tests/conftest.py
import os

# models.base refuses to import without a DATABASE_URL; tests use their own engines
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models.base import Base
from models import user, scheduling, payment, notification  # noqa: F401 (register models)
from tests.helpers import FakeChannel


@pytest.fixture()
def session_factory():
    # SQLite in-memory DB shared by every session of one test
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def channels():
    return {
        "email": FakeChannel("email"),
        "sms": FakeChannel("sms"),
        "whatsapp": FakeChannel("whatsapp"),
        "push": FakeChannel("push"),
    }


@pytest.fixture()
def dispatcher(channels):
    from app.notification_scheduler import NotificationDispatcher

    return NotificationDispatcher(**channels)


@pytest.fixture()
def fake_stripe(monkeypatch):
    """Stripe configured with its network calls replaced by recorders."""
    import stripe
    from types import SimpleNamespace

    from app.config import Config

    monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", "sk_test_123")
    calls = {
        "customers": [],
        "intents": [],
        "refunds": [],
        "subscriptions": [],
        "cancelled": [],
        "setup_intents": [],
        "detached": [],
    }

    def create_customer(**params):
        calls["customers"].append(params)
        return SimpleNamespace(id=f"cus_{len(calls['customers'])}")

    def create_intent(**params):
        calls["intents"].append(params)
        n = len(calls["intents"])
        return SimpleNamespace(id=f"pi_{n}", client_secret=f"pi_{n}_secret")

    def create_refund(**params):
        calls["refunds"].append(params)
        return SimpleNamespace(id="re_1", amount=params.get("amount", 15000), currency="BRL", status="succeeded")

    def create_subscription(**params):
        calls["subscriptions"].append(params)
        return SimpleNamespace(id="sub_1", status="trialing")

    def cancel_subscription(subscription_id, **params):
        calls["cancelled"].append(subscription_id)
        return SimpleNamespace(id=subscription_id, status="canceled")

    def create_setup_intent(**params):
        calls["setup_intents"].append(params)
        return SimpleNamespace(id="seti_1", client_secret="seti_1_secret")

    def retrieve_payment_method(pm_id, **params):
        card = SimpleNamespace(brand="visa", last4="4242", exp_month=12, exp_year=2031)
        return SimpleNamespace(id=pm_id, type="card", card=card)

    def detach_payment_method(pm_id, **params):
        calls["detached"].append(pm_id)
        return SimpleNamespace(id=pm_id)

    monkeypatch.setattr(stripe.Customer, "create", create_customer)
    monkeypatch.setattr(stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(stripe.Refund, "create", create_refund)
    monkeypatch.setattr(stripe.Subscription, "create", create_subscription)
    monkeypatch.setattr(stripe.Subscription, "cancel", cancel_subscription)
    monkeypatch.setattr(stripe.SetupIntent, "create", create_setup_intent)
    monkeypatch.setattr(stripe.PaymentMethod, "retrieve", retrieve_payment_method)
    monkeypatch.setattr(stripe.PaymentMethod, "detach", detach_payment_method)
    return calls
