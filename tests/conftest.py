import hashlib
import hmac
import json
import os
import time

os.environ["DATABASE_URL"] = "sqlite:///./test_shop_payments.db"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ.pop("ADMIN_EMAIL", None)

import pytest
import structlog
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shop_payments.main import app as fastapi_app
from shop_payments.database import Base

# structlog.testing.capture_logs cannot see loggers cached on first use
structlog.configure(cache_logger_on_first_use=False)

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_shop_payments.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


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
def client(monkeypatch):
    # Every request handler opens its own session from SessionLocal
    monkeypatch.setattr("shop_payments.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("shop_payments.main.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c


@pytest.fixture
def ses(mocker):
    """SES client stand-in; ``ses.send_email.call_args_list`` holds every mail sent."""
    ses_client = mocker.Mock()
    mocker.patch("shop_payments.notifier.get_ses_client", return_value=ses_client)
    return ses_client


def sign_payload(payload: bytes, secret: str = "whsec_test", timestamp: int = None) -> str:
    """Build a Stripe-Signature header the same way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def intent_event(intent_id, event_type="payment_intent.succeeded", amount=3998, currency="eur",
                 metadata=None, receipt_email=None, shipping=None, event_id="evt_1"):
    intent = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": currency,
        "metadata": metadata or {},
        "receipt_email": receipt_email,
        "shipping": shipping,
    }
    return {"id": event_id, "type": event_type, "data": {"object": intent}}


@pytest.fixture
def post_event(client):
    """Deliver an event to /webhook with a valid signature."""
    def _post(event):
        payload = json.dumps(event).encode()
        return client.post(
            "/webhook",
            content=payload,
            headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
        )
    return _post


@pytest.fixture
def make_token():
    def _make(**claims):
        return jwt.encode(claims, "test-jwt-secret", algorithm="HS256")
    return _make
