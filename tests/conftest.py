"""Shared test fixtures for the meal entitlement test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fresh ES256 keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- mock_smtp: SMTP patched out for every test
- seed_data: an active Stripe subscriber with today's entitlement
- make_token / kiosk_token: helpers to mint meal tokens and kiosk sessions
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from app import create_app
from app.extensions import db as _db, signing_keys
from app.models.billing import Customer, Subscription
from app.models.entitlement import Entitlement
from app.services import paypal_service

SERVICE_DATE = date(2026, 3, 2)


def generate_key_pair():
    """Return (private_pem, public_pem) for a fresh P-256 key."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def new_key_pair():
    """Factory for extra key pairs (rotation tests)."""
    return generate_key_pair


@pytest.fixture(scope="session")
def key_pairs():
    return {"qr": generate_key_pair(), "kiosk": generate_key_pair()}


@pytest.fixture(scope="session")
def app(key_pairs):
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    app.config["QR_PRIVATE_KEY"], app.config["QR_PUBLIC_KEY"] = key_pairs["qr"]
    app.config["KIOSK_PRIVATE_KEY"], app.config["KIOSK_PUBLIC_KEY"] = key_pairs["kiosk"]
    yield app


@pytest.fixture(autouse=True)
def db_session(app, key_pairs):
    """Create all tables before each test, drop after.

    Signing keys and the PayPal token cache are reset so tests that rotate
    keys or mock OAuth cannot leak into each other.
    """
    app.config["QR_PRIVATE_KEY"], app.config["QR_PUBLIC_KEY"] = key_pairs["qr"]
    app.config["KIOSK_PRIVATE_KEY"], app.config["KIOSK_PUBLIC_KEY"] = key_pairs["kiosk"]
    app.config["QR_KEY_ID"] = "qr-1"
    app.config["QR_PREVIOUS_PUBLIC_KEYS"] = ""
    signing_keys.reset()
    paypal_service.clear_token_cache()

    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def mock_smtp():
    """No test ever talks to a real mail server."""
    with patch("app.services.notification_service.smtplib.SMTP") as smtp:
        yield smtp


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def _add_subscriber(
    provider="stripe",
    status=Subscription.ACTIVE,
    email="alice@example.com",
    name="Alice Diner",
    provider_customer_id=None,
    provider_subscription_id=None,
    period_start=None,
    period_end=None,
    created_at=None,
):
    """Insert a customer plus one subscription and return both."""
    suffix = uuid.uuid4().hex[:8]
    customer = Customer(
        payment_provider=provider,
        email=email,
        name=name,
    )
    subscription = Subscription(
        payment_provider=provider,
        status=status,
        current_period_start=period_start or datetime(2026, 3, 1, tzinfo=timezone.utc),
        current_period_end=period_end or datetime(2026, 4, 1, tzinfo=timezone.utc),
        created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    if provider == "stripe":
        customer.stripe_customer_id = provider_customer_id or f"cus_{suffix}"
        subscription.stripe_subscription_id = provider_subscription_id or f"sub_{suffix}"
    else:
        customer.paypal_payer_id = provider_customer_id or f"PAYER{suffix.upper()}"
        subscription.paypal_subscription_id = provider_subscription_id or f"I-{suffix.upper()}"

    _db.session.add(customer)
    _db.session.flush()
    subscription.customer_id = customer.id
    _db.session.add(subscription)
    _db.session.commit()
    return customer, subscription


@pytest.fixture
def add_subscriber(db_session):
    """Factory fixture: add_subscriber(status=..., provider=...) -> (customer, subscription)."""
    return _add_subscriber


@pytest.fixture
def seed_data(app, db_session):
    """An active Stripe subscriber with a one-meal entitlement on SERVICE_DATE.

    Returns plain ids alongside the objects so tests can re-query freely.
    """
    customer, subscription = _add_subscriber(
        provider_customer_id="cus_seed",
        provider_subscription_id="sub_seed",
    )
    entitlement = Entitlement(
        customer_id=customer.id,
        service_date=SERVICE_DATE,
        meals_allowed=1,
        meals_redeemed=0,
    )
    _db.session.add(entitlement)
    _db.session.commit()

    return {
        "customer": customer,
        "customer_id": customer.id,
        "subscription": subscription,
        "subscription_id": subscription.id,
        "entitlement": entitlement,
        "entitlement_id": entitlement.id,
        "service_date": SERVICE_DATE,
    }


@pytest.fixture
def make_token(app):
    """Mint and store a meal token, bypassing delivery.

    Expiry defaults to an hour from now so tests do not depend on the
    calendar date of SERVICE_DATE.
    """
    from app.models.meal_token import MealToken
    from app.services.signing_service import sign_daily_token
    from app.services.token_service import generate_short_code

    def _make(customer_id, service_date=SERVICE_DATE, expires_at=None, store=True):
        jti = str(uuid.uuid4())
        issued_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        expires_at = expires_at or datetime.now(timezone.utc) + timedelta(hours=1)
        signed = sign_daily_token(customer_id, service_date, jti, issued_at, expires_at)
        token = MealToken(
            customer_id=customer_id,
            service_date=service_date,
            jti=jti,
            short_code=generate_short_code(),
            jwt_token=signed,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        if store:
            _db.session.add(token)
            _db.session.commit()
        return token

    return _make


@pytest.fixture
def kiosk_token(app):
    """Create a kiosk session and return its bearer token."""
    from app.services.kiosk_service import create_kiosk_session

    token, _ = create_kiosk_session("front-counter", location="Main hall")
    return token
