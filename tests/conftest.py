"""
Pytest configuration and fixtures for testing
"""
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone

# Point the app engine somewhere harmless before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest_unused.db")

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.core.membership import MembershipTier, ensure_utc
from app.db.base import Base
from app.db.session import get_db
from app.dependencies.services import get_identity_store, get_payment_provider
from app.models.user import User
from app.services.identity_store import IdentityRecord, IdentityStoreError
from app.services.payment_provider import PaymentProviderError, StripePaymentProvider
from app.services.reconciler import MembershipReconciler
from app.services.user_table import UserTable

JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"
WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"
ADMIN_EMAIL = "admin@example.com"
FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeIdentityStore:
    """In-memory stand-in for Supabase Auth user_metadata."""

    def __init__(self):
        self.users = {}
        self.fail_reads = False
        self.fail_writes = False
        self.writes = []

    def add_user(self, user_id, email=None, tier=None, expires_at=None, **metadata):
        self.users[user_id] = {
            "id": user_id,
            "email": email,
            "user_metadata": dict(
                metadata,
                membership_type=tier.value if tier else None,
                subscription_expires_at=expires_at.isoformat() if expires_at else None,
            ),
        }

    def get_user(self, user_id):
        if self.fail_reads:
            raise IdentityStoreError("identity store unavailable")
        payload = self.users.get(user_id)
        return IdentityRecord.from_payload(payload) if payload else None

    def update_membership(self, user_id, tier, expires_at):
        if self.fail_writes:
            raise IdentityStoreError("identity store unavailable")
        if user_id not in self.users:
            raise IdentityStoreError("User not found")
        self.writes.append((user_id, tier, expires_at))
        self.users[user_id]["user_metadata"].update({
            "membership_type": tier.value,
            "subscription_expires_at": expires_at.isoformat() if expires_at else None,
        })

    def tier_of(self, user_id):
        return self.get_user(user_id).membership_type

    def expiry_of(self, user_id):
        return self.get_user(user_id).subscription_expires_at


class FakePaymentProvider(StripePaymentProvider):
    """Real webhook signature checks; canned checkout sessions and payment intents."""

    def __init__(self, webhook_secret=WEBHOOK_SECRET):
        super().__init__("sk_test_fake", webhook_secret)
        self.sessions = {}
        self.payment_intents = {}

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentProviderError(f"No such checkout.session: {session_id}")
        return self.sessions[session_id]

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.payment_intents:
            raise PaymentProviderError(f"No such payment_intent: {payment_intent_id}")
        return self.payment_intents[payment_intent_id]


def add_row(db, user_id, email=None, tier=MembershipTier.FREE, expires_at=None):
    db.add(User(id=user_id, email=email, membership_type=tier.value, subscription_expires_at=expires_at))
    db.commit()


def row_of(db, user_id):
    db.expire_all()
    return db.query(User).filter(User.id == user_id).first()


def row_expiry(db, user_id):
    return ensure_utc(row_of(db, user_id).subscription_expires_at)


def make_token(user_id, email, user_metadata=None, secret=JWT_SECRET, app_metadata=None):
    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
        "user_metadata": user_metadata or {},
        "app_metadata": app_metadata or {},
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id, email, user_metadata=None, app_metadata=None):
    token = make_token(user_id, email, user_metadata, app_metadata=app_metadata)
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(event: dict, secret=WEBHOOK_SECRET):
    """(body, headers) signed the way Stripe signs webhook deliveries."""
    body = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


@pytest.fixture
def db_session():
    """Isolated in-memory SQLite users table per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def identity_store():
    return FakeIdentityStore()


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def reconciler(identity_store, db_session):
    return MembershipReconciler(identity_store, UserTable(db_session), clock=lambda: FIXED_NOW)


@pytest.fixture
def test_settings():
    settings = Settings()
    settings.SUPABASE_JWT_SECRET = JWT_SECRET
    settings.SUPABASE_URL = "https://example.supabase.co"
    settings.STRIPE_SECRET_KEY = "sk_test_fake"
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.CRON_SECRET = CRON_SECRET
    settings.ADMIN_EMAILS = [ADMIN_EMAIL]
    settings.APP_URL = "https://app.example.com"
    settings.RENEWAL_GRACE_BUFFER = True
    return settings


@pytest.fixture
def client(test_settings, identity_store, payment_provider, db_session):
    """FastAPI TestClient with settings, stores and Stripe overridden."""
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_store] = lambda: identity_store
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider

    # Not used as a context manager, so startup (create_all, Alembic) does not run
    yield TestClient(app)

    app.dependency_overrides.clear()
