from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from givingcore.api.rate_limit import limiter  # noqa: E402
from givingcore.core.config import settings  # noqa: E402
from givingcore.core.exceptions import ProviderCallError  # noqa: E402
from givingcore.db import session as db_session  # noqa: E402
from givingcore.db.base import Base  # noqa: E402
from givingcore.db.session import SessionLocal  # noqa: E402
from givingcore.models.enums import (  # noqa: E402
    DonationStatus,
    PaymentProvider,
    RecurringStatus,
    TenantSubscriptionStatus,
    WebhookProvider,
)
from givingcore.models.models import Donation, Member, RecurringDonation, TenantSubscription  # noqa: E402
from givingcore.services import realtime  # noqa: E402
from givingcore.services.payment_providers import ProviderClients  # noqa: E402
from givingcore.storage.evidence_store import EvidenceStore  # noqa: E402

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")

STRIPE_SECRET = "whsec_test_giving"
STRIPE_PLATFORM_SECRET = "whsec_test_platform"
PAYSTACK_SECRET = "sk_test_paystack"
PAYSTACK_PLATFORM_SECRET = "sk_test_paystack_platform"

test_engine = create_engine(
    TEST_DATABASE_URL,
    future=True,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Ensure application code uses the test engine
settings.ENV = "test"  # type: ignore[attr-defined]
db_session.engine = test_engine  # type: ignore[assignment]
SessionLocal.configure(bind=test_engine)
limiter.enabled = False


@pytest.fixture(autouse=True)
def _reset_database_state():
    """Ensure each test sees a fresh database schema."""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield


@pytest.fixture(autouse=True)
def _isolate_side_channels(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_LOG_FILE", str(tmp_path / "audit.log"))
    realtime.reset()
    yield
    realtime.reset()


@pytest.fixture
def db_session():
    """Provide a database session for tests."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------

class FakeStripeGateway:
    """In-memory stand-in for ``StripeGateway``; records every call."""

    name = "stripe"

    def __init__(self, payouts=None, transactions=None, error: str | None = None):
        self.payouts = payouts or []
        self.transactions = transactions or {}
        self.subscriptions: dict[str, dict] = {}
        self.error = error
        self.calls: list[tuple] = []

    def _maybe_fail(self):
        if self.error:
            raise ProviderCallError(self.name, self.error, provider_status=400)

    def iter_payouts(self, from_date=None, to_date=None):
        self.calls.append(("iter_payouts", from_date, to_date))
        self._maybe_fail()
        return iter(self.payouts)

    def iter_payout_transactions(self, payout_id):
        self.calls.append(("iter_payout_transactions", payout_id))
        return iter(self.transactions.get(payout_id, []))

    def upload_evidence_file(self, content: bytes, filename: str) -> str:
        self.calls.append(("upload_evidence_file", content, filename))
        self._maybe_fail()
        return "file_test_123"

    def update_dispute(self, dispute_id, evidence, submit=False):
        self.calls.append(("update_dispute", dispute_id, evidence))
        self._maybe_fail()
        return dispute_id

    def submit_dispute(self, dispute_id):
        self.calls.append(("submit_dispute", dispute_id))
        self._maybe_fail()
        return dispute_id

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        self._maybe_fail()
        return self.subscriptions[subscription_id]


class FakePaystackClient:
    name = "paystack"

    def __init__(self, settlements=None, transactions=None, error: str | None = None):
        self.settlements = settlements or []
        self.transactions = transactions or {}
        self.subscriptions: dict[str, dict] = {}
        self.error = error
        self.calls: list[tuple] = []

    def iter_settlements(self, from_date=None, to_date=None):
        self.calls.append(("iter_settlements", from_date, to_date))
        return iter(self.settlements)

    def iter_settlement_transactions(self, settlement_id):
        self.calls.append(("iter_settlement_transactions", settlement_id))
        return iter(self.transactions.get(settlement_id, []))

    def add_dispute_evidence(self, dispute_id, **fields):
        self.calls.append(("add_dispute_evidence", dispute_id, fields))
        if self.error:
            raise ProviderCallError(self.name, self.error, provider_status=400)
        return {"id": 9001}

    def fetch_subscription(self, subscription_code):
        self.calls.append(("fetch_subscription", subscription_code))
        if self.error:
            raise ProviderCallError(self.name, self.error, provider_status=404)
        return self.subscriptions[subscription_code]


@pytest.fixture
def stripe_gateway():
    return FakeStripeGateway()


@pytest.fixture
def paystack_client():
    return FakePaystackClient()


@pytest.fixture
def providers(stripe_gateway, paystack_client):
    return ProviderClients(
        stripe=stripe_gateway,
        paystack=paystack_client,
        webhook_secrets={
            WebhookProvider.STRIPE: STRIPE_SECRET,
            WebhookProvider.PAYSTACK: PAYSTACK_SECRET,
            WebhookProvider.STRIPE_PLATFORM: STRIPE_PLATFORM_SECRET,
            WebhookProvider.PAYSTACK_PLATFORM: PAYSTACK_PLATFORM_SECRET,
        },
        stripe_webhook_tolerance=300,
    )


@pytest.fixture
def evidence_store(tmp_path):
    return EvidenceStore(bucket="test-evidence", filesystem_root=tmp_path / "evidence")


@pytest.fixture
def client(providers, evidence_store):
    """FastAPI TestClient with fake providers injected."""
    from fastapi.testclient import TestClient

    from givingcore.api.main import create_app

    return TestClient(create_app(providers=providers, evidence_store=evidence_store))


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------

def _paystack_sign(raw: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()


def _stripe_sign(raw: bytes, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{raw.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def signer():
    """``signer.paystack(payload)`` / ``signer.stripe(payload)`` -> (raw body, signature)."""

    def paystack(payload: dict, secret: str = PAYSTACK_SECRET):
        raw = json.dumps(payload).encode()
        return raw, _paystack_sign(raw, secret)

    def stripe(payload: dict, secret: str = STRIPE_SECRET, timestamp: int | None = None):
        raw = json.dumps(payload).encode()
        return raw, _stripe_sign(raw, secret, timestamp)

    return SimpleNamespace(paystack=paystack, stripe=stripe)


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_donation(db_session):
    def _make(**overrides) -> Donation:
        values = {
            "tenant_id": "tenant-1",
            "church_id": "church-1",
            "amount": Decimal("20.00"),
            "currency": "USD",
            "status": DonationStatus.PENDING,
            "provider": PaymentProvider.STRIPE,
            "provider_ref": "cs_test_1",
        }
        values.update(overrides)
        donation = Donation(**values)
        db_session.add(donation)
        db_session.commit()
        return donation

    return _make


@pytest.fixture
def make_member(db_session):
    def _make(**overrides) -> Member:
        values = {
            "tenant_id": "tenant-1",
            "church_id": "church-1",
            "first_name": "Ada",
            "last_name": "Obi",
            "email": "ada@example.com",
            "phone": "+2348000000000",
        }
        values.update(overrides)
        member = Member(**values)
        db_session.add(member)
        db_session.commit()
        return member

    return _make


@pytest.fixture
def make_recurring(db_session):
    def _make(**overrides) -> RecurringDonation:
        values = {
            "tenant_id": "tenant-1",
            "church_id": "church-1",
            "amount": Decimal("50.00"),
            "currency": "NGN",
            "status": RecurringStatus.ACTIVE,
            "provider": PaymentProvider.PAYSTACK,
            "provider_ref": "SUB_123",
        }
        values.update(overrides)
        recurring = RecurringDonation(**values)
        db_session.add(recurring)
        db_session.commit()
        return recurring

    return _make


@pytest.fixture
def make_subscription(db_session):
    def _make(**overrides) -> TenantSubscription:
        values = {
            "tenant_id": "tenant-1",
            "plan_code": "growth",
            "status": TenantSubscriptionStatus.ACTIVE,
            "provider": PaymentProvider.PAYSTACK,
            "provider_ref": "SUB_platform1",
            "provider_metadata": {},
        }
        values.update(overrides)
        subscription = TenantSubscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make
