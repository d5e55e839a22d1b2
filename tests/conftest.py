import os

# Must be in place before blesspay.database / blesspay.config are imported
os.environ["DATABASE_URL"] = "sqlite:///./test_blesspay.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["JWT_AUDIENCE"] = "authenticated"
os.environ["EXPIRY_SWEEP_INTERVAL"] = "0"

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from blesspay.config import Settings
from blesspay.database import Base, create_db_engine
from blesspay.domain import CallbackEvent, Outcome, ProviderHandle
from blesspay.errors import MalformedPayload, PaymentValidationError
from blesspay.gateways.base import ProviderGateway, load_json
from blesspay import models  # noqa: F401
from blesspay.reconciliation import ReconciliationEngine
from blesspay.store import IntentStore

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_blesspay.db"
engine = create_db_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CALLBACK_SECRET = "whsec_test"


class FakeGateway(ProviderGateway):
    """Provider stand-in speaking the normalized callback shape directly."""

    name = "fakepay"
    currency = "KES"
    signature_header = "x-fake-signature"

    def __init__(self, reference="ABC123"):
        super().__init__(base_url="https://fakepay.test", webhook_secret=CALLBACK_SECRET)
        self.reference = reference
        self.initiate_error = None
        self.query_result = None
        self.initiated = []
        self.queried = []

    def normalize_payer(self, payer_identifier):
        if not payer_identifier or not payer_identifier.strip():
            raise PaymentValidationError("payer required")
        return payer_identifier.strip()

    def initiate(self, intent):
        self.initiated.append(intent)
        if self.initiate_error is not None:
            raise self.initiate_error
        return ProviderHandle(provider_reference=self.reference, checkout_url="https://fakepay.test/pay")

    def normalize_callback(self, raw_payload):
        payload = load_json(raw_payload)
        try:
            return CallbackEvent(
                provider_reference=payload["providerReference"],
                outcome=Outcome(payload["outcome"]),
                amount=payload.get("amount"),
                receipt=payload.get("receipt"),
                reason=payload.get("reason"),
            )
        except (KeyError, ValueError) as e:
            raise MalformedPayload(str(e)) from e

    def query(self, provider_reference):
        self.queried.append(provider_reference)
        if isinstance(self.query_result, Exception):
            raise self.query_result
        return self.query_result


class FrozenClock:
    def __init__(self):
        self.now = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        jwt_secret="test-jwt-secret",
        min_charge_amount=Decimal("1"),
        callback_lookup_attempts=2,
        callback_lookup_delay=0.01,
        pending_ttl_seconds=900,
        expiry_sweep_interval=0,
    )


@pytest.fixture
def store():
    return IntentStore(TestingSessionLocal)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def reconciler(store, fake_gateway, settings, clock, sleeps):
    return ReconciliationEngine(
        store=store,
        gateways={fake_gateway.name: fake_gateway},
        settings=settings,
        clock=clock,
        sleep=sleeps.append,
    )
