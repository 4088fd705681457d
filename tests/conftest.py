import os

# must be set before musicstore is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from musicstore.auth import verify_token
from musicstore.database import Base, get_db
from musicstore.errors import ChargeOutcomeUnknown, GatewayKeyConflict, OrderPersistFailure
from musicstore.models import Customer
from musicstore.main import app as fastapi_app
from musicstore.repository import SqlOrderStore
from musicstore.routes import get_gateway

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway:
    """Stand-in for StripeGateway that counts calls.

    Follows Stripe's idempotency rules: a key seen before with the same
    parameters returns the charge it made the first time without billing
    again; the same key with other parameters is rejected. Every token call
    creates a new customer, as ``stripe.Customer.create`` does.
    """

    def __init__(self, reference="cus_abc"):
        self.reference = reference
        self.token_error = None
        self.charge_error = None
        # bill the card, then lose the response
        self.drop_after_billing = False
        # Charge.search has not indexed new charges yet
        self.search_lag = False
        self.found_charges = {}
        self.customer_calls = []
        self.charge_calls = []
        self.find_calls = []
        self.billed = []
        self.by_key = {}

    def create_customer_from_token(self, token):
        self.customer_calls.append(token)
        if self.token_error:
            raise self.token_error
        if len(self.customer_calls) == 1:
            return self.reference
        return f"{self.reference}_{len(self.customer_calls)}"

    def charge(self, amount, currency, description, reference,
               idempotency_key=None, metadata=None):
        params = {
            "amount": amount,
            "currency": currency,
            "description": description,
            "reference": reference,
            "metadata": metadata,
        }
        self.charge_calls.append(dict(params, idempotency_key=idempotency_key))
        if self.charge_error:
            raise self.charge_error

        if idempotency_key in self.by_key:
            first_params, charge_id = self.by_key[idempotency_key]
            if first_params != params:
                raise GatewayKeyConflict(
                    "Keys for idempotent requests can only be used with the same parameters")
            return charge_id

        charge_id = f"ch_{len(self.billed) + 1}"
        self.billed.append(dict(params, charge_id=charge_id, idempotency_key=idempotency_key))
        if idempotency_key:
            self.by_key[idempotency_key] = (params, charge_id)
        if self.drop_after_billing:
            raise ChargeOutcomeUnknown("connection reset after charge")
        return charge_id

    def find_charge(self, intent_id):
        self.find_calls.append(intent_id)
        if not self.search_lag:
            for charge in self.billed:
                if (charge["metadata"] or {}).get("intent_id") == intent_id:
                    return charge["charge_id"]
        return self.found_charges.get(intent_id)

    def billed_for(self, intent_id):
        return [c for c in self.billed if (c["metadata"] or {}).get("intent_id") == intent_id]


class FlakyOrderStore(SqlOrderStore):
    """SqlOrderStore whose writes fail while ``broken`` is set."""

    def __init__(self, db):
        super().__init__(db)
        self.broken = False
        self.add_calls = 0

    def add(self, order):
        self.add_calls += 1
        if self.broken:
            raise OrderPersistFailure("database is gone")
        return super().add(order)


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
def orders(db):
    return FlakyOrderStore(db)


@pytest.fixture
def customer(db):
    c = Customer(id=1, name="Jane", email="jane@example.com", password_hash="x")
    db.add(c)
    db.commit()
    return c


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(gateway):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[verify_token] = lambda: True
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
