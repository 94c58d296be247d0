import itertools
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AuthContext, get_current_user
from app.models import Base, Payment
from app.services.plans import get_plan, plan_from_amount
from app.services.razorpay_client import RazorpayClient, get_gateway_client

TEST_USER_ID = "user-1"
TEST_KEY_SECRET = "test_secret"

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway(RazorpayClient):
    """Razorpay client that allocates order ids locally; signatures are real HMACs."""

    def __init__(self):
        super().__init__(key_id="rzp_test_key", key_secret=TEST_KEY_SECRET)
        self._ids = itertools.count(1)
        self.orders = []
        self.next_order_id = None

    def create_order(self, amount_minor, currency, receipt, notes=None, timeout=None):
        order_id = self.next_order_id or f"order_{next(self._ids)}"
        self.next_order_id = None
        order = {
            "id": order_id,
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    def sign(self, order_id: str, payment_id: str) -> str:
        return self.expected_signature(order_id, payment_id)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def now():
    return datetime.utcnow().replace(microsecond=0)


@pytest.fixture(scope="function")
def client(db_session, gateway):
    """Create a test client with overridden dependencies."""

    # Override get_db
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthContext(user_id=TEST_USER_ID)
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    limiter.reset()

    with TestClient(app) as c:
        yield c

    app.dependency_overrides = {}


@pytest.fixture
def make_payment(db_session):
    """Insert a payment directly, bypassing the gateway."""
    counter = itertools.count(1)

    def _make(
        amount=99,
        track_id=None,
        status="completed",
        purpose="track_access",
        user_id=TEST_USER_ID,
        plan_tier=None,
        completed_at=None,
    ):
        n = next(counter)
        tier = plan_tier or plan_from_amount(amount)["id"]
        payment = Payment(
            user_id=user_id,
            gateway_order_id=f"order_fixture_{n}",
            gateway_payment_id=f"pay_fixture_{n}" if status == "completed" else None,
            amount=amount,
            currency="INR",
            plan_tier=tier,
            plan_amount=get_plan(tier)["amount"],
            purpose=purpose,
            track_id=track_id,
            status=status,
            completed_at=completed_at or (datetime.utcnow() if status == "completed" else None),
        )
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _make
