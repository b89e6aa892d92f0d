"""Pytest fixtures: test client, test DB (in-memory SQLite), scripted Paystack gateway."""
import os
import threading

import pytest
from fastapi.testclient import TestClient

# Must be set before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("PAYSTACK_BASE_URL", "https://paystack.test")
os.environ.setdefault("CLIENT_BASE_URL", "https://learn.example.com")
# High limits so the whole suite can hammer verify
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("RATE_LIMIT_VERIFY_PER_MINUTE", "10000")

from sqlmodel import Session, SQLModel

from app.api.deps import get_payment_gateway
from app.core.config import settings
from app.core.database import build_engine, engine
from app.core.security import create_access_token
from app.main import app
from app.models import Course, User
from app.services import transactions
from app.services.paystack import CheckoutSession, GatewayStatus, GatewayVerification, PaystackClient


class FakeGateway(PaystackClient):
    """
    Paystack stand-in. script(reference, *outcomes): each verify() consumes one outcome, the last
    one repeats. An outcome is a GatewayVerification, an exception instance (raised) or a
    callable(reference) returning either. Unscripted references are unknown to the gateway.
    """

    def __init__(self) -> None:
        super().__init__(secret_key=settings.paystack_secret_key, base_url="https://paystack.test")
        self.verify_calls: list[str] = []
        self.initialize_calls: list[dict] = []
        self.initialize_error: Exception | None = None
        self._outcomes: dict[str, list] = {}
        self._lock = threading.Lock()

    def script(self, reference: str, *outcomes) -> None:
        self._outcomes[reference] = list(outcomes)

    def paid(self, reference: str, amount: int, currency: str = "NGN") -> GatewayVerification:
        return GatewayVerification(
            reference=reference,
            status=GatewayStatus.PAID,
            amount=amount,
            currency=currency,
            gateway_status="success",
            raw_response={"status": True, "data": {"status": "success", "amount": amount, "currency": currency}},
        )

    def declined(self, reference: str, gateway_status: str = "failed") -> GatewayVerification:
        return GatewayVerification(
            reference=reference,
            status=GatewayStatus.FAILED,
            gateway_status=gateway_status,
            raw_response={"status": True, "data": {"status": gateway_status}},
        )

    def verify(self, reference: str) -> GatewayVerification:
        with self._lock:
            self.verify_calls.append(reference)
            queue = self._outcomes.get(reference)
            if not queue:
                outcome = None
            elif len(queue) > 1:
                outcome = queue.pop(0)
            else:
                outcome = queue[0]
        if callable(outcome):
            outcome = outcome(reference)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return GatewayVerification(reference=reference, status=GatewayStatus.FAILED, gateway_status="not_found")
        return outcome

    def initialize(self, *, email, amount, reference, callback_url=None, currency=None, metadata=None) -> CheckoutSession:
        self.initialize_calls.append(
            {
                "email": email,
                "amount": amount,
                "reference": reference,
                "callback_url": callback_url,
                "currency": currency,
                "metadata": metadata,
            }
        )
        if self.initialize_error is not None:
            raise self.initialize_error
        return CheckoutSession(
            reference=reference,
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code=f"ac_{reference}",
        )


@pytest.fixture(autouse=True)
def _fresh_tables():
    """The in-memory database is shared by the whole session; every test starts empty."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture(scope="function")
def client(gateway):
    """TestClient; lifespan creates the tables, the fake gateway replaces Paystack."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def student(db) -> User:
    user = User(email="student@example.com", full_name="Ada Student")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_student(db) -> User:
    user = User(email="other@example.com", full_name="Other Student")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _bearer(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest.fixture
def auth_headers(student) -> dict:
    return _bearer(student.id)


@pytest.fixture
def other_headers(other_student) -> dict:
    return _bearer(other_student.id)


@pytest.fixture
def course(db) -> Course:
    c = Course(title="Python for Data Analysis", slug="python-data-analysis", price=5000, currency="NGN", is_published=True)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture
def make_transaction(db):
    def _make(reference: str, *, user_id: int = 1, course_id: int = 1, amount: int = 5000, currency: str = "NGN"):
        return transactions.create_transaction(db, reference, user_id, course_id, amount, currency)

    return _make


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite for tests where several sessions/threads hit the database at once."""
    eng = build_engine(f"sqlite:///{tmp_path / 'concurrency.db'}")
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()
