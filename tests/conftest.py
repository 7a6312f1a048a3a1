import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

# Override settings for tests before importing settlement modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_mock"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_mock"

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from settlement.config import settings
from settlement.main import app
from settlement.models import Order, ProviderProfile, User
from settlement.models.database import Base, get_db
from settlement.models.order import EscrowStatus, PaymentSource
from settlement.models.user import FeeTier, PlatformRole
from settlement.services import ledger, orders

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db_session = TestSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_user(db: Session, email: str, **kwargs) -> User:
    user = User(email=email, display_name=email.split("@")[0].title(), **kwargs)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def buyer(db: Session) -> User:
    return _make_user(db, "buyer@example.com", stripe_customer_id="cus_buyer")


@pytest.fixture
def seller(db: Session) -> User:
    return _make_user(db, "seller@example.com", fee_tier=FeeTier.DEFAULT.value)


@pytest.fixture
def mediator(db: Session) -> User:
    return _make_user(db, "mediator@example.com", role=PlatformRole.MEDIATOR.value)


@pytest.fixture
def outsider(db: Session) -> User:
    return _make_user(db, "outsider@example.com")


@pytest.fixture
def provider(db: Session, seller: User) -> ProviderProfile:
    profile = ProviderProfile(user_id=seller.id, display_name="Seller Studio", stripe_account_id="acct_test")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def make_token(user_id: int, **claims) -> str:
    payload = {"sub": str(user_id), "exp": datetime.now(timezone.utc) + timedelta(hours=1), **claims}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def token_for() -> Callable[..., str]:
    return make_token


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Build bearer headers for any user."""

    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user.id, type='access')}"}

    return _headers


@pytest.fixture
def make_order(db: Session, buyer: User, seller: User) -> Callable[..., Order]:
    """Create an order through the service, optionally already funded."""

    def _make(
        order_type: str = "booking",
        total_amount: int = 10000,
        funded: bool = False,
        source: str = PaymentSource.CARD.value,
    ) -> Order:
        order = orders.create_order(
            db,
            buyer=buyer,
            seller_id=seller.id,
            order_type=order_type,
            total_amount=total_amount,
        )
        if funded:
            if source == PaymentSource.BALANCE.value:
                ledger.adjust_balance(db, buyer.id, total_amount, "top_up", idempotency_key=f"seed-{order.id}")
                orders.pay_order_from_balance(db, buyer, order.id)
            else:
                order.escrow_status = EscrowStatus.HELD.value
                order.payment_source = PaymentSource.CARD.value
                order.stripe_payment_intent_id = f"pi_seed_{order.id}"
                db.commit()
            db.refresh(order)
        return order

    return _make


@pytest.fixture
def advance(db: Session) -> Callable[..., Order]:
    """Apply a sequence of (actor, action) steps with a reason on each."""

    def _advance(order: Order, *steps: tuple[User, str]) -> Order:
        for actor, action in steps:
            orders.perform_order_action(db, actor, order.id, action, reason="test reason")
        db.refresh(order)
        return order

    return _advance
