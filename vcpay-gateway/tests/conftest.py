"""Pytest fixtures for testing"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator, List
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from vcpay_gateway.api.dependencies import get_notifier, get_security_policy, get_verifier_client
from vcpay_gateway.api.main import create_app
from vcpay_gateway.domain.models import ProofShare, ProofState
from vcpay_gateway.domain.security import SecurityPolicy
from vcpay_gateway.infrastructure.database.models import AccountRow, Base
from vcpay_gateway.infrastructure.database.session import get_db
from vcpay_gateway.services.authorization import PaymentOrchestrator
from vcpay_gateway.services.security_actions import SecurityActions


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CARDHOLDER = "Alice Smith"
LAST4 = "4242"
CORRECT_PIN = "1234"


class FakeClock:
    """Deterministic clock the tests can move forward"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> SecurityPolicy:
    return SecurityPolicy.from_thresholds(2, 5)


@pytest.fixture
def verifier() -> MagicMock:
    """Configured verifier whose proof is already accepted with Alice's claims"""
    verifier = MagicMock()
    verifier.is_configured.return_value = True
    verifier.request_proof = AsyncMock(return_value="proof-1")
    verifier.share_proof = AsyncMock(
        return_value=ProofShare(qr_url="openid4vp://proof?id=proof-1", app_url="https://wallet.example/proof-1")
    )
    verifier.get_proof_state = AsyncMock(
        return_value=ProofState(state="ACCEPTED", claims={"cardHolderName": CARDHOLDER, "last4Digits": LAST4})
    )
    verifier.revoke = AsyncMock(return_value=None)
    verifier.suspend = AsyncMock(return_value=None)
    return verifier


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def scheduled() -> List[tuple]:
    """Side effects queued by the orchestrator: (func, args, kwargs)"""
    return []


@pytest.fixture
def orchestrator(
    db: Session,
    verifier: MagicMock,
    notifier: AsyncMock,
    policy: SecurityPolicy,
    clock: FakeClock,
    scheduled: List[tuple],
) -> PaymentOrchestrator:
    def scheduler(func, *args, **kwargs):
        scheduled.append((func, args, kwargs))

    return PaymentOrchestrator(
        db=db,
        verifier=verifier,
        notifier=notifier,
        policy=policy,
        actions=SecurityActions(verifier, notifier, timeout=1.0, max_retries=2, backoff_base=0),
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def account(db: Session) -> AccountRow:
    """Alice: balance 100.00, PIN 1234, credential cred-alice"""
    row = AccountRow(
        id="acc_alice",
        cardholder_name=CARDHOLDER,
        email="alice@example.com",
        pan_last4=LAST4,
        balance_cents=10000,
        pin=CORRECT_PIN,
        credential_id="cred-alice",
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def set_balance(db: Session):
    def _set(account_id: str, balance: Decimal) -> None:
        db.query(AccountRow).filter(AccountRow.id == account_id).update(
            {"balance_cents": int(balance * 100)}, synchronize_session=False
        )
        db.commit()

    return _set


@pytest.fixture
def balance_cents(db: Session):
    def _get(account_id: str) -> int:
        row = db.query(AccountRow).filter(AccountRow.id == account_id).populate_existing().one()
        return row.balance_cents

    return _get


@pytest.fixture
def processing_request(orchestrator: PaymentOrchestrator):
    """Create a request and drive it to PROCESSING through the (mocked) verifier"""

    async def _drive(amount: str = "50.00", merchant_id: str = "m1"):
        created = await orchestrator.create_payment_request(Decimal(amount), merchant_id, "Coffee beans")
        await orchestrator.begin_proof_exchange(created.id)
        return await orchestrator.poll_and_advance(created.id)

    return _drive


@pytest.fixture
def client(db: Session, verifier: MagicMock, notifier: AsyncMock, policy: SecurityPolicy) -> TestClient:
    """Create FastAPI test client with test database and mocked collaborators"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_verifier_client] = lambda: verifier
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_security_policy] = lambda: policy
    return TestClient(app)
