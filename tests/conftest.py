"""Pytest fixtures for testing"""

import httpx
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator, List
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from repayment_engine.api.dependencies import get_sms_client
from repayment_engine.api.main import create_app
from repayment_engine.infrastructure.clients.sms import SmsClient
from repayment_engine.infrastructure.database.atomic_store import SqlAlchemyAtomicStore
from repayment_engine.infrastructure.database.models import (
    Base,
    C2BTransaction,
    Customer,
    Loan,
    LoanInstallment,
    TenantSmsSettings,
)
from repayment_engine.infrastructure.database.session import get_db


# Test database: one shared in-memory connection
TEST_DATABASE_URL = "sqlite://"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TENANT = "tenant-a"


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
def store(db: Session) -> SqlAlchemyAtomicStore:
    return SqlAlchemyAtomicStore(db)


@pytest.fixture
def sms_requests() -> List[httpx.Request]:
    """Requests captured by the fake SMS gateway"""
    return []


@pytest.fixture
def sms_client(sms_requests: List[httpx.Request]) -> SmsClient:
    """SMS client whose gateway always answers 200"""

    def handler(request: httpx.Request) -> httpx.Response:
        sms_requests.append(request)
        return httpx.Response(200, json={"status": "queued"})

    return SmsClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)))


@pytest.fixture
def client(db: Session, sms_client: SmsClient) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sms_client] = lambda: sms_client
    return TestClient(app)


@pytest.fixture
def make_customer(db: Session):
    def _make(customer_id: str = "cust-1", mobile: str = "0711000001", tenant_id: str = TENANT, **kwargs) -> Customer:
        customer = Customer(
            id=customer_id,
            tenant_id=tenant_id,
            first_name=kwargs.pop("first_name", "Jane"),
            surname=kwargs.pop("surname", "Wanjiru"),
            mobile=mobile,
            **kwargs,
        )
        db.add(customer)
        db.commit()
        return customer

    return _make


@pytest.fixture
def make_loan(db: Session):
    def _make(customer: Customer, loan_id: str = "loan-1", installments: List[dict] | None = None, **kwargs) -> Loan:
        loan = Loan(id=loan_id, tenant_id=customer.tenant_id, customer_id=customer.id, **kwargs)
        db.add(loan)
        for number, inst in enumerate(installments or [], start=1):
            db.add(
                LoanInstallment(
                    loan_id=loan_id,
                    installment_number=number,
                    principal_amount=Decimal(str(inst.get("principal", 0))),
                    interest_amount=Decimal(str(inst.get("interest", 0))),
                    penalty_amount=Decimal(str(inst.get("penalty", 0))),
                    net_penalty=inst.get("net_penalty"),
                    status=inst.get("status", "pending"),
                )
            )
        db.commit()
        return loan

    return _make


@pytest.fixture
def make_active_loan(make_loan):
    """Disbursed loan currently being repaid"""

    def _make(customer: Customer, loan_id: str = "loan-1", installments: List[dict] | None = None, **kwargs) -> Loan:
        kwargs.setdefault("status", "disbursed")
        kwargs.setdefault("repayment_state", "ongoing")
        kwargs.setdefault("disbursed_at", datetime(2026, 1, 5, tzinfo=timezone.utc))
        return make_loan(customer, loan_id, installments, **kwargs)

    return _make


@pytest.fixture
def make_transaction(db: Session):
    counter = {"n": 0}

    def _make(
        transaction_id: str | None = None,
        amount: str = "1000",
        phone_number: str = "254711000001",
        billref: str | None = None,
        tenant_id: str | None = TENANT,
        **kwargs,
    ) -> C2BTransaction:
        counter["n"] += 1
        tx = C2BTransaction(
            transaction_id=transaction_id or f"TX{counter['n']:06d}",
            tenant_id=tenant_id,
            phone_number=phone_number,
            first_name=kwargs.pop("first_name", "JANE"),
            amount=Decimal(amount),
            billref=billref,
            transaction_time=kwargs.pop(
                "transaction_time", datetime(2026, 3, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"])
            ),
            **kwargs,
        )
        db.add(tx)
        db.commit()
        return tx

    return _make


@pytest.fixture
def sms_settings(db: Session) -> TenantSmsSettings:
    config = TenantSmsSettings(
        tenant_id=TENANT,
        base_url="https://sms.example.test/send",
        api_key="key-123",
        partner_id="42",
        shortcode="LENDER",
    )
    db.add(config)
    db.commit()
    return config
