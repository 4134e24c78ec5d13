"""Pytest fixtures for testing"""

import pytest
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Generator
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from koperasi_workflow.config import Settings
from koperasi_workflow.domain.models import Application, ApplicationKind, Decision, Role
from koperasi_workflow.infrastructure.database.models import Base
from koperasi_workflow.infrastructure.memory import InMemoryApplicationStore
from koperasi_workflow.infrastructure.roles import StaticRoleProvider
from koperasi_workflow.services.workflow import WorkflowEngine


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

MEMBER = "member-1"
OTHER_MEMBER = "member-2"
DSP = "officer-dsp"
KETUA = "officer-ketua"
PENGAWAS = "officer-pengawas"
SHOPKEEPER = "officer-shop"

START = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock that advances one minute per reading"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(minutes=1)
        return current

    def jump_to(self, moment: datetime) -> None:
        self.now = moment


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
def settings() -> Settings:
    """Settings with the cooperative's defaults, isolated from any local .env"""
    return Settings(
        _env_file=None,
        loan_interest_rate="12",
        shop_margin_rate="5",
        deposit_interest_rate="6",
        deposit_early_withdrawal_penalty_rate="5",
        supervisor_review_threshold=10_000_000,
    )


@pytest.fixture
def store() -> InMemoryApplicationStore:
    return InMemoryApplicationStore()


@pytest.fixture
def roles() -> StaticRoleProvider:
    return StaticRoleProvider({
        DSP: [Role.DIVISI_SIMPAN_PINJAM],
        KETUA: [Role.KETUA],
        PENGAWAS: [Role.PENGAWAS],
        SHOPKEEPER: [Role.SHOPKEEPER],
    })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workflow(store, roles, settings, clock) -> WorkflowEngine:
    return WorkflowEngine(store, roles, settings=settings, clock=clock)


@pytest.fixture
def cash_loan() -> dict:
    """Cash loan payload below the supervisor threshold"""
    return {
        "loan_type": "CASH_LOAN",
        "amount": 6_000_000,
        "tenor_months": 12,
        "purpose": "Renovasi rumah",
        "bank_account_number": "1234567890",
    }


@pytest.fixture
def large_cash_loan(cash_loan) -> dict:
    """12M / 12 months: needs Pengawas review at the 10M threshold"""
    return {**cash_loan, "amount": 12_000_000}


@pytest.fixture
def online_goods_loan() -> dict:
    return {
        "loan_type": "GOODS_ONLINE",
        "amount": 4_000_000,
        "tenor_months": 10,
        "purpose": "Laptop kerja",
        "item_name": "Laptop 14 inch",
        "item_url": "https://shop.example.com/laptop-14",
    }


@pytest.fixture
def deposit() -> dict:
    return {"amount": 10_000_000, "tenor_months": 12, "agreed_to_terms": True}


@pytest.fixture
def submitted(workflow) -> Callable[..., Application]:
    """Factory: create and submit an application for MEMBER"""

    def make(kind: ApplicationKind, payload: dict, applicant_id: str = MEMBER) -> Application:
        app = workflow.create_draft(kind, applicant_id, payload)
        return workflow.submit(app.id, applicant_id)

    return make


@pytest.fixture
def active_deposit(workflow, submitted, deposit) -> Application:
    """Deposit approved by DSP and Ketua (ACTIVE, matures 2025-03-27)"""
    app = submitted(ApplicationKind.DEPOSIT, deposit)
    workflow.process_approval(app.id, DSP, Decision.APPROVED)
    return workflow.process_approval(app.id, KETUA, Decision.APPROVED)


@pytest.fixture
def disbursable_loan(workflow, submitted, cash_loan) -> Application:
    """Cash loan through both reviews, waiting for the shopkeeper"""
    app = submitted(ApplicationKind.LOAN, cash_loan)
    workflow.process_approval(app.id, DSP, Decision.APPROVED)
    return workflow.process_approval(app.id, KETUA, Decision.APPROVED)


@pytest.fixture
def tx_date() -> date:
    return date(2024, 3, 12)


@pytest.fixture
def disbursed_loan(workflow, disbursable_loan, tx_date) -> Application:
    """6M cash loan paid out and authorized on tx_date: 12 installments of 560,000"""
    workflow.process_disbursement(disbursable_loan.id, SHOPKEEPER, tx_date, "10:30")
    return workflow.process_authorization(disbursable_loan.id, KETUA, tx_date)
