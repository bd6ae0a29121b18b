"""
conftest.py — Shared test fixtures for dealflow

Provides an in-memory SQLite database, a FastAPI TestClient with auth
overrides, one user per role, and fixtures that walk a deal through the
pipeline using the real services (verified bill -> case -> bid -> lock ->
NBFC approval -> transaction).

Business Rules:
- All tests run against an isolated in-memory DB
- Auth is overridden on the client; the acting user is switchable via act_as()
- Notifications deliver inline and only log (no webhook configured)
- Each test function gets fresh tables

Called by: all test files via pytest autodiscovery
Depends on: dealflow.models (Base), dealflow.database (get_db), dealflow.dependencies
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing dealflow modules
os.environ["NOTIFY_IN_BACKGROUND"] = "0"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.models import Base, Company, Nbfc, SubContractor, User
from dealflow.state_machines import record_status

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Database ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _user(db: Session, email: str, role: str, **extra) -> User:
    user = User(email=email, name=email.split("@")[0], role=role, is_active=True, **extra)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ── Parties ──────────────────────────────────────────────────────────


@pytest.fixture()
def company(db_session: Session) -> Company:
    """An ACTIVE EPC buyer."""
    co = Company(name="Tata Projects", email="ap@tataprojects.in", pan="AAACT1234Q", gstin="27AAACT1234Q1Z5")
    record_status(co, "ACTIVE", notes="seed")
    db_session.add(co)
    db_session.commit()
    return co


@pytest.fixture()
def seller(db_session: Session, company: Company) -> SubContractor:
    """An ACTIVE, LOW-risk seller referred by `company`."""
    sc = SubContractor(
        company_name="Shree Ganesh Electricals",
        contact_name="Ravi Kumar",
        email="ravi@sge.in",
        pan="ABCPK1234F",
        gstin="27ABCPK1234F1Z9",
        epc_company_id=company.id,
        risk_category="LOW",
        last_activity_at=datetime.now(timezone.utc),
    )
    record_status(sc, "ACTIVE", notes="seed")
    db_session.add(sc)
    db_session.commit()
    return sc


# ── Users, one per role ──────────────────────────────────────────────


@pytest.fixture()
def admin_user(db_session: Session) -> User:
    return _user(db_session, "admin@dealflow.in", "admin")


@pytest.fixture()
def founder(db_session: Session) -> User:
    return _user(db_session, "founder@dealflow.in", "founder")


@pytest.fixture()
def ops_manager(db_session: Session) -> User:
    return _user(db_session, "opsmanager@dealflow.in", "ops_manager")


@pytest.fixture()
def ops_user(db_session: Session) -> User:
    return _user(db_session, "ops@dealflow.in", "ops")


@pytest.fixture()
def rmt_user(db_session: Session) -> User:
    return _user(db_session, "rmt@dealflow.in", "rmt")


@pytest.fixture()
def sales_user(db_session: Session) -> User:
    return _user(db_session, "sales@dealflow.in", "sales")


@pytest.fixture()
def epc_user(db_session: Session, company: Company) -> User:
    return _user(db_session, "finance@tataprojects.in", "epc", company_id=company.id)


@pytest.fixture()
def seller_user(db_session: Session, seller: SubContractor) -> User:
    return _user(db_session, "ravi.login@sge.in", "subcontractor", sub_contractor_id=seller.id)


# ── Lenders ──────────────────────────────────────────────────────────


def make_nbfc(db: Session, code: str, **fields) -> Nbfc:
    defaults = dict(
        name=f"{code} Finance",
        contact_email=f"credit@{code.lower()}.in",
        accepted_risk_levels=["LOW", "MEDIUM"],
        min_deal_size=0,
        max_deal_size=None,
        approval_rate=70,
        avg_interest_rate=14,
        avg_processing_days=5,
        preference_score=60,
    )
    defaults.update(fields)
    nbfc = Nbfc(code=code, **defaults)
    record_status(nbfc, "ACTIVE", notes="seed")
    db.add(nbfc)
    db.commit()
    return nbfc


@pytest.fixture()
def nbfc_factory(db_session: Session):
    """make(code, **fields) -> ACTIVE Nbfc with sensible defaults."""
    return lambda code, **fields: make_nbfc(db_session, code, **fields)


@pytest.fixture()
def nbfc(db_session: Session) -> Nbfc:
    return make_nbfc(db_session, "NBFCA", monthly_capacity=50_000_000)


@pytest.fixture()
def nbfc_user(db_session: Session, nbfc: Nbfc) -> User:
    return _user(db_session, "credit.login@nbfca.in", "nbfc", nbfc_id=nbfc.id)


# ── Deal pipeline ────────────────────────────────────────────────────


@pytest.fixture()
def verified_bill(db_session, seller, company, ops_user):
    from dealflow.services import case_service

    bill = case_service.create_bill(
        db_session, ops_user,
        sub_contractor_id=seller.id, company_id=company.id,
        bill_number="INV-2026-0042", amount=2_500_000,
    )
    return case_service.verify_bill(db_session, bill.id, ops_user, True, "GST invoice matches PO")


@pytest.fixture()
def new_case(db_session, verified_bill, seller_user):
    """READY_FOR_COMPANY_REVIEW."""
    from dealflow.services import case_service

    return case_service.create_case(db_session, seller_user, verified_bill.id)


@pytest.fixture()
def verified_case(db_session, new_case, epc_user):
    """EPC_VERIFIED."""
    from dealflow.services import case_service

    return case_service.review_case(db_session, new_case.id, epc_user, True, "Work certified")


@pytest.fixture()
def bid(db_session, verified_case, epc_user):
    """SUBMITTED bid of 2,400,000 for 60 days; case at BID_PLACED."""
    from dealflow.services import bid_service

    return bid_service.place_bid(db_session, epc_user, verified_case.id, 2_400_000, 60)


@pytest.fixture()
def locked_case(db_session, bid, epc_user):
    """COMMERCIAL_LOCKED on the original bid terms."""
    from dealflow.models import Case
    from dealflow.services import bid_service

    bid_service.lock_commercial(db_session, bid.id, epc_user)
    return db_session.get(Case, bid.case_id)


@pytest.fixture()
def approved_case(db_session, locked_case, nbfc, ops_user, nbfc_user):
    """NBFC_APPROVED by `nbfc` at 12% for 7 days, 80% funding."""
    from dealflow.services import nbfc_service

    nbfc_service.share_case(db_session, locked_case.id, [nbfc.id], ops_user)
    nbfc_service.respond(db_session, locked_case.id, nbfc_user, True,
                         interest_rate=12, funding_percentage=80, tenor_days=7)
    return locked_case


@pytest.fixture()
def transaction(db_session, approved_case, ops_user):
    """PENDING_ESCROW."""
    from dealflow.services import transaction_service

    return transaction_service.create_transaction(db_session, approved_case.id, ops_user)


@pytest.fixture()
def disbursed(db_session, transaction, ops_user):
    """DISBURSED, due in 7 days."""
    from dealflow.services import transaction_service

    transaction_service.setup_escrow(
        db_session, transaction.id, ops_user,
        tra_reference="TRA-001", account_number="50200012345678", bank_name="HDFC Bank", ifsc="HDFC0000123",
    )
    transaction_service.disburse(db_session, transaction.id, ops_user, "initiate", "UTR001")
    return transaction_service.disburse(db_session, transaction.id, ops_user, "complete", "UTR001")


# ── HTTP client ──────────────────────────────────────────────────────


@pytest.fixture()
def client(db_session: Session, admin_user: User):
    """FastAPI TestClient with auth overridden.

    The acting user defaults to admin_user; switch with client.act_as(user).
    """
    from dealflow.database import get_db
    from dealflow.dependencies import require_user
    from dealflow.main import app

    current = {"user": admin_user}

    def _override_db():
        yield db_session

    def _override_user():
        return current["user"]

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[require_user] = _override_user

    with TestClient(app) as c:
        c.act_as = lambda user: current.__setitem__("user", user)
        yield c

    app.dependency_overrides.clear()


@pytest.fixture()
def session_factory(db_session: Session):
    """Patch SessionLocal so scheduler jobs use the test DB (close() disabled)."""
    from unittest.mock import patch

    original_close = db_session.close
    db_session.close = lambda: None
    with patch("dealflow.database.SessionLocal", return_value=db_session):
        yield db_session
    db_session.close = original_close
