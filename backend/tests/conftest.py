"""
Test fixtures for the Campus Ledger.

Tests run in-process: the FastAPI app is driven through httpx's ASGI
transport against a fresh in-memory SQLite database per test. Service-level
tests take the ``db_session`` fixture; API tests take ``client`` and the
role header fixtures.
"""
import os
import tempfile
import uuid
from datetime import date
from types import SimpleNamespace

# Must be set before the app (and its settings) are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUDIT_STORAGE_PATH", tempfile.mkdtemp(prefix="ledger-audit-"))
os.environ.setdefault("PERIOD_CLOSE_SWEEP_ENABLED", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers every table on Base.metadata
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.middleware.auth import create_access_token
from app.schemas.ap import VendorCreate
from app.schemas.gl import AccountCreate, FundCreate
from app.schemas.period import PeriodCreate
from app.services.ap_service import PayablesService
from app.services.coa_service import ChartOfAccountsService
from app.services.period_service import FiscalPeriodService

BASE_URL = "http://test"
SPRING_START = date(2025, 1, 1)
SPRING_END = date(2025, 6, 30)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(token: str) -> dict:
    """Return auth header dict for a given token."""
    return {"Authorization": f"Bearer {token}"}


def token_for(username: str, role: str) -> str:
    return create_access_token({"sub": username, "role": role, "user_id": uuid.uuid4()})


async def seed_ledger(db: AsyncSession) -> SimpleNamespace:
    """Fund, chart of accounts, one open period and a vendor."""
    coa = ChartOfAccountsService(db)
    fund = await coa.create_fund(FundCreate(code="GEN", name="General Operating"), "seed")

    async def account(code, name, account_type, normal_balance, **extra):
        return await coa.create_account(
            AccountCreate(code=code, name=name, account_type=account_type,
                          normal_balance=normal_balance, **extra),
            "seed",
        )

    cash = await account("1000", "Operating Cash", "asset", "debit", fund_id=fund.id)
    ar = await account("1200", "Student Receivables", "asset", "debit",
                       is_control_account=True, subledger="ar")
    ap = await account("2000", "Accounts Payable", "liability", "credit",
                       is_control_account=True, subledger="ap")
    equity = await account("3000", "Fund Balance", "equity", "credit", fund_id=fund.id)
    tuition = await account("4000", "Tuition Income", "income", "credit", fund_id=fund.id)
    expense = await account("5000", "Classroom Supplies", "expense", "debit", fund_id=fund.id)

    period = await FiscalPeriodService(db).create_period(
        PeriodCreate(name="Spring-2025", start_date=SPRING_START, end_date=SPRING_END), "seed"
    )
    vendor = await PayablesService(db).create_vendor(
        VendorCreate(code="OFFICEMAX", name="OfficeMax Supplies"), "seed"
    )
    await db.commit()
    return SimpleNamespace(
        fund=fund.id, cash=cash.id, ar=ar.id, ap=ap.id, equity=equity.id,
        tuition=tuition.id, expense=expense.id, period=period.id, vendor=vendor.id,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    """A fresh in-memory database, schema created, wired into the app."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield factory

    app.dependency_overrides.clear()
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger(session_factory):
    """Seeded ids; committed before the test body runs."""
    async with session_factory() as session:
        return await seed_ledger(session)


@pytest.fixture
def close_policy(monkeypatch):
    """Toggle the period-close policy flags for one test."""
    def _set(require_reconciled: bool = True, require_no_drafts: bool = False):
        monkeypatch.setattr(settings, "REQUIRE_ZERO_DIFFERENCE_CLOSE", require_reconciled)
        monkeypatch.setattr(settings, "REQUIRE_NO_PENDING_DRAFTS", require_no_drafts)
    return _set


# ---------------------------------------------------------------------------
# HTTP client & role headers
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory):
    """Async HTTP client bound to the app in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL, timeout=30.0) as c:
        yield c


@pytest.fixture
def admin_headers():
    """Controller: every permission, including reopen."""
    return auth_headers(token_for("controller", "controller"))


@pytest.fixture
def accountant_headers():
    return auth_headers(token_for("senior", "senior_accountant"))


@pytest.fixture
def junior_headers():
    return auth_headers(token_for("junior", "junior_accountant"))


@pytest.fixture
def bursar_headers():
    return auth_headers(token_for("bursar", "bursar"))


@pytest.fixture
def auditor_headers():
    return auth_headers(token_for("auditor", "auditor"))
