"""
Fiscal Period Tests — calendar rules, lock ordering, close policy, privileged
reopen with cascade, and the lock/reopen history.

Tests 25-42, 187.
"""
from datetime import date

import pytest

from app.errors import (
    OpenPostingsPendingError,
    PeriodLockedError,
    ReconciliationRequiredError,
    ValidationError,
)
from app.schemas.gl import JournalEntryIn, JournalLineIn
from app.schemas.period import PeriodCreate
from app.services.journal_service import JournalService
from app.services.period_service import FiscalPeriodService
from app.services.reconciliation_service import ReconciliationService

BASE_URL = "http://test"

FALL = {"name": "Fall-2025", "start_date": "2025-07-01", "end_date": "2025-12-31"}


async def add_fall(db):
    return await FiscalPeriodService(db).create_period(
        PeriodCreate(name="Fall-2025", start_date=date(2025, 7, 1), end_date=date(2025, 12, 31)),
        "controller",
    )


# ===================================================================
# Tests 25-30: Calendar
# ===================================================================
class TestFiscalCalendar:

    async def test_25_create_contiguous_period(self, client, admin_headers, ledger):
        r = await client.post(f"{BASE_URL}/api/fiscal-periods", headers=admin_headers, json=FALL)
        assert r.status_code == 201, r.text
        assert r.json()["status"] == "open"

        r = await client.get(f"{BASE_URL}/api/fiscal-periods", headers=admin_headers)
        assert [p["name"] for p in r.json()["items"]] == ["Spring-2025", "Fall-2025"]

    async def test_26_overlapping_period_rejected(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods",
            headers=admin_headers,
            json={"name": "Summer-2025", "start_date": "2025-06-01", "end_date": "2025-08-31"},
        )
        assert r.status_code == 400
        assert "overlaps" in r.json()["error"]["message"]

    async def test_27_gap_in_calendar_rejected(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods",
            headers=admin_headers,
            json={"name": "Fall-2025", "start_date": "2025-08-01", "end_date": "2025-12-31"},
        )
        assert r.status_code == 400
        assert "contiguous" in r.json()["error"]["message"]

    async def test_28_period_before_calendar_must_abut(self, db_session, ledger):
        service = FiscalPeriodService(db_session)
        before = await service.create_period(PeriodCreate(
            name="Fall-2024", start_date=date(2024, 7, 1), end_date=date(2024, 12, 31),
        ))
        assert before.status == "open"
        with pytest.raises(ValidationError):
            await service.create_period(PeriodCreate(
                name="Spring-2024", start_date=date(2024, 1, 1), end_date=date(2024, 5, 31),
            ))

    async def test_29_duplicate_name_rejected(self, db_session, ledger):
        with pytest.raises(ValidationError, match="already exists"):
            await FiscalPeriodService(db_session).create_period(PeriodCreate(
                name="Spring-2025", start_date=date(2025, 7, 1), end_date=date(2025, 12, 31),
            ))

    async def test_30_inverted_range_rejected_by_schema(self, client, admin_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods",
            headers=admin_headers,
            json={"name": "Backwards", "start_date": "2025-12-31", "end_date": "2025-07-01"},
        )
        assert r.status_code == 422


# ===================================================================
# Tests 31-36: Locking
# ===================================================================
class TestLockPeriod:

    async def test_31_lock_requires_reconciliation(self, db_session, ledger, close_policy):
        """With the zero-difference policy on, unreconciled control accounts block the lock."""
        close_policy(require_reconciled=True)
        with pytest.raises(ReconciliationRequiredError):
            await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")

    async def test_32_lock_after_clean_reconciliation(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        results = await ReconciliationService(db_session).reconcile_all(ledger.period, "controller")
        assert {r.status for r in results} == {"matched"}

        period = await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")
        assert period.status == "locked"
        assert period.locked_by == "controller"
        assert period.locked_at is not None

    async def test_33_lock_twice_rejected(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False)
        service = FiscalPeriodService(db_session)
        await service.lock_period(ledger.period, "controller")
        with pytest.raises(PeriodLockedError):
            await service.lock_period(ledger.period, "controller")

    async def test_34_periods_lock_in_date_order(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False)
        fall = await add_fall(db_session)
        with pytest.raises(ValidationError, match="Spring-2025"):
            await FiscalPeriodService(db_session).lock_period(fall.id, "controller")

    async def test_35_pending_drafts_block_lock(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False, require_no_drafts=True)
        await JournalService(db_session).create_draft(JournalEntryIn(
            entry_date=date(2025, 3, 1),
            lines=[
                JournalLineIn(account_id=ledger.cash, debit=100),
                JournalLineIn(account_id=ledger.equity, credit=100),
            ],
        ))
        with pytest.raises(OpenPostingsPendingError) as exc:
            await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")
        assert exc.value.details["pending_drafts"] == 1

    async def test_36_drafts_ignored_when_policy_off(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False, require_no_drafts=False)
        await JournalService(db_session).create_draft(JournalEntryIn(
            entry_date=date(2025, 3, 1),
            lines=[
                JournalLineIn(account_id=ledger.cash, debit=100),
                JournalLineIn(account_id=ledger.equity, credit=100),
            ],
        ))
        period = await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")
        assert period.status == "locked"


# ===================================================================
# Tests 37-42: Reopen and history
# ===================================================================
class TestReopenPeriod:

    async def test_37_reopen_requires_reason(self, client, admin_headers, ledger, close_policy):
        close_policy(require_reconciled=False)
        await client.post(f"{BASE_URL}/api/fiscal-periods/{ledger.period}/lock",
                          headers=admin_headers)
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods/{ledger.period}/reopen",
            headers=admin_headers,
            json={"reason": ""},
        )
        assert r.status_code == 422

    async def test_38_blank_reason_rejected_by_service(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False)
        service = FiscalPeriodService(db_session)
        await service.lock_period(ledger.period, "controller")
        with pytest.raises(ValidationError, match="reason"):
            await service.reopen_period(ledger.period, "controller", "   ")

    async def test_39_senior_accountant_cannot_reopen(
        self, client, admin_headers, accountant_headers, ledger, close_policy
    ):
        close_policy(require_reconciled=False)
        await client.post(f"{BASE_URL}/api/fiscal-periods/{ledger.period}/lock",
                          headers=accountant_headers)
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods/{ledger.period}/reopen",
            headers=accountant_headers,
            json={"reason": "Late invoice"},
        )
        assert r.status_code == 403

    async def test_40_reopen_cascades_to_later_locked_periods(
        self, db_session, ledger, close_policy
    ):
        close_policy(require_reconciled=False)
        service = FiscalPeriodService(db_session)
        fall = await add_fall(db_session)
        await service.lock_period(ledger.period, "controller")
        await service.lock_period(fall.id, "controller")

        reopened = await service.reopen_period(ledger.period, "controller", "Audit adjustment")
        assert [p.name for p in reopened] == ["Spring-2025", "Fall-2025"]
        assert all(p.status == "open" for p in reopened)
        assert all(p.locked_by is None for p in reopened)

    async def test_41_reopen_open_period_rejected(self, db_session, ledger):
        with pytest.raises(ValidationError, match="not locked"):
            await FiscalPeriodService(db_session).reopen_period(
                ledger.period, "controller", "No reason to"
            )

    async def test_42_history_records_lock_and_reopen(
        self, client, admin_headers, ledger, close_policy
    ):
        close_policy(require_reconciled=False)
        r = await client.post(f"{BASE_URL}/api/fiscal-periods/{ledger.period}/lock",
                              headers=admin_headers)
        assert r.status_code == 200, r.text
        r = await client.post(
            f"{BASE_URL}/api/fiscal-periods/{ledger.period}/reopen",
            headers=admin_headers,
            json={"reason": "Missed scholarship credit"},
        )
        assert r.status_code == 200, r.text
        assert r.json()["total"] == 1

        r = await client.get(f"{BASE_URL}/api/fiscal-periods/{ledger.period}/history",
                             headers=admin_headers)
        events = r.json()["items"]
        assert [e["action"] for e in events] == ["lock", "reopen"]
        assert events[1]["reason"] == "Missed scholarship credit"
        assert events[1]["actor"] == "controller"


# ===================================================================
# Test 187: Prepending ahead of a locked calendar
# ===================================================================
class TestPrependPeriod:

    async def test_187_no_open_period_before_locked_one(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=False)
        service = FiscalPeriodService(db_session)
        await service.lock_period(ledger.period, "controller")
        fall_2024 = PeriodCreate(name="Fall-2024", start_date=date(2024, 7, 1),
                                 end_date=date(2024, 12, 31))
        with pytest.raises(ValidationError, match="before locked period 'Spring-2025'"):
            await service.create_period(fall_2024)

        await service.reopen_period(ledger.period, "controller", "Prior-year catch-up")
        before = await service.create_period(fall_2024)
        assert before.status == "open"
