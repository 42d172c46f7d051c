"""
Reconciliation Tests — subledger totals against control-account activity,
idempotent re-runs, mismatch notifications, resolution with adjustments,
the close gate, the scheduled close sweep and per-control-account scoping.

Tests 100-115, 179-180.
"""
from datetime import date

import pytest

from app.errors import ReconciliationRequiredError, ValidationError
from app.schemas.ap import InvoiceCreate, VendorPaymentCreate
from app.schemas.ar import StudentBillCreate, StudentPaymentCreate, StudentRefundCreate
from app.schemas.gl import AccountCreate, AdjustmentIn, FundCreate, JournalEntryIn, JournalLineIn
from app.services.ap_service import PayablesService
from app.services.ar_service import ReceivablesService
from app.services.coa_service import ChartOfAccountsService
from app.services.journal_service import JournalService
from app.services.notification_service import NotificationService
from app.services.period_service import FiscalPeriodService
from app.services.reconciliation_service import ReconciliationService, run_close_sweep

BASE_URL = "http://test"


def spring_bill(ledger, amount=50000, student="S-1001"):
    return StudentBillCreate(
        student_id=student,
        fund_id=ledger.fund,
        bill_date=date(2025, 1, 15),
        due_date=date(2025, 2, 15),
        line_items=[{"description": "Tuition", "amount": amount,
                     "income_account_id": ledger.tuition}],
    )


def spring_payment(ledger, amount, bill_id=None, student="S-1001"):
    return StudentPaymentCreate(
        student_id=student,
        fund_id=ledger.fund,
        payment_date=date(2025, 2, 1),
        amount=amount,
        allocations=[{"bill_id": bill_id, "amount": amount}] if bill_id else [],
    )


async def stray_ar_posting(db, ledger, amount=500):
    """An AR-sourced GL entry with no subledger record behind it."""
    return await JournalService(db).post_entry(JournalEntryIn(
        entry_date=date(2025, 3, 1),
        memo="Imported without a bill",
        source_type="ar-bill",
        lines=[
            JournalLineIn(account_id=ledger.ar, fund_id=ledger.fund, debit=amount),
            JournalLineIn(account_id=ledger.tuition, credit=amount),
        ],
    ))


# ===================================================================
# Tests 100-105: Matching
# ===================================================================
class TestReconcile:

    async def test_100_bill_and_payment_reconcile(self, db_session, ledger):
        ar = ReceivablesService(db_session)
        bill = await ar.record_bill(spring_bill(ledger))
        await ar.record_payment(spring_payment(ledger, 20000, bill.id))

        rec = await ReconciliationService(db_session).reconcile_period(
            ledger.period, ledger.ar, actor="controller"
        )
        assert rec.status == "matched"
        assert rec.subledger_total == rec.gl_balance == 30000
        assert rec.difference == 0

    async def test_101_rerun_with_same_figures_returns_same_row(self, db_session, ledger):
        recon = ReconciliationService(db_session)
        await ReceivablesService(db_session).record_bill(spring_bill(ledger))
        first = await recon.reconcile_period(ledger.period, ledger.ar)
        second = await recon.reconcile_period(ledger.period, ledger.ar)
        assert first.id == second.id
        assert len(await recon.list_reconciliations(ledger.period)) == 1

    async def test_102_void_nets_out_of_subledger(self, db_session, ledger):
        ar = ReceivablesService(db_session)
        bill = await ar.record_bill(spring_bill(ledger))
        await ar.void_bill(bill.id, "bursar")
        rec = await ReconciliationService(db_session).reconcile_period(ledger.period, ledger.ar)
        assert rec.status == "matched"
        assert rec.subledger_total == rec.gl_balance == 0

    async def test_103_payables_reconcile(self, db_session, ledger):
        ap = PayablesService(db_session)
        invoice = await ap.record_invoice(InvoiceCreate(
            vendor_id=ledger.vendor, invoice_number="INV-1", fund_id=ledger.fund,
            invoice_date=date(2025, 3, 1),
            lines=[{"description": "Paper", "amount": 9000,
                    "expense_account_id": ledger.expense}],
        ))
        await ap.record_payment(VendorPaymentCreate(
            vendor_id=ledger.vendor, fund_id=ledger.fund, payment_date=date(2025, 3, 15),
            amount=4000, allocations=[{"invoice_id": invoice.id, "amount": 4000}],
        ))
        rec = await ReconciliationService(db_session).reconcile_period(ledger.period, ledger.ap)
        assert rec.status == "matched"
        assert rec.gl_balance == 5000

    async def test_104_stray_posting_is_unmatched_and_notified(self, db_session, ledger):
        await ReceivablesService(db_session).record_bill(spring_bill(ledger, amount=1000))
        await stray_ar_posting(db_session, ledger, amount=500)

        rec = await ReconciliationService(db_session).reconcile_period(ledger.period, ledger.ar)
        assert rec.status == "unmatched"
        assert (rec.subledger_total, rec.gl_balance, rec.difference) == (1000, 1500, -500)

        notes = await NotificationService(db_session).list_for_role("controller")
        assert [n.kind for n in notes] == ["reconciliation.unmatched"]
        assert notes[0].resource_id == str(rec.id)

    async def test_105_non_control_account_rejected(self, db_session, ledger):
        with pytest.raises(ValidationError, match="not a control account"):
            await ReconciliationService(db_session).reconcile_period(ledger.period, ledger.cash)


# ===================================================================
# Tests 106-110: Resolution & the close gate
# ===================================================================
class TestResolveAndClose:

    async def test_106_unmatched_blocks_lock(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        recon = ReconciliationService(db_session)
        await stray_ar_posting(db_session, ledger)
        await recon.reconcile_all(ledger.period)
        with pytest.raises(ReconciliationRequiredError):
            await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")

    async def test_107_resolve_with_adjustment(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        recon = ReconciliationService(db_session)
        await stray_ar_posting(db_session, ledger, amount=500)
        results = await recon.reconcile_all(ledger.period)
        unmatched = next(r for r in results if r.status == "unmatched")

        resolved = await recon.resolve(
            unmatched.id,
            "Duplicate import; reversed against tuition",
            "controller",
            AdjustmentIn(
                entry_date=date(2025, 6, 30),
                lines=[
                    JournalLineIn(account_id=ledger.tuition, debit=500),
                    JournalLineIn(account_id=ledger.ar, fund_id=ledger.fund, credit=500),
                ],
            ),
        )
        assert resolved.status == "resolved"
        assert resolved.resolved_by == "controller"
        adjustment = await recon.journal.get_entry(resolved.adjustment_entry_id)
        assert adjustment.source_type == "adjustment"
        assert adjustment.source_id == resolved.id

        period = await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")
        assert period.status == "locked"

    async def test_108_resolve_requires_notes(self, db_session, ledger):
        recon = ReconciliationService(db_session)
        await stray_ar_posting(db_session, ledger)
        rec = await recon.reconcile_period(ledger.period, ledger.ar)
        with pytest.raises(ValidationError, match="notes"):
            await recon.resolve(rec.id, "  ", "controller")

    async def test_109_matched_row_cannot_be_resolved(self, db_session, ledger):
        recon = ReconciliationService(db_session)
        rec = await recon.reconcile_period(ledger.period, ledger.ar)
        with pytest.raises(ValidationError, match="matched"):
            await recon.resolve(rec.id, "Nothing to do", "controller")

    async def test_110_new_activity_creates_new_row(self, db_session, ledger):
        """A later run with different figures supersedes the resolved row."""
        recon = ReconciliationService(db_session)
        await stray_ar_posting(db_session, ledger)
        first = await recon.reconcile_period(ledger.period, ledger.ar)
        await recon.resolve(first.id, "Accepted as opening balance", "controller")
        await ReceivablesService(db_session).record_bill(spring_bill(ledger, amount=700))
        second = await recon.reconcile_period(ledger.period, ledger.ar)
        assert second.id != first.id
        assert second.status == "unmatched"
        assert (await recon.latest_for(ledger.period, ledger.ar)).id == second.id


# ===================================================================
# Tests 111-113: Close sweep
# ===================================================================
class TestCloseSweep:

    async def test_111_sweep_locks_clean_period_after_grace(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        await ReceivablesService(db_session).record_bill(spring_bill(ledger))
        locked = await run_close_sweep(db_session, date(2025, 8, 1), grace_days=15)
        assert locked == ["Spring-2025"]

    async def test_112_sweep_waits_for_grace_window(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        locked = await run_close_sweep(db_session, date(2025, 7, 5), grace_days=15)
        assert locked == []

    async def test_113_sweep_halts_on_mismatch(self, db_session, ledger, close_policy):
        close_policy(require_reconciled=True)
        await stray_ar_posting(db_session, ledger)
        locked = await run_close_sweep(db_session, date(2025, 8, 1), grace_days=15)
        assert locked == []
        period = await FiscalPeriodService(db_session).get_period(ledger.period)
        assert period.status == "open"


# ===================================================================
# Tests 114-115: API
# ===================================================================
class TestReconciliationApi:

    async def test_114_run_and_list(self, client, accountant_headers, ledger):
        r = await client.post(
            f"{BASE_URL}/api/gl/reconciliations",
            headers=accountant_headers,
            json={"fiscal_period_id": str(ledger.period), "control_account_id": str(ledger.ar)},
        )
        assert r.status_code == 201, r.text
        assert r.json()["status"] == "matched"
        assert r.json()["control_account_code"] == "1200"

        r = await client.get(f"{BASE_URL}/api/gl/reconciliations?status=matched",
                             headers=accountant_headers)
        assert r.json()["total"] == 1

    async def test_115_resolve_over_api(self, client, session_factory, admin_headers, ledger):
        async with session_factory() as db:
            await stray_ar_posting(db, ledger)
            rec = await ReconciliationService(db).reconcile_period(ledger.period, ledger.ar)
            await db.commit()

        r = await client.post(
            f"{BASE_URL}/api/gl/reconciliations/{rec.id}/resolve",
            headers=admin_headers,
            json={"notes": ""},
        )
        assert r.status_code == 422

        r = await client.post(
            f"{BASE_URL}/api/gl/reconciliations/{rec.id}/resolve",
            headers=admin_headers,
            json={"notes": "Legacy balance carried from prior system"},
        )
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "resolved"
        assert r.json()["resolved_by"] == "controller"


# ===================================================================
# Tests 179-180: Control-account scoping & refunds
# ===================================================================
class TestControlAccountScope:

    async def test_179_fund_bound_and_general_controls_both_match(
        self, db_session, ledger, close_policy
    ):
        close_policy(require_reconciled=True)
        coa = ChartOfAccountsService(db_session)
        school = await coa.create_fund(FundCreate(code="SCH", name="Scholarship Fund"), "seed")
        bound = await coa.create_account(AccountCreate(
            code="1210", name="Scholarship Receivables", account_type="asset",
            normal_balance="debit", is_control_account=True, subledger="ar", fund_id=school.id,
        ), "seed")
        bill = spring_bill(ledger, amount=10000).model_copy(update={"fund_id": school.id})
        recorded = await ReceivablesService(db_session).record_bill(bill)
        assert recorded.control_account_id == bound.id

        recon = ReconciliationService(db_session)
        general = await recon.reconcile_period(ledger.period, ledger.ar)
        assert (general.subledger_total, general.gl_balance, general.status) == (0, 0, "matched")
        scoped = await recon.reconcile_period(ledger.period, bound.id)
        assert (scoped.subledger_total, scoped.gl_balance, scoped.status) == (
            10000, 10000, "matched"
        )

        await recon.reconcile_all(ledger.period)
        period = await FiscalPeriodService(db_session).lock_period(ledger.period, "controller")
        assert period.status == "locked"

    async def test_180_refund_counts_in_ar_subledger(self, db_session, ledger):
        ar = ReceivablesService(db_session)
        await ar.record_payment(spring_payment(ledger, 15000))
        await ar.record_refund(StudentRefundCreate(
            student_id="S-1001", fund_id=ledger.fund, refund_date=date(2025, 3, 1),
            amount=6000, reason="Dropped a course",
        ))
        rec = await ReconciliationService(db_session).reconcile_period(ledger.period, ledger.ar)
        assert rec.status == "matched"
        assert rec.subledger_total == rec.gl_balance == -9000
