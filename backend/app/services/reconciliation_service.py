"""Reconciliation Service.

Compares one period's subledger activity with the activity on its GL control
account:

* AR: bills issued - payments received - bills voided + refunds paid
* AP: invoices approved - payments issued

each counted by its record date and limited to the documents posted
through that control account, against the control account's posted
debits and credits for the period, signed by the account's normal balance.
A row is written per attempt; an attempt whose figures equal the latest row's
returns that row untouched.
"""
from __future__ import annotations

import datetime
import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError, ValidationError
from app.models.ap import ApInvoice, ApPayment
from app.models.ar import ArPayment, ArRefund, ArStudentBill
from app.models.base import utcnow
from app.models.gl import Account
from app.models.period import FiscalPeriod
from app.models.reconciliation import GlReconciliation
from app.schemas.gl import AdjustmentIn, JournalEntryIn
from app.services.audit_service import record_audit
from app.services.coa_service import ChartOfAccountsService
from app.services.journal_service import JournalService, signed_balance
from app.services.notification_service import NotificationService
from app.services.period_service import FiscalPeriodService

logger = logging.getLogger(__name__)


def reconciliation_snapshot(rec: GlReconciliation) -> dict:
    return {
        "fiscal_period_id": str(rec.fiscal_period_id),
        "control_account_id": str(rec.control_account_id),
        "fund_id": str(rec.fund_id) if rec.fund_id else None,
        "subledger_total": rec.subledger_total,
        "gl_balance": rec.gl_balance,
        "difference": rec.difference,
        "status": rec.status,
        "notes": rec.notes,
        "adjustment_entry_id": str(rec.adjustment_entry_id) if rec.adjustment_entry_id else None,
    }


class ReconciliationService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.coa = ChartOfAccountsService(db)
        self.periods = FiscalPeriodService(db)
        self.journal = JournalService(db)

    async def _sum(self, model, column, date_column, period: FiscalPeriod, account: Account,
                   fund_id: uuid.UUID | None, *criteria) -> int:
        stmt = select(func.coalesce(func.sum(column), 0)).where(
            model.control_account_id == account.id,
            date_column >= period.start_date,
            date_column <= period.end_date,
            *criteria,
        )
        if fund_id is not None:
            stmt = stmt.where(model.fund_id == fund_id)
        return int((await self.db.execute(stmt)).scalar_one())

    async def subledger_total(
        self,
        account: Account,
        period: FiscalPeriod,
        fund_id: uuid.UUID | None = None,
    ) -> int:
        """Net subledger activity routed through ``account`` during ``period``."""
        if account.subledger == "ar":
            billed = await self._sum(ArStudentBill, ArStudentBill.total_amount,
                                     ArStudentBill.bill_date, period, account, fund_id)
            received = await self._sum(ArPayment, ArPayment.amount, ArPayment.payment_date,
                                       period, account, fund_id)
            voided = await self._sum(ArStudentBill, ArStudentBill.total_amount,
                                     ArStudentBill.voided_on, period, account, fund_id,
                                     ArStudentBill.status == "void")
            refunded = await self._sum(ArRefund, ArRefund.amount, ArRefund.refund_date,
                                       period, account, fund_id)
            return billed - received - voided + refunded

        invoiced = await self._sum(ApInvoice, ApInvoice.total_amount, ApInvoice.invoice_date,
                                   period, account, fund_id)
        paid = await self._sum(ApPayment, ApPayment.amount, ApPayment.payment_date,
                               period, account, fund_id)
        return invoiced - paid

    async def reconcile_period(
        self,
        period_id: uuid.UUID,
        control_account_id: uuid.UUID,
        fund_id: uuid.UUID | None = None,
        actor: str | None = None,
    ) -> GlReconciliation:
        period = await self.periods.get_period(period_id)
        account = await self.coa.get_account_by_id(control_account_id)
        if not account.is_control_account:
            raise ValidationError(f"Account {account.code} is not a control account")

        # A fund-bound control account only carries its own fund
        scope = fund_id or account.fund_id
        subledger_total = await self.subledger_total(account, period, scope)
        debits, credits = await self.journal.account_activity(
            account.id, period_id=period.id, fund_id=scope
        )
        gl_balance = signed_balance(account.normal_balance, debits, credits)

        latest = await self.latest_for(period.id, account.id, fund_id)
        if (
            latest is not None
            and latest.subledger_total == subledger_total
            and latest.gl_balance == gl_balance
        ):
            logger.info("Reconciliation of %s for %s unchanged (%s)",
                        account.code, period.name, latest.status)
            return latest

        difference = subledger_total - gl_balance
        rec = GlReconciliation(
            fiscal_period=period,
            control_account=account,
            fund_id=fund_id,
            subledger_total=subledger_total,
            gl_balance=gl_balance,
            difference=difference,
            status="matched" if difference == 0 else "unmatched",
            reconciled_by=actor,
        )
        self.db.add(rec)
        await self.db.flush()
        await record_audit(self.db, actor, "gl.reconciliation.run", "gl_reconciliations",
                           rec.id, new_value=reconciliation_snapshot(rec))

        if rec.status == "unmatched":
            logger.warning("Reconciliation mismatch on %s for %s: %d",
                           account.code, period.name, difference)
            await NotificationService(self.db).reconciliation_unmatched(
                rec, period.name, account.code
            )
        else:
            logger.info("Reconciled %s for %s: matched", account.code, period.name)
        return rec

    async def reconcile_all(self, period_id: uuid.UUID, actor: str | None = None) -> list[GlReconciliation]:
        return [
            await self.reconcile_period(period_id, account.id, actor=actor)
            for account in await self.coa.list_control_accounts()
        ]

    async def resolve(
        self,
        reconciliation_id: uuid.UUID,
        notes: str,
        actor: str | None = None,
        adjustment: AdjustmentIn | None = None,
    ) -> GlReconciliation:
        """Close out an unmatched reconciliation.

        ``adjustment``, when given, is posted as an ``adjustment`` entry that
        may touch the control account.
        """
        if not notes or not notes.strip():
            raise ValidationError("Resolution notes are required")

        result = await self.db.execute(
            select(GlReconciliation)
            .where(GlReconciliation.id == reconciliation_id)
            .with_for_update()
        )
        rec = result.scalar_one_or_none()
        if rec is None:
            raise NotFoundError(f"Reconciliation {reconciliation_id} not found")
        if rec.status != "unmatched":
            raise ValidationError(f"Reconciliation is {rec.status}; only unmatched rows resolve")

        before = reconciliation_snapshot(rec)
        if adjustment is not None:
            je = await self.journal.post_entry(
                JournalEntryIn(
                    entry_date=adjustment.entry_date,
                    memo=adjustment.memo or f"Reconciliation adjustment: {notes}",
                    source_type="adjustment",
                    source_id=rec.id,
                    lines=adjustment.lines,
                ),
                actor,
                allow_control_adjustment=True,
            )
            rec.adjustment_entry_id = je.id

        rec.status = "resolved"
        rec.notes = notes
        rec.resolved_by = actor
        rec.resolved_at = utcnow()
        await self.db.flush()
        await record_audit(self.db, actor, "gl.reconciliation.resolve", "gl_reconciliations",
                           rec.id, old_value=before, new_value=reconciliation_snapshot(rec))
        logger.info("Resolved reconciliation %s by %s", rec.id, actor)
        return rec

    async def get_reconciliation(self, reconciliation_id: uuid.UUID) -> GlReconciliation:
        rec = await self.db.get(GlReconciliation, reconciliation_id)
        if rec is None:
            raise NotFoundError(f"Reconciliation {reconciliation_id} not found")
        return rec

    async def list_reconciliations(
        self,
        period_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> list[GlReconciliation]:
        stmt = select(GlReconciliation).order_by(GlReconciliation.created_at.desc())
        if period_id:
            stmt = stmt.where(GlReconciliation.fiscal_period_id == period_id)
        if status:
            stmt = stmt.where(GlReconciliation.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def latest_for(
        self,
        period_id: uuid.UUID,
        control_account_id: uuid.UUID,
        fund_id: uuid.UUID | None = None,
    ) -> GlReconciliation | None:
        stmt = select(GlReconciliation).where(
            GlReconciliation.fiscal_period_id == period_id,
            GlReconciliation.control_account_id == control_account_id,
        )
        if fund_id is None:
            stmt = stmt.where(GlReconciliation.fund_id.is_(None))
        else:
            stmt = stmt.where(GlReconciliation.fund_id == fund_id)
        result = await self.db.execute(stmt.order_by(GlReconciliation.created_at.desc()).limit(1))
        return result.scalars().first()


async def run_close_sweep(db: AsyncSession, today: datetime.date, grace_days: int) -> list[str]:
    """Reconcile and lock every open period that ended ``grace_days`` ago.

    Stops at the first period that does not reconcile cleanly, since later
    periods cannot lock before it. Returns the names of the periods locked.
    """
    cutoff = today - datetime.timedelta(days=grace_days)
    periods = await FiscalPeriodService(db).list_periods(status="open")
    recon = ReconciliationService(db)
    locked = []
    for period in periods:
        if period.end_date >= cutoff:
            break
        results = await recon.reconcile_all(period.id, actor="system")
        if any(r.status == "unmatched" for r in results):
            logger.warning("Close sweep halted at %s: unmatched reconciliation", period.name)
            break
        await FiscalPeriodService(db).lock_period(period.id, actor="system")
        locked.append(period.name)
    return locked
