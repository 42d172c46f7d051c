"""Ledger queries: student statements, trial balance, AR aging and the
balance sheet and income statement."""
from __future__ import annotations

import datetime
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import ValidationError
from app.models.ar import ArPayment, ArRefund, ArStudentBill
from app.models.gl import JournalEntry
from app.services.journal_service import JournalService
from app.services.period_service import FiscalPeriodService

logger = logging.getLogger(__name__)

AGING_BUCKETS = ("Current", "1-30 days", "31-60 days", "61-90 days", "90+ days")


def aging_bucket(days_overdue: int) -> str:
    if days_overdue <= 0:
        return "Current"
    if days_overdue <= 30:
        return "1-30 days"
    if days_overdue <= 60:
        return "31-60 days"
    if days_overdue <= 90:
        return "61-90 days"
    return "90+ days"


def _entry_kind(entry: JournalEntry) -> str:
    if entry.source_type == "ar-refund":
        return "refund"
    if entry.source_type == "ar-bill":
        return "void" if entry.reverses_entry_id else "charge"
    return "payment_reversal" if entry.reverses_entry_id else "payment"


class StatementService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def build_student_statement(
        self,
        student_id: str,
        as_of: datetime.date | None = None,
    ) -> dict:
        """Running AR statement for one student.

        Amounts are each entry's net effect on AR control lines: charges and
        refunds are positive (``debit``), payments and voids negative (``credit``).
        Refunds count against ``total_paid``.
        """
        bills = (await self.db.execute(
            select(ArStudentBill.id, ArStudentBill.bill_number)
            .where(ArStudentBill.student_id == student_id)
        )).all()
        payments = (await self.db.execute(
            select(ArPayment.id, ArPayment.payment_number)
            .where(ArPayment.student_id == student_id)
        )).all()
        refunds = (await self.db.execute(
            select(ArRefund.id, ArRefund.refund_number)
            .where(ArRefund.student_id == student_id)
        )).all()
        references = {row[0]: row[1] for row in [*bills, *payments, *refunds]}

        entries = []
        if references:
            stmt = (
                select(JournalEntry)
                .where(
                    JournalEntry.status == "posted",
                    JournalEntry.source_type.in_(("ar-bill", "ar-payment", "ar-refund")),
                    JournalEntry.source_id.in_(list(references)),
                )
                .order_by(JournalEntry.entry_date, JournalEntry.sequence)
            )
            if as_of is not None:
                stmt = stmt.where(JournalEntry.entry_date <= as_of)
            entries = list((await self.db.execute(stmt)).scalars().all())

        balance = 0
        total_billed = 0
        total_paid = 0
        rows = []
        for entry in entries:
            amount = sum(
                line.debit - line.credit
                for line in entry.lines
                if line.account.is_control_account and line.account.subledger == "ar"
            )
            balance += amount
            kind = _entry_kind(entry)
            if kind in ("charge", "void"):
                total_billed += amount
            else:
                total_paid -= amount
            rows.append({
                "date": entry.entry_date.isoformat(),
                "description": entry.memo,
                "type": "debit" if amount >= 0 else "credit",
                "kind": kind,
                "amount": abs(amount),
                "balance": balance,
                "reference": references[entry.source_id],
                "journal_entry_id": str(entry.id),
                "sequence": entry.sequence,
            })

        return {
            "student_id": student_id,
            "as_of": as_of.isoformat() if as_of else None,
            "entries": rows,
            "summary": {
                "total_billed": total_billed,
                "total_paid": total_paid,
                "outstanding_balance": balance,
            },
        }

    async def trial_balance(
        self,
        period_id: uuid.UUID,
        fund_id: uuid.UUID | None = None,
    ) -> dict:
        period = await FiscalPeriodService(self.db).get_period(period_id)
        totals = await JournalService(self.db).period_totals(period.id, fund_id)

        items = []
        total_debits = 0
        total_credits = 0
        for account, debits, credits in totals:
            net = debits - credits
            debit_balance = net if net > 0 else 0
            credit_balance = -net if net < 0 else 0
            if debit_balance == 0 and credit_balance == 0:
                continue
            items.append({
                "account_id": str(account.id),
                "account_code": account.code,
                "account_name": account.name,
                "account_type": account.account_type,
                "debit_balance": debit_balance,
                "credit_balance": credit_balance,
            })
            total_debits += debit_balance
            total_credits += credit_balance

        return {
            "fiscal_period_id": str(period.id),
            "fiscal_period": period.name,
            "fund_id": str(fund_id) if fund_id else None,
            "items": items,
            "total_debits": total_debits,
            "total_credits": total_credits,
            "is_balanced": total_debits == total_credits,
        }

    async def ar_aging(self, as_of: datetime.date) -> dict:
        """Outstanding student bills bucketed by days past due."""
        result = await self.db.execute(
            select(ArStudentBill)
            .where(
                ArStudentBill.status.in_(("open", "partial")),
                ArStudentBill.bill_date <= as_of,
            )
            .order_by(ArStudentBill.due_date, ArStudentBill.bill_number)
        )
        totals = {bucket: 0 for bucket in AGING_BUCKETS}
        items = []
        for bill in result.scalars().all():
            if bill.outstanding <= 0:
                continue
            days_overdue = (as_of - bill.due_date).days
            bucket = aging_bucket(days_overdue)
            totals[bucket] += bill.outstanding
            items.append({
                "bill_id": str(bill.id),
                "bill_number": bill.bill_number,
                "student_id": bill.student_id,
                "bill_date": bill.bill_date.isoformat(),
                "due_date": bill.due_date.isoformat(),
                "total_amount": bill.total_amount,
                "balance_due": bill.outstanding,
                "days_overdue": days_overdue,
                "aging_bucket": bucket,
            })
        return {
            "as_of": as_of.isoformat(),
            "items": items,
            "totals": totals,
            "total_outstanding": sum(totals.values()),
        }

    # =========================================================================
    # FINANCIAL STATEMENTS
    # =========================================================================

    async def balance_sheet(
        self,
        as_of: datetime.date,
        fund_id: uuid.UUID | None = None,
    ) -> dict:
        """Assets, liabilities and equity from every posted entry up to ``as_of``.

        Income less expense to date is carried into equity as retained
        earnings, so a balanced ledger always yields a balanced sheet.
        """
        totals = await JournalService(self.db).totals_between(None, as_of, fund_id)
        sections = {"asset": [], "liability": [], "equity": []}
        section_totals = {"asset": 0, "liability": 0, "equity": 0}
        net_income = 0
        for account, debits, credits in totals:
            if account.account_type == "income":
                net_income += credits - debits
                continue
            if account.account_type == "expense":
                net_income -= debits - credits
                continue
            # Contra accounts net against their section
            balance = debits - credits if account.account_type == "asset" else credits - debits
            if balance == 0:
                continue
            sections[account.account_type].append(_statement_item(account, balance))
            section_totals[account.account_type] += balance

        total_equity = section_totals["equity"] + net_income
        return {
            "title": "Balance Sheet",
            "as_of": as_of.isoformat(),
            "fund_id": str(fund_id) if fund_id else None,
            "assets": {"items": sections["asset"], "total": section_totals["asset"]},
            "liabilities": {"items": sections["liability"], "total": section_totals["liability"]},
            "equity": {
                "items": sections["equity"],
                "retained_earnings": net_income,
                "total": total_equity,
            },
            "total_liabilities_and_equity": section_totals["liability"] + total_equity,
            "is_balanced": section_totals["asset"] == section_totals["liability"] + total_equity,
        }

    async def income_statement(
        self,
        start_date: datetime.date,
        end_date: datetime.date,
        fund_id: uuid.UUID | None = None,
    ) -> dict:
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        totals = await JournalService(self.db).totals_between(start_date, end_date, fund_id)
        income, expenses = [], []
        total_income = 0
        total_expenses = 0
        for account, debits, credits in totals:
            if account.account_type == "income":
                amount = credits - debits
                income.append(_statement_item(account, amount))
                total_income += amount
            elif account.account_type == "expense":
                amount = debits - credits
                expenses.append(_statement_item(account, amount))
                total_expenses += amount
        return {
            "title": "Income Statement",
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "fund_id": str(fund_id) if fund_id else None,
            "income": {"items": income, "total": total_income},
            "expenses": {"items": expenses, "total": total_expenses},
            "net_income": total_income - total_expenses,
        }


def _statement_item(account, amount: int) -> dict:
    return {
        "account_id": str(account.id),
        "account_code": account.code,
        "account_name": account.name,
        "amount": amount,
    }
