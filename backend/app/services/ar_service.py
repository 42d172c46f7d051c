"""Accounts-receivable adapter: student bills, payments and refunds.

Each bill debits the AR control account and credits the income accounts of
its line items. Each payment debits cash and credits AR control; a refund of unapplied
credit does the opposite. All three post
through :class:`JournalService` in the caller's transaction, so the subledger
record and its journal entry commit together.
"""
from __future__ import annotations

import datetime
import logging
import uuid
from collections import defaultdict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError, OverAllocationError, ValidationError
from app.models.ar import (
    ArBillLineItem,
    ArPayment,
    ArPaymentAllocation,
    ArRefund,
    ArStudentBill,
)
from app.models.fund import Fund
from app.schemas.ar import StudentBillCreate, StudentPaymentCreate, StudentRefundCreate
from app.schemas.gl import JournalEntryIn, JournalLineIn
from app.services.audit_service import record_audit
from app.services.coa_service import ChartOfAccountsService
from app.services.journal_service import JournalService
from app.services.numbering import next_document_number

logger = logging.getLogger(__name__)

ALLOCATABLE_BILL_STATUSES = ("open", "partial")

# Fee revenue, or deposits held on the student's behalf
INCOME_ACCOUNT_TYPES = ("income", "liability")


def bill_snapshot(bill: ArStudentBill) -> dict:
    return {
        "bill_number": bill.bill_number,
        "student_id": bill.student_id,
        "fund_id": str(bill.fund_id),
        "bill_date": bill.bill_date.isoformat(),
        "total_amount": bill.total_amount,
        "paid_amount": bill.paid_amount,
        "status": bill.status,
        "journal_entry_id": str(bill.journal_entry_id) if bill.journal_entry_id else None,
    }


def settle_status(total: int, paid: int) -> str:
    if paid <= 0:
        return "open"
    if paid >= total:
        return "paid"
    return "partial"


async def require_active_fund(db: AsyncSession, fund_id: uuid.UUID) -> Fund:
    fund = await db.get(Fund, fund_id)
    if fund is None or not fund.is_active:
        raise ValidationError(f"Fund {fund_id} is missing or inactive")
    return fund


class ReceivablesService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.coa = ChartOfAccountsService(db)
        self.journal = JournalService(db)

    # =========================================================================
    # BILLS
    # =========================================================================

    async def record_bill(self, spec: StudentBillCreate, actor: str | None = None) -> ArStudentBill:
        if spec.idempotency_key:
            existing = await self._one(ArStudentBill, ArStudentBill.idempotency_key,
                                       spec.idempotency_key)
            if existing is not None:
                logger.info("Idempotent replay of bill %s", existing.bill_number)
                return existing

        fund = await require_active_fund(self.db, spec.fund_id)
        for item in spec.line_items:
            await self.coa.require_posting_account(item.income_account_id, "income",
                                                   INCOME_ACCOUNT_TYPES)
        control = await self.coa.find_control_account("ar", fund.id)
        total = sum(item.amount for item in spec.line_items)
        bill_id = uuid.uuid4()
        bill_number = await next_document_number(
            self.db, ArStudentBill, ArStudentBill.bill_number, "BILL", spec.bill_date.year
        )

        entry = JournalEntryIn(
            entry_date=spec.bill_date,
            memo=f"Student bill {bill_number} ({spec.student_id})",
            source_type="ar-bill",
            source_id=bill_id,
            lines=[
                JournalLineIn(account_id=control.id, fund_id=fund.id, debit=total,
                              memo=spec.description),
                *(
                    JournalLineIn(account_id=item.income_account_id, fund_id=fund.id,
                                  credit=item.amount, memo=item.description)
                    for item in spec.line_items
                ),
            ],
        )
        je = await self.journal.post_entry(entry, actor)

        bill = ArStudentBill(
            id=bill_id,
            bill_number=bill_number,
            student_id=spec.student_id,
            fund_id=fund.id,
            control_account_id=control.id,
            bill_date=spec.bill_date,
            due_date=spec.due_date,
            description=spec.description,
            total_amount=total,
            paid_amount=0,
            status="open",
            journal_entry_id=je.id,
            idempotency_key=spec.idempotency_key,
            created_by=actor,
        )
        bill.line_items = [
            ArBillLineItem(description=item.description, amount=item.amount,
                           income_account_id=item.income_account_id)
            for item in spec.line_items
        ]
        self.db.add(bill)
        await self.db.flush()
        await record_audit(self.db, actor, "ar.bill.create", "ar_student_bills", bill.id,
                           new_value=bill_snapshot(bill))
        logger.info("Recorded bill %s for %s: %d", bill_number, spec.student_id, total)
        return bill

    async def void_bill(
        self,
        bill_id: uuid.UUID,
        actor: str | None = None,
        void_date: datetime.date | None = None,
    ) -> ArStudentBill:
        """Reverse an unpaid bill's journal entry and mark it void."""
        bill = await self._bill_for_update(bill_id)
        if bill.status == "void":
            raise ValidationError(f"Bill {bill.bill_number} is already void")
        if bill.paid_amount > 0:
            raise ValidationError(
                f"Bill {bill.bill_number} has payments allocated; it cannot be voided"
            )

        before = bill_snapshot(bill)
        reversal = await self.journal.reverse_entry(
            bill.journal_entry_id,
            actor,
            reversal_date=void_date or bill.bill_date,
            memo=f"Void of student bill {bill.bill_number}",
            allow_subledger=True,
        )
        bill.status = "void"
        bill.voided_on = reversal.entry_date
        bill.void_journal_entry_id = reversal.id
        await self.db.flush()
        await record_audit(self.db, actor, "ar.bill.void", "ar_student_bills", bill.id,
                           old_value=before, new_value=bill_snapshot(bill))
        logger.info("Voided bill %s", bill.bill_number)
        return bill

    async def get_bill(self, bill_id: uuid.UUID) -> ArStudentBill:
        bill = await self.db.get(ArStudentBill, bill_id)
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        return bill

    async def list_bills(
        self,
        student_id: str | None = None,
        status: str | None = None,
    ) -> list[ArStudentBill]:
        stmt = select(ArStudentBill).order_by(ArStudentBill.bill_date, ArStudentBill.bill_number)
        if student_id:
            stmt = stmt.where(ArStudentBill.student_id == student_id)
        if status:
            stmt = stmt.where(ArStudentBill.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _bill_for_update(self, bill_id: uuid.UUID) -> ArStudentBill:
        result = await self.db.execute(
            select(ArStudentBill).where(ArStudentBill.id == bill_id).with_for_update()
        )
        bill = result.scalar_one_or_none()
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        return bill

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def record_payment(self, spec: StudentPaymentCreate, actor: str | None = None) -> ArPayment:
        """Record a student payment and apply its allocations.

        Whatever is not allocated stays on the student's account as credit.
        """
        if spec.idempotency_key:
            existing = await self._one(ArPayment, ArPayment.idempotency_key, spec.idempotency_key)
            if existing is not None:
                logger.info("Idempotent replay of payment %s", existing.payment_number)
                return existing

        fund = await require_active_fund(self.db, spec.fund_id)
        cash_account_id = (await self.coa.cash_account(spec.cash_account_id)).id

        allocated = sum(a.amount for a in spec.allocations)
        if allocated > spec.amount:
            raise OverAllocationError(
                f"Allocations ({allocated}) exceed the payment amount ({spec.amount})",
                {"allocated": allocated, "amount": spec.amount},
            )

        per_bill: dict[uuid.UUID, int] = defaultdict(int)
        for allocation in spec.allocations:
            per_bill[allocation.bill_id] += allocation.amount

        bills = {}
        for bill_id, amount in per_bill.items():
            bill = await self._bill_for_update(bill_id)
            if bill.student_id != spec.student_id:
                raise ValidationError(f"Bill {bill.bill_number} belongs to another student")
            if bill.fund_id != fund.id:
                raise ValidationError(f"Bill {bill.bill_number} is billed to a different fund")
            if bill.status not in ALLOCATABLE_BILL_STATUSES:
                raise ValidationError(f"Bill {bill.bill_number} is {bill.status}")
            if amount > bill.outstanding:
                raise OverAllocationError(
                    f"Allocation of {amount} exceeds the {bill.outstanding} outstanding "
                    f"on {bill.bill_number}",
                    {"bill_id": str(bill.id), "outstanding": bill.outstanding,
                     "requested": amount},
                )
            bills[bill_id] = bill

        control = await self.coa.find_control_account("ar", fund.id)
        payment_id = uuid.uuid4()
        payment_number = await next_document_number(
            self.db, ArPayment, ArPayment.payment_number, "PAY", spec.payment_date.year
        )
        je = await self.journal.post_entry(
            JournalEntryIn(
                entry_date=spec.payment_date,
                memo=f"Student payment {payment_number} ({spec.student_id})",
                source_type="ar-payment",
                source_id=payment_id,
                lines=[
                    JournalLineIn(account_id=cash_account_id, fund_id=fund.id,
                                  debit=spec.amount),
                    JournalLineIn(account_id=control.id, fund_id=fund.id,
                                  credit=spec.amount),
                ],
            ),
            actor,
        )

        payment = ArPayment(
            id=payment_id,
            payment_number=payment_number,
            student_id=spec.student_id,
            fund_id=fund.id,
            payment_date=spec.payment_date,
            amount=spec.amount,
            method=spec.method,
            reference=spec.reference,
            cash_account_id=cash_account_id,
            control_account_id=control.id,
            journal_entry_id=je.id,
            idempotency_key=spec.idempotency_key,
            created_by=actor,
        )
        payment.allocations = [
            ArPaymentAllocation(bill_id=bill_id, amount=amount)
            for bill_id, amount in per_bill.items()
        ]
        self.db.add(payment)
        for bill_id, amount in per_bill.items():
            bill = bills[bill_id]
            bill.paid_amount += amount
            bill.status = settle_status(bill.total_amount, bill.paid_amount)
        await self.db.flush()

        await record_audit(self.db, actor, "ar.payment.create", "ar_payments", payment.id,
                           new_value={
                               "payment_number": payment_number,
                               "student_id": spec.student_id,
                               "amount": spec.amount,
                               "allocations": {str(k): v for k, v in per_bill.items()},
                               "journal_entry_id": str(je.id),
                           })
        logger.info("Recorded payment %s for %s: %d (%d allocated)",
                    payment_number, spec.student_id, spec.amount, allocated)
        return payment

    async def get_payment(self, payment_id: uuid.UUID) -> ArPayment:
        payment = await self.db.get(ArPayment, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    async def list_payments(self, student_id: str | None = None) -> list[ArPayment]:
        stmt = select(ArPayment).order_by(ArPayment.payment_date, ArPayment.payment_number)
        if student_id:
            stmt = stmt.where(ArPayment.student_id == student_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def available_credit(self, student_id: str, fund_id: uuid.UUID) -> int:
        """Unapplied payments less what has already been refunded."""
        received = await self._scalar(
            select(func.coalesce(func.sum(ArPayment.amount), 0))
            .where(ArPayment.student_id == student_id, ArPayment.fund_id == fund_id)
        )
        applied = await self._scalar(
            select(func.coalesce(func.sum(ArPaymentAllocation.amount), 0))
            .join(ArPayment, ArPaymentAllocation.payment_id == ArPayment.id)
            .where(ArPayment.student_id == student_id, ArPayment.fund_id == fund_id)
        )
        refunded = await self._scalar(
            select(func.coalesce(func.sum(ArRefund.amount), 0))
            .where(ArRefund.student_id == student_id, ArRefund.fund_id == fund_id)
        )
        return received - applied - refunded

    async def record_refund(self, spec: StudentRefundCreate, actor: str | None = None) -> ArRefund:
        """Pay a student's unapplied credit back out of cash.

        Posts Dr AR control / Cr cash. The amount may not exceed the credit
        the student holds in the fund.
        """
        if spec.idempotency_key:
            existing = await self._one(ArRefund, ArRefund.idempotency_key, spec.idempotency_key)
            if existing is not None:
                logger.info("Idempotent replay of refund %s", existing.refund_number)
                return existing

        fund = await require_active_fund(self.db, spec.fund_id)
        cash_account_id = (await self.coa.cash_account(spec.cash_account_id)).id
        credit = await self.available_credit(spec.student_id, fund.id)
        if spec.amount > credit:
            raise OverAllocationError(
                f"Refund of {spec.amount} exceeds the {credit} credit held by {spec.student_id}",
                {"available_credit": credit, "requested": spec.amount},
            )

        control = await self.coa.find_control_account("ar", fund.id)
        refund_id = uuid.uuid4()
        refund_number = await next_document_number(
            self.db, ArRefund, ArRefund.refund_number, "RFND", spec.refund_date.year
        )
        je = await self.journal.post_entry(
            JournalEntryIn(
                entry_date=spec.refund_date,
                memo=f"Student refund {refund_number} ({spec.student_id})",
                source_type="ar-refund",
                source_id=refund_id,
                lines=[
                    JournalLineIn(account_id=control.id, fund_id=fund.id,
                                  debit=spec.amount, memo=spec.reason),
                    JournalLineIn(account_id=cash_account_id, fund_id=fund.id,
                                  credit=spec.amount),
                ],
            ),
            actor,
        )

        refund = ArRefund(
            id=refund_id,
            refund_number=refund_number,
            student_id=spec.student_id,
            fund_id=fund.id,
            refund_date=spec.refund_date,
            amount=spec.amount,
            reason=spec.reason,
            method=spec.method,
            reference=spec.reference,
            cash_account_id=cash_account_id,
            control_account_id=control.id,
            journal_entry_id=je.id,
            idempotency_key=spec.idempotency_key,
            created_by=actor,
        )
        self.db.add(refund)
        await self.db.flush()
        await record_audit(self.db, actor, "ar.refund.create", "ar_refunds", refund.id,
                           new_value={
                               "refund_number": refund_number,
                               "student_id": spec.student_id,
                               "amount": spec.amount,
                               "reason": spec.reason,
                               "journal_entry_id": str(je.id),
                           })
        logger.info("Recorded refund %s for %s: %d", refund_number, spec.student_id, spec.amount)
        return refund

    async def list_refunds(self, student_id: str | None = None) -> list[ArRefund]:
        stmt = select(ArRefund).order_by(ArRefund.refund_date, ArRefund.refund_number)
        if student_id:
            stmt = stmt.where(ArRefund.student_id == student_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _one(self, model, column, value):
        result = await self.db.execute(select(model).where(column == value))
        return result.scalar_one_or_none()

    async def _scalar(self, stmt) -> int:
        return int((await self.db.execute(stmt)).scalar_one())
