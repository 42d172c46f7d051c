"""Accounts-receivable routes — student fees, payments, refunds, statements, aging."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import require_permission
from app.models.ar import ArPayment, ArRefund, ArStudentBill
from app.schemas.ar import (
    StudentBillCreate,
    StudentPaymentCreate,
    StudentRefundCreate,
    VoidBillRequest,
)
from app.services.ar_service import ReceivablesService
from app.services.statement_service import StatementService

router = APIRouter(prefix="/api", tags=["receivables"])


def bill_out(b: ArStudentBill) -> dict:
    return {
        "id": str(b.id),
        "bill_number": b.bill_number,
        "student_id": b.student_id,
        "fund_id": str(b.fund_id),
        "bill_date": str(b.bill_date),
        "due_date": str(b.due_date),
        "description": b.description,
        "total_amount": b.total_amount,
        "paid_amount": b.paid_amount,
        "balance_due": b.outstanding,
        "status": b.status,
        "voided_on": str(b.voided_on) if b.voided_on else None,
        "journal_entry_id": str(b.journal_entry_id) if b.journal_entry_id else None,
        "void_journal_entry_id": str(b.void_journal_entry_id) if b.void_journal_entry_id else None,
        "line_items": [
            {
                "description": li.description,
                "amount": li.amount,
                "income_account_id": str(li.income_account_id),
            }
            for li in b.line_items
        ],
    }


def payment_out(p: ArPayment) -> dict:
    return {
        "id": str(p.id),
        "payment_number": p.payment_number,
        "student_id": p.student_id,
        "fund_id": str(p.fund_id),
        "payment_date": str(p.payment_date),
        "amount": p.amount,
        "allocated_amount": p.allocated_amount,
        "unallocated_amount": p.amount - p.allocated_amount,
        "method": p.method,
        "reference": p.reference,
        "cash_account_id": str(p.cash_account_id),
        "journal_entry_id": str(p.journal_entry_id) if p.journal_entry_id else None,
        "allocations": [
            {"bill_id": str(a.bill_id), "amount": a.amount}
            for a in p.allocations
        ],
    }


def refund_out(r: ArRefund) -> dict:
    return {
        "id": str(r.id),
        "refund_number": r.refund_number,
        "student_id": r.student_id,
        "fund_id": str(r.fund_id),
        "refund_date": str(r.refund_date),
        "amount": r.amount,
        "reason": r.reason,
        "method": r.method,
        "reference": r.reference,
        "cash_account_id": str(r.cash_account_id),
        "journal_entry_id": str(r.journal_entry_id) if r.journal_entry_id else None,
    }


# ---------------------------------------------------------------------------
# FEES (student bills)
# ---------------------------------------------------------------------------

@router.get("/fees")
async def list_fees(
    student_id: str | None = Query(None),
    bill_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.bills.view")),
):
    bills = await ReceivablesService(db).list_bills(student_id, bill_status)
    items = [bill_out(b) for b in bills]
    return {"items": items, "total": len(items)}


@router.post("/fees", status_code=201)
async def create_fee(
    body: StudentBillCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ar.bills.create")),
):
    if idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    bill = await ReceivablesService(db).record_bill(body, user["username"])
    await db.commit()
    return bill_out(bill)


@router.get("/fees/{bill_id}")
async def get_fee(
    bill_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.bills.view")),
):
    return bill_out(await ReceivablesService(db).get_bill(bill_id))


@router.post("/fees/{bill_id}/void")
async def void_fee(
    bill_id: uuid.UUID,
    body: VoidBillRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ar.bills.void")),
):
    void_date = body.void_date if body else None
    bill = await ReceivablesService(db).void_bill(bill_id, user["username"], void_date)
    await db.commit()
    return bill_out(bill)


# ---------------------------------------------------------------------------
# PAYMENTS
# ---------------------------------------------------------------------------

@router.get("/payments")
async def list_payments(
    student_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.payments.view")),
):
    payments = await ReceivablesService(db).list_payments(student_id)
    items = [payment_out(p) for p in payments]
    return {"items": items, "total": len(items)}


@router.post("/payments", status_code=201)
async def create_payment(
    body: StudentPaymentCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ar.payments.create")),
):
    if idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    payment = await ReceivablesService(db).record_payment(body, user["username"])
    await db.commit()
    return payment_out(payment)


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.payments.view")),
):
    return payment_out(await ReceivablesService(db).get_payment(payment_id))


# ---------------------------------------------------------------------------
# REFUNDS
# ---------------------------------------------------------------------------

@router.get("/refunds")
async def list_refunds(
    student_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.refunds.view")),
):
    refunds = await ReceivablesService(db).list_refunds(student_id)
    items = [refund_out(r) for r in refunds]
    return {"items": items, "total": len(items)}


@router.post("/refunds", status_code=201)
async def create_refund(
    body: StudentRefundCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ar.refunds.create")),
):
    if idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    refund = await ReceivablesService(db).record_refund(body, user["username"])
    await db.commit()
    return refund_out(refund)


# ---------------------------------------------------------------------------
# STATEMENTS & AGING
# ---------------------------------------------------------------------------

@router.get("/finance/student-ledger/{student_id}")
async def student_ledger(
    student_id: str,
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.statements.view")),
):
    return await StatementService(db).build_student_statement(student_id, as_of)


@router.get("/finance/ar-aging")
async def ar_aging(
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ar.aging.view")),
):
    return await StatementService(db).ar_aging(as_of or date.today())
