"""Accounts-payable routes — vendors, invoices, purchase orders, vendor payments."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import require_permission
from app.models.ap import ApInvoice, ApPayment, ApPurchaseOrder, ApVendor
from app.schemas.ap import (
    InvoiceCreate,
    PurchaseOrderCreate,
    PurchaseOrderReceipt,
    VendorCreate,
    VendorPaymentCreate,
)
from app.services.ap_service import PayablesService

router = APIRouter(prefix="/api/ap", tags=["payables"])


def vendor_out(v: ApVendor) -> dict:
    return {
        "id": str(v.id),
        "code": v.code,
        "name": v.name,
        "email": v.email,
        "is_active": v.is_active,
    }


def invoice_out(i: ApInvoice) -> dict:
    return {
        "id": str(i.id),
        "invoice_number": i.invoice_number,
        "vendor_id": str(i.vendor_id),
        "fund_id": str(i.fund_id),
        "invoice_date": str(i.invoice_date),
        "due_date": str(i.due_date),
        "total_amount": i.total_amount,
        "paid_amount": i.paid_amount,
        "balance_due": i.outstanding,
        "status": i.status,
        "purchase_order_id": str(i.purchase_order_id) if i.purchase_order_id else None,
        "journal_entry_id": str(i.journal_entry_id) if i.journal_entry_id else None,
        "lines": [
            {
                "description": l.description,
                "amount": l.amount,
                "expense_account_id": str(l.expense_account_id),
            }
            for l in i.lines
        ],
    }


def purchase_order_out(po: ApPurchaseOrder) -> dict:
    return {
        "id": str(po.id),
        "po_number": po.po_number,
        "vendor_id": str(po.vendor_id),
        "fund_id": str(po.fund_id),
        "order_date": str(po.order_date),
        "status": po.status,
        "total_amount": po.total_amount,
        "items": [
            {
                "id": str(item.id),
                "description": item.description,
                "quantity_ordered": item.quantity_ordered,
                "quantity_received": item.quantity_received,
                "unit_cost": item.unit_cost,
                "expense_account_id": str(item.expense_account_id),
            }
            for item in po.items
        ],
    }


def vendor_payment_out(p: ApPayment) -> dict:
    return {
        "id": str(p.id),
        "payment_number": p.payment_number,
        "vendor_id": str(p.vendor_id),
        "fund_id": str(p.fund_id),
        "payment_date": str(p.payment_date),
        "amount": p.amount,
        "method": p.method,
        "reference": p.reference,
        "journal_entry_id": str(p.journal_entry_id) if p.journal_entry_id else None,
        "allocations": [
            {"invoice_id": str(a.invoice_id), "amount": a.amount}
            for a in p.allocations
        ],
    }


# ---------------------------------------------------------------------------
# VENDORS
# ---------------------------------------------------------------------------

@router.get("/vendors")
async def list_vendors(
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ap.vendors.view")),
):
    vendors = await PayablesService(db).list_vendors()
    items = [vendor_out(v) for v in vendors]
    return {"items": items, "total": len(items)}


@router.post("/vendors", status_code=201)
async def create_vendor(
    body: VendorCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ap.vendors.create")),
):
    vendor = await PayablesService(db).create_vendor(body, user["username"])
    await db.commit()
    return vendor_out(vendor)


# ---------------------------------------------------------------------------
# INVOICES
# ---------------------------------------------------------------------------

@router.get("/invoices")
async def list_invoices(
    vendor_id: uuid.UUID | None = Query(None),
    invoice_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ap.invoices.view")),
):
    invoices = await PayablesService(db).list_invoices(vendor_id, invoice_status)
    items = [invoice_out(i) for i in invoices]
    return {"items": items, "total": len(items)}


@router.post("/invoices", status_code=201)
async def create_invoice(
    body: InvoiceCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ap.invoices.create")),
):
    if idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    invoice = await PayablesService(db).record_invoice(body, user["username"])
    await db.commit()
    return invoice_out(invoice)


@router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ap.invoices.view")),
):
    return invoice_out(await PayablesService(db).get_invoice(invoice_id))


# ---------------------------------------------------------------------------
# PURCHASE ORDERS
# ---------------------------------------------------------------------------

@router.get("/purchase-orders")
async def list_purchase_orders(
    vendor_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ap.purchase_orders.view")),
):
    orders = await PayablesService(db).list_purchase_orders(vendor_id)
    items = [purchase_order_out(po) for po in orders]
    return {"items": items, "total": len(items)}


@router.post("/purchase-orders", status_code=201)
async def create_purchase_order(
    body: PurchaseOrderCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ap.purchase_orders.create")),
):
    po = await PayablesService(db).create_purchase_order(body, user["username"])
    await db.commit()
    return purchase_order_out(po)


@router.post("/purchase-orders/{po_id}/receive", status_code=201)
async def receive_purchase_order(
    po_id: uuid.UUID,
    body: PurchaseOrderReceipt,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ap.purchase_orders.receive")),
):
    """Receive goods and raise the matching approved invoice."""
    service = PayablesService(db)
    invoice = await service.receive_purchase_order(po_id, body, user["username"])
    await db.commit()
    po = await service.get_purchase_order(po_id)
    return {"invoice": invoice_out(invoice), "purchase_order": purchase_order_out(po)}


# ---------------------------------------------------------------------------
# PAYMENTS
# ---------------------------------------------------------------------------

@router.get("/payments")
async def list_vendor_payments(
    vendor_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("ap.payments.view")),
):
    payments = await PayablesService(db).list_payments(vendor_id)
    items = [vendor_payment_out(p) for p in payments]
    return {"items": items, "total": len(items)}


@router.post("/payments", status_code=201)
async def create_vendor_payment(
    body: VendorPaymentCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("ap.payments.create")),
):
    if idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    payment = await PayablesService(db).record_payment(body, user["username"])
    await db.commit()
    return vendor_payment_out(payment)
