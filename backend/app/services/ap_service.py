"""Accounts-payable adapter: vendors, purchase orders, invoices, payments.

An approved invoice debits its expense lines and credits AP control. A
vendor payment debits AP control and credits cash. Purchase orders post
nothing themselves; receiving goods against one raises an approved invoice
for the received quantities.
"""
from __future__ import annotations

import datetime
import logging
import uuid
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import DuplicateCodeError, NotFoundError, OverAllocationError, ValidationError
from app.models.ap import (
    ApInvoice,
    ApInvoiceLine,
    ApPayment,
    ApPaymentAllocation,
    ApPurchaseOrder,
    ApPurchaseOrderItem,
    ApVendor,
)
from app.schemas.ap import (
    InvoiceCreate,
    InvoiceLineIn,
    PurchaseOrderCreate,
    PurchaseOrderReceipt,
    VendorCreate,
    VendorPaymentCreate,
)
from app.schemas.gl import JournalEntryIn, JournalLineIn
from app.services.ar_service import require_active_fund
from app.services.audit_service import record_audit
from app.services.coa_service import ChartOfAccountsService
from app.services.journal_service import JournalService
from app.services.numbering import next_document_number

logger = logging.getLogger(__name__)

PAYABLE_INVOICE_STATUSES = ("approved", "partial")
DEFAULT_PAYMENT_TERMS = datetime.timedelta(days=30)

# Costs, or prepaid and capitalised purchases
EXPENSE_ACCOUNT_TYPES = ("expense", "asset")


def invoice_status(total: int, paid: int) -> str:
    if paid <= 0:
        return "approved"
    if paid >= total:
        return "paid"
    return "partial"


def invoice_snapshot(invoice: ApInvoice) -> dict:
    return {
        "invoice_number": invoice.invoice_number,
        "vendor_id": str(invoice.vendor_id),
        "fund_id": str(invoice.fund_id),
        "invoice_date": invoice.invoice_date.isoformat(),
        "total_amount": invoice.total_amount,
        "paid_amount": invoice.paid_amount,
        "status": invoice.status,
        "purchase_order_id": str(invoice.purchase_order_id) if invoice.purchase_order_id else None,
        "journal_entry_id": str(invoice.journal_entry_id) if invoice.journal_entry_id else None,
    }


class PayablesService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.coa = ChartOfAccountsService(db)
        self.journal = JournalService(db)

    # =========================================================================
    # VENDORS
    # =========================================================================

    async def create_vendor(self, spec: VendorCreate, actor: str | None = None) -> ApVendor:
        existing = await self.db.execute(select(ApVendor.id).where(ApVendor.code == spec.code))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateCodeError(f"Vendor code '{spec.code}' already exists")
        vendor = ApVendor(code=spec.code, name=spec.name, email=spec.email)
        self.db.add(vendor)
        await self.db.flush()
        await record_audit(self.db, actor, "ap.vendor.create", "ap_vendors", vendor.id,
                           new_value={"code": vendor.code, "name": vendor.name})
        return vendor

    async def get_vendor(self, vendor_id: uuid.UUID) -> ApVendor:
        vendor = await self.db.get(ApVendor, vendor_id)
        if vendor is None:
            raise NotFoundError(f"Vendor {vendor_id} not found")
        return vendor

    async def list_vendors(self, include_inactive: bool = False) -> list[ApVendor]:
        stmt = select(ApVendor).order_by(ApVendor.code)
        if not include_inactive:
            stmt = stmt.where(ApVendor.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _active_vendor(self, vendor_id: uuid.UUID) -> ApVendor:
        vendor = await self.db.get(ApVendor, vendor_id)
        if vendor is None or not vendor.is_active:
            raise ValidationError(f"Vendor {vendor_id} is missing or inactive")
        return vendor

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def record_invoice(self, spec: InvoiceCreate, actor: str | None = None) -> ApInvoice:
        if spec.idempotency_key:
            result = await self.db.execute(
                select(ApInvoice).where(ApInvoice.idempotency_key == spec.idempotency_key)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

        vendor = await self._active_vendor(spec.vendor_id)
        fund = await require_active_fund(self.db, spec.fund_id)
        dup = await self.db.execute(
            select(ApInvoice.id).where(
                ApInvoice.vendor_id == vendor.id,
                ApInvoice.invoice_number == spec.invoice_number,
            )
        )
        if dup.scalar_one_or_none() is not None:
            raise DuplicateCodeError(
                f"Invoice '{spec.invoice_number}' already recorded for vendor {vendor.code}"
            )
        if spec.purchase_order_id is not None:
            po = await self.get_purchase_order(spec.purchase_order_id)
            if po.vendor_id != vendor.id:
                raise ValidationError(f"Purchase order {po.po_number} belongs to another vendor")
        for line in spec.lines:
            await self.coa.require_posting_account(line.expense_account_id, "expense",
                                                   EXPENSE_ACCOUNT_TYPES)

        control = await self.coa.find_control_account("ap", fund.id)
        total = sum(line.amount for line in spec.lines)
        invoice_id = uuid.uuid4()

        je = await self.journal.post_entry(
            JournalEntryIn(
                entry_date=spec.invoice_date,
                memo=f"Vendor invoice {spec.invoice_number} ({vendor.code})",
                source_type="ap-invoice",
                source_id=invoice_id,
                lines=[
                    *(
                        JournalLineIn(account_id=line.expense_account_id, fund_id=fund.id,
                                      debit=line.amount, memo=line.description)
                        for line in spec.lines
                    ),
                    JournalLineIn(account_id=control.id, fund_id=fund.id, credit=total),
                ],
            ),
            actor,
        )

        invoice = ApInvoice(
            id=invoice_id,
            invoice_number=spec.invoice_number,
            vendor_id=vendor.id,
            fund_id=fund.id,
            control_account_id=control.id,
            invoice_date=spec.invoice_date,
            due_date=spec.due_date or spec.invoice_date + DEFAULT_PAYMENT_TERMS,
            total_amount=total,
            paid_amount=0,
            status="approved",
            purchase_order_id=spec.purchase_order_id,
            journal_entry_id=je.id,
            idempotency_key=spec.idempotency_key,
            created_by=actor,
        )
        invoice.lines = [
            ApInvoiceLine(description=line.description, amount=line.amount,
                          expense_account_id=line.expense_account_id)
            for line in spec.lines
        ]
        self.db.add(invoice)
        await self.db.flush()
        await record_audit(self.db, actor, "ap.invoice.create", "ap_invoices", invoice.id,
                           new_value=invoice_snapshot(invoice))
        logger.info("Recorded invoice %s from %s: %d", spec.invoice_number, vendor.code, total)
        return invoice

    async def get_invoice(self, invoice_id: uuid.UUID) -> ApInvoice:
        invoice = await self.db.get(ApInvoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def list_invoices(
        self,
        vendor_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> list[ApInvoice]:
        stmt = select(ApInvoice).order_by(ApInvoice.invoice_date, ApInvoice.invoice_number)
        if vendor_id:
            stmt = stmt.where(ApInvoice.vendor_id == vendor_id)
        if status:
            stmt = stmt.where(ApInvoice.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # =========================================================================
    # PURCHASE ORDERS
    # =========================================================================

    async def create_purchase_order(
        self,
        spec: PurchaseOrderCreate,
        actor: str | None = None,
    ) -> ApPurchaseOrder:
        vendor = await self._active_vendor(spec.vendor_id)
        fund = await require_active_fund(self.db, spec.fund_id)
        for item in spec.items:
            await self.coa.require_posting_account(item.expense_account_id, "expense",
                                                   EXPENSE_ACCOUNT_TYPES)

        po_number = await next_document_number(
            self.db, ApPurchaseOrder, ApPurchaseOrder.po_number, "PO", spec.order_date.year
        )
        po = ApPurchaseOrder(
            po_number=po_number,
            vendor_id=vendor.id,
            fund_id=fund.id,
            order_date=spec.order_date,
            status="open",
            created_by=actor,
        )
        po.items = [
            ApPurchaseOrderItem(
                description=item.description,
                quantity_ordered=item.quantity,
                quantity_received=0,
                unit_cost=item.unit_cost,
                expense_account_id=item.expense_account_id,
            )
            for item in spec.items
        ]
        self.db.add(po)
        await self.db.flush()
        await record_audit(self.db, actor, "ap.purchase_order.create", "ap_purchase_orders",
                           po.id, new_value={"po_number": po_number,
                                             "vendor_id": str(vendor.id),
                                             "total_amount": po.total_amount})
        return po

    async def get_purchase_order(self, po_id: uuid.UUID) -> ApPurchaseOrder:
        po = await self.db.get(ApPurchaseOrder, po_id)
        if po is None:
            raise NotFoundError(f"Purchase order {po_id} not found")
        return po

    async def list_purchase_orders(self, vendor_id: uuid.UUID | None = None) -> list[ApPurchaseOrder]:
        stmt = select(ApPurchaseOrder).order_by(ApPurchaseOrder.order_date,
                                                ApPurchaseOrder.po_number)
        if vendor_id:
            stmt = stmt.where(ApPurchaseOrder.vendor_id == vendor_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def receive_purchase_order(
        self,
        po_id: uuid.UUID,
        receipt: PurchaseOrderReceipt,
        actor: str | None = None,
    ) -> ApInvoice:
        """Receive goods against a PO and raise the matching approved invoice."""
        result = await self.db.execute(
            select(ApPurchaseOrder).where(ApPurchaseOrder.id == po_id).with_for_update()
        )
        po = result.scalar_one_or_none()
        if po is None:
            raise NotFoundError(f"Purchase order {po_id} not found")
        if po.status == "received":
            raise ValidationError(f"Purchase order {po.po_number} is fully received")

        items = {item.id: item for item in po.items}
        received: dict[uuid.UUID, int] = defaultdict(int)
        for line in receipt.items:
            if line.item_id not in items:
                raise ValidationError(
                    f"Item {line.item_id} is not on purchase order {po.po_number}"
                )
            received[line.item_id] += line.quantity

        for item_id, quantity in received.items():
            item = items[item_id]
            if quantity > item.quantity_outstanding:
                raise OverAllocationError(
                    f"Receiving {quantity} of '{item.description}' exceeds the "
                    f"{item.quantity_outstanding} outstanding",
                    {"item_id": str(item_id), "outstanding": item.quantity_outstanding,
                     "requested": quantity},
                )

        invoice = await self.record_invoice(
            InvoiceCreate(
                vendor_id=po.vendor_id,
                invoice_number=receipt.invoice_number,
                fund_id=po.fund_id,
                invoice_date=receipt.received_date,
                due_date=receipt.due_date,
                purchase_order_id=po.id,
                lines=[
                    InvoiceLineIn(
                        description=items[item_id].description,
                        amount=quantity * items[item_id].unit_cost,
                        expense_account_id=items[item_id].expense_account_id,
                    )
                    for item_id, quantity in received.items()
                ],
            ),
            actor,
        )

        before = po.status
        for item_id, quantity in received.items():
            items[item_id].quantity_received += quantity
        if all(item.quantity_outstanding == 0 for item in po.items):
            po.status = "received"
        else:
            po.status = "partially_received"
        await self.db.flush()
        await record_audit(self.db, actor, "ap.purchase_order.receive", "ap_purchase_orders",
                           po.id, old_value={"status": before},
                           new_value={"status": po.status, "invoice_id": str(invoice.id),
                                      "received": {str(k): v for k, v in received.items()}})
        logger.info("Received against %s; PO now %s", po.po_number, po.status)
        return invoice

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def record_payment(self, spec: VendorPaymentCreate, actor: str | None = None) -> ApPayment:
        if spec.idempotency_key:
            result = await self.db.execute(
                select(ApPayment).where(ApPayment.idempotency_key == spec.idempotency_key)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

        vendor = await self._active_vendor(spec.vendor_id)
        fund = await require_active_fund(self.db, spec.fund_id)
        cash_account_id = (await self.coa.cash_account(spec.cash_account_id)).id

        allocated = sum(a.amount for a in spec.allocations)
        if allocated > spec.amount:
            raise OverAllocationError(
                f"Allocations ({allocated}) exceed the payment amount ({spec.amount})",
                {"allocated": allocated, "amount": spec.amount},
            )

        per_invoice: dict[uuid.UUID, int] = defaultdict(int)
        for allocation in spec.allocations:
            per_invoice[allocation.invoice_id] += allocation.amount

        invoices = {}
        for invoice_id, amount in per_invoice.items():
            result = await self.db.execute(
                select(ApInvoice).where(ApInvoice.id == invoice_id).with_for_update()
            )
            invoice = result.scalar_one_or_none()
            if invoice is None:
                raise NotFoundError(f"Invoice {invoice_id} not found")
            if invoice.vendor_id != vendor.id:
                raise ValidationError(f"Invoice {invoice.invoice_number} belongs to another vendor")
            if invoice.fund_id != fund.id:
                raise ValidationError(f"Invoice {invoice.invoice_number} is in a different fund")
            if invoice.status not in PAYABLE_INVOICE_STATUSES:
                raise ValidationError(f"Invoice {invoice.invoice_number} is {invoice.status}")
            if amount > invoice.outstanding:
                raise OverAllocationError(
                    f"Allocation of {amount} exceeds the {invoice.outstanding} outstanding "
                    f"on invoice {invoice.invoice_number}",
                    {"invoice_id": str(invoice.id), "outstanding": invoice.outstanding,
                     "requested": amount},
                )
            invoices[invoice_id] = invoice

        control = await self.coa.find_control_account("ap", fund.id)
        payment_id = uuid.uuid4()
        payment_number = await next_document_number(
            self.db, ApPayment, ApPayment.payment_number, "VPAY", spec.payment_date.year
        )
        je = await self.journal.post_entry(
            JournalEntryIn(
                entry_date=spec.payment_date,
                memo=f"Vendor payment {payment_number} ({vendor.code})",
                source_type="ap-payment",
                source_id=payment_id,
                lines=[
                    JournalLineIn(account_id=control.id, fund_id=fund.id, debit=spec.amount),
                    JournalLineIn(account_id=cash_account_id, fund_id=fund.id,
                                  credit=spec.amount),
                ],
            ),
            actor,
        )

        payment = ApPayment(
            id=payment_id,
            payment_number=payment_number,
            vendor_id=vendor.id,
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
            ApPaymentAllocation(invoice_id=invoice_id, amount=amount)
            for invoice_id, amount in per_invoice.items()
        ]
        self.db.add(payment)
        for invoice_id, amount in per_invoice.items():
            invoice = invoices[invoice_id]
            invoice.paid_amount += amount
            invoice.status = invoice_status(invoice.total_amount, invoice.paid_amount)
        await self.db.flush()

        await record_audit(self.db, actor, "ap.payment.create", "ap_payments", payment.id,
                           new_value={
                               "payment_number": payment_number,
                               "vendor_id": str(vendor.id),
                               "amount": spec.amount,
                               "allocations": {str(k): v for k, v in per_invoice.items()},
                               "journal_entry_id": str(je.id),
                           })
        logger.info("Recorded vendor payment %s to %s: %d", payment_number, vendor.code, spec.amount)
        return payment

    async def list_payments(self, vendor_id: uuid.UUID | None = None) -> list[ApPayment]:
        stmt = select(ApPayment).order_by(ApPayment.payment_date, ApPayment.payment_number)
        if vendor_id:
            stmt = stmt.where(ApPayment.vendor_id == vendor_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
