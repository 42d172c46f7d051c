"""Accounts-payable request schemas."""
from __future__ import annotations

import uuid
from datetime import date

from pydantic import BaseModel, Field

from app.schemas import PositiveMinorUnits


class VendorCreate(BaseModel):
    code: str = Field(min_length=1, max_length=30)
    name: str = Field(min_length=1, max_length=200)
    email: str | None = None


class InvoiceLineIn(BaseModel):
    description: str = Field(min_length=1, max_length=200)
    amount: PositiveMinorUnits
    expense_account_id: uuid.UUID


class InvoiceCreate(BaseModel):
    vendor_id: uuid.UUID
    invoice_number: str = Field(min_length=1, max_length=50)
    fund_id: uuid.UUID
    invoice_date: date
    due_date: date | None = None
    lines: list[InvoiceLineIn] = Field(min_length=1)
    purchase_order_id: uuid.UUID | None = None
    idempotency_key: str | None = Field(default=None, max_length=100)


class PurchaseOrderItemIn(BaseModel):
    description: str = Field(min_length=1, max_length=200)
    quantity: int = Field(gt=0, strict=True)
    unit_cost: PositiveMinorUnits
    expense_account_id: uuid.UUID


class PurchaseOrderCreate(BaseModel):
    vendor_id: uuid.UUID
    fund_id: uuid.UUID
    order_date: date
    items: list[PurchaseOrderItemIn] = Field(min_length=1)


class ReceiptItemIn(BaseModel):
    item_id: uuid.UUID
    quantity: int = Field(gt=0, strict=True)


class PurchaseOrderReceipt(BaseModel):
    received_date: date
    invoice_number: str = Field(min_length=1, max_length=50)
    due_date: date | None = None
    items: list[ReceiptItemIn] = Field(min_length=1)


class InvoiceAllocationIn(BaseModel):
    invoice_id: uuid.UUID
    amount: PositiveMinorUnits


class VendorPaymentCreate(BaseModel):
    vendor_id: uuid.UUID
    fund_id: uuid.UUID
    payment_date: date
    amount: PositiveMinorUnits
    method: str | None = Field(default=None, max_length=30)
    reference: str | None = Field(default=None, max_length=100)
    cash_account_id: uuid.UUID | None = None
    allocations: list[InvoiceAllocationIn] = []
    idempotency_key: str | None = Field(default=None, max_length=100)
