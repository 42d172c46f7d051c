"""Accounts-receivable request schemas."""
from __future__ import annotations

import uuid
from datetime import date

from pydantic import BaseModel, Field, model_validator

from app.schemas import PositiveMinorUnits


class BillLineItemIn(BaseModel):
    description: str = Field(min_length=1, max_length=200)
    amount: PositiveMinorUnits
    income_account_id: uuid.UUID


class StudentBillCreate(BaseModel):
    student_id: str = Field(min_length=1, max_length=100)
    fund_id: uuid.UUID
    bill_date: date
    due_date: date
    description: str | None = None
    line_items: list[BillLineItemIn] = Field(min_length=1)
    idempotency_key: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def check_dates(self):
        if self.due_date < self.bill_date:
            raise ValueError("due_date must not be before bill_date")
        return self


class PaymentAllocationIn(BaseModel):
    bill_id: uuid.UUID
    amount: PositiveMinorUnits


class StudentPaymentCreate(BaseModel):
    student_id: str = Field(min_length=1, max_length=100)
    fund_id: uuid.UUID
    payment_date: date
    amount: PositiveMinorUnits
    method: str | None = Field(default=None, max_length=30)
    reference: str | None = Field(default=None, max_length=100)
    # Falls back to the configured default cash account
    cash_account_id: uuid.UUID | None = None
    allocations: list[PaymentAllocationIn] = []
    idempotency_key: str | None = Field(default=None, max_length=100)


class StudentRefundCreate(BaseModel):
    student_id: str = Field(min_length=1, max_length=100)
    fund_id: uuid.UUID
    refund_date: date
    amount: PositiveMinorUnits
    reason: str = Field(min_length=1)
    method: str | None = Field(default=None, max_length=30)
    reference: str | None = Field(default=None, max_length=100)
    cash_account_id: uuid.UUID | None = None
    idempotency_key: str | None = Field(default=None, max_length=100)


class VoidBillRequest(BaseModel):
    void_date: date | None = None
