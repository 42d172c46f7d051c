"""Accounts-receivable subledger: student bills, line items, payments, allocations, refunds."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import BigInteger, Date, ForeignKey, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin

BILL_STATUSES = ("open", "partial", "paid", "void")


class ArStudentBill(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Money owed by a student; debits the AR control account when issued."""
    __tablename__ = "ar_student_bills"

    bill_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    student_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    # The control account debited when the bill was issued
    control_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False, index=True
    )
    bill_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    due_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("'open'"), default="open"
    )
    voided_on: Mapped[datetime.date | None] = mapped_column(Date)
    journal_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )
    void_journal_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_by: Mapped[str | None] = mapped_column(String(100))

    # ------ relationships ------
    line_items: Mapped[list[ArBillLineItem]] = relationship(
        "ArBillLineItem",
        back_populates="bill",
        lazy="selectin",
    )

    @property
    def outstanding(self) -> int:
        if self.status == "void":
            return 0
        return self.total_amount - self.paid_amount

    def __repr__(self) -> str:
        return f"<ArStudentBill {self.bill_number!r} {self.status!r}>"


class ArBillLineItem(UUIDPrimaryKeyMixin, Base):
    """A charge on a student bill, credited to its income account."""
    __tablename__ = "ar_bill_line_items"

    bill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ar_student_bills.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    income_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )

    bill: Mapped[ArStudentBill] = relationship(
        "ArStudentBill",
        back_populates="line_items",
    )


class ArPayment(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Money received from a student; credits the AR control account."""
    __tablename__ = "ar_payments"

    payment_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    student_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    payment_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str | None] = mapped_column(String(30))
    reference: Mapped[str | None] = mapped_column(String(100))
    cash_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    control_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False, index=True
    )
    journal_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_by: Mapped[str | None] = mapped_column(String(100))

    allocations: Mapped[list[ArPaymentAllocation]] = relationship(
        "ArPaymentAllocation",
        back_populates="payment",
        lazy="selectin",
    )

    @property
    def allocated_amount(self) -> int:
        return sum(a.amount for a in self.allocations)

    def __repr__(self) -> str:
        return f"<ArPayment {self.payment_number!r} amount={self.amount}>"


class ArPaymentAllocation(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "ar_payment_allocations"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ar_payments.id"), nullable=False
    )
    bill_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ar_student_bills.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment: Mapped[ArPayment] = relationship(
        "ArPayment",
        back_populates="allocations",
    )


class ArRefund(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Student credit paid back out; debits the AR control account."""
    __tablename__ = "ar_refunds"

    refund_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    student_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    refund_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    method: Mapped[str | None] = mapped_column(String(30))
    reference: Mapped[str | None] = mapped_column(String(100))
    cash_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    control_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False, index=True
    )
    journal_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_by: Mapped[str | None] = mapped_column(String(100))

    def __repr__(self) -> str:
        return f"<ArRefund {self.refund_number!r} amount={self.amount}>"
