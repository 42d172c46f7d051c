"""Accounts-payable subledger: vendors, purchase orders, invoices, payments."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin


class ApVendor(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    __tablename__ = "ap_vendors"

    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(200))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=true(), default=True
    )

    def __repr__(self) -> str:
        return f"<ApVendor {self.code!r} {self.name!r}>"


class ApPurchaseOrder(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """An order placed with a vendor; receiving goods raises an invoice."""
    __tablename__ = "ap_purchase_orders"

    po_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_vendors.id"), nullable=False
    )
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    order_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, server_default=text("'open'"), default="open"
    )
    created_by: Mapped[str | None] = mapped_column(String(100))

    items: Mapped[list[ApPurchaseOrderItem]] = relationship(
        "ApPurchaseOrderItem",
        back_populates="purchase_order",
        lazy="selectin",
    )

    @property
    def total_amount(self) -> int:
        return sum(i.quantity_ordered * i.unit_cost for i in self.items)

    def __repr__(self) -> str:
        return f"<ApPurchaseOrder {self.po_number!r} {self.status!r}>"


class ApPurchaseOrderItem(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "ap_purchase_order_items"

    purchase_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_purchase_orders.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity_ordered: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expense_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )

    purchase_order: Mapped[ApPurchaseOrder] = relationship(
        "ApPurchaseOrder",
        back_populates="items",
    )

    @property
    def quantity_outstanding(self) -> int:
        return self.quantity_ordered - self.quantity_received


class ApInvoice(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """An approved vendor invoice; credits the AP control account."""
    __tablename__ = "ap_invoices"
    __table_args__ = (
        UniqueConstraint("vendor_id", "invoice_number", name="uq_ap_invoices_vendor_number"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_vendors.id"), nullable=False, index=True
    )
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    # The control account credited when the invoice was approved
    control_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False, index=True
    )
    invoice_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    due_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("'approved'"), default="approved"
    )
    purchase_order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("ap_purchase_orders.id")
    )
    journal_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_by: Mapped[str | None] = mapped_column(String(100))

    lines: Mapped[list[ApInvoiceLine]] = relationship(
        "ApInvoiceLine",
        back_populates="invoice",
        lazy="selectin",
    )

    @property
    def outstanding(self) -> int:
        return self.total_amount - self.paid_amount

    def __repr__(self) -> str:
        return f"<ApInvoice {self.invoice_number!r} {self.status!r}>"


class ApInvoiceLine(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "ap_invoice_lines"

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_invoices.id"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expense_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )

    invoice: Mapped[ApInvoice] = relationship(
        "ApInvoice",
        back_populates="lines",
    )


class ApPayment(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """A payment issued to a vendor; debits the AP control account."""
    __tablename__ = "ap_payments"

    payment_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_vendors.id"), nullable=False, index=True
    )
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

    allocations: Mapped[list[ApPaymentAllocation]] = relationship(
        "ApPaymentAllocation",
        back_populates="payment",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<ApPayment {self.payment_number!r} amount={self.amount}>"


class ApPaymentAllocation(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "ap_payment_allocations"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_payments.id"), nullable=False
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ap_invoices.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment: Mapped[ApPayment] = relationship(
        "ApPayment",
        back_populates="allocations",
    )
