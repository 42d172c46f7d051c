"""General Ledger models: chart of accounts, journal entries, lines and balances."""
from __future__ import annotations

import datetime
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    false,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.fund import Fund
    from app.models.period import FiscalPeriod

ACCOUNT_TYPES = ("asset", "liability", "equity", "income", "expense")
NORMAL_BALANCES = ("debit", "credit")
SUBLEDGERS = ("ar", "ap")
SOURCE_TYPES = (
    "manual",
    "ar-bill",
    "ar-payment",
    "ar-refund",
    "ap-invoice",
    "ap-payment",
    "adjustment",
)


class Account(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Chart of Accounts entry."""
    __tablename__ = "accounts"

    code: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[str] = mapped_column(String(20), nullable=False)
    normal_balance: Mapped[str] = mapped_column(String(10), nullable=False)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("accounts.id"),
    )
    fund_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("funds.id"),
    )
    is_control_account: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=false(), default=False
    )
    # Owning subledger of a control account ("ar" / "ap")
    subledger: Mapped[str | None] = mapped_column(String(10))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=true(), default=True
    )
    description: Mapped[str | None] = mapped_column(Text)

    # ------ relationships ------
    parent: Mapped[Account | None] = relationship(
        "Account",
        remote_side="Account.id",
        back_populates="children",
    )
    children: Mapped[list[Account]] = relationship(
        "Account",
        back_populates="parent",
        passive_deletes=True,
    )
    fund: Mapped[Fund | None] = relationship(
        "Fund",
        back_populates="accounts",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Account {self.code!r} {self.name!r}>"


class JournalEntry(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """A journal entry header. Immutable once ``status`` is ``posted``."""
    __tablename__ = "journal_entries"

    # Assigned at posting; orders same-day entries in statements
    sequence: Mapped[int | None] = mapped_column(Integer, unique=True)
    entry_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    fiscal_period_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("fiscal_periods.id"),
    )
    memo: Mapped[str | None] = mapped_column(Text)
    source_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'manual'"),
        default="manual",
    )
    source_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'draft'"),
        default="draft",
    )
    reverses_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id"),
    )
    reversed_by_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id"),
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_by: Mapped[str | None] = mapped_column(String(100))
    posted_by: Mapped[str | None] = mapped_column(String(100))
    posted_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    # ------ relationships ------
    fiscal_period: Mapped[FiscalPeriod | None] = relationship(
        "FiscalPeriod",
        lazy="selectin",
    )
    lines: Mapped[list[JournalLine]] = relationship(
        "JournalLine",
        back_populates="journal_entry",
        order_by="JournalLine.line_number",
        lazy="selectin",
    )

    @property
    def total_debits(self) -> int:
        return sum(line.debit for line in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(line.credit for line in self.lines)

    def __repr__(self) -> str:
        return f"<JournalEntry #{self.sequence} status={self.status!r}>"


class JournalLine(UUIDPrimaryKeyMixin, Base):
    """Individual debit or credit line within a journal entry."""
    __tablename__ = "journal_lines"
    __table_args__ = (
        CheckConstraint("debit >= 0 AND credit >= 0", name="ck_journal_lines_non_negative"),
        CheckConstraint(
            "(debit = 0 AND credit > 0) OR (credit = 0 AND debit > 0)",
            name="ck_journal_lines_one_side",
        ),
    )

    journal_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("accounts.id"),
        nullable=False,
        index=True,
    )
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("funds.id"),
        nullable=False,
    )
    debit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    memo: Mapped[str | None] = mapped_column(Text)

    # ------ relationships ------
    journal_entry: Mapped[JournalEntry] = relationship(
        "JournalEntry",
        back_populates="lines",
    )
    account: Mapped[Account] = relationship(
        "Account",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<JournalLine #{self.line_number} "
            f"debit={self.debit} credit={self.credit}>"
        )


class AccountBalance(UUIDPrimaryKeyMixin, Base):
    """Derived per-(account, fund, period) totals, rebuildable from the journal."""
    __tablename__ = "account_balances"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "fund_id", "fiscal_period_id",
            name="uq_account_balances_account_fund_period",
        ),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    fund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("funds.id"), nullable=False
    )
    fiscal_period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fiscal_periods.id"), nullable=False
    )
    debit_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<AccountBalance account={self.account_id} fund={self.fund_id} "
            f"dr={self.debit_total} cr={self.credit_total}>"
        )
