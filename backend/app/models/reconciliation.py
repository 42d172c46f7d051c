"""Control-account reconciliation records."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin
from app.models.gl import Account
from app.models.period import FiscalPeriod

RECONCILIATION_STATUSES = ("matched", "unmatched", "resolved")


class GlReconciliation(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Subledger total vs. GL control-account activity for one period."""
    __tablename__ = "gl_reconciliations"

    fiscal_period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fiscal_periods.id"), nullable=False, index=True
    )
    control_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id"), nullable=False
    )
    # NULL means all funds
    fund_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("funds.id")
    )
    subledger_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gl_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    difference: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reconciled_by: Mapped[str | None] = mapped_column(String(100))
    resolved_by: Mapped[str | None] = mapped_column(String(100))
    resolved_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    notes: Mapped[str | None] = mapped_column(Text)
    adjustment_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journal_entries.id")
    )

    fiscal_period: Mapped[FiscalPeriod] = relationship(
        "FiscalPeriod",
        lazy="selectin",
    )
    control_account: Mapped[Account] = relationship(
        "Account",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<GlReconciliation diff={self.difference} {self.status!r}>"
