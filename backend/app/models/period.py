"""Fiscal calendar models: periods and their lock/reopen history."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Date, DateTime, ForeignKey, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin


class FiscalPeriod(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """A bounded date range in which postings are allowed until locked."""
    __tablename__ = "fiscal_periods"

    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'open'"),
        default="open",
    )
    locked_by: Mapped[str | None] = mapped_column(String(100))
    locked_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    # ------ relationships ------
    events: Mapped[list[FiscalPeriodEvent]] = relationship(
        "FiscalPeriodEvent",
        back_populates="period",
        order_by="FiscalPeriodEvent.created_at",
    )

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.name!r} {self.status!r}>"


class FiscalPeriodEvent(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Lock / reopen journal for a fiscal period."""
    __tablename__ = "fiscal_period_events"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(100))
    reason: Mapped[str | None] = mapped_column(Text)

    period: Mapped[FiscalPeriod] = relationship(
        "FiscalPeriod",
        back_populates="events",
    )

    def __repr__(self) -> str:
        return f"<FiscalPeriodEvent {self.action!r} by {self.actor!r}>"
