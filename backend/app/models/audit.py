"""Append-only audit trail and outbound notifications."""
from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.base import CreatedAtMixin, UUIDPrimaryKeyMixin


class AuditLog(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Immutable audit trail of ledger mutations."""
    __tablename__ = "audit_log"

    actor: Mapped[str | None] = mapped_column(String(100))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str | None] = mapped_column(String(200))
    old_value: Mapped[dict | None] = mapped_column(JSON)
    new_value: Mapped[dict | None] = mapped_column(JSON)
    event_category: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("'mutation'")
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action!r} on {self.table_name}#{self.record_id}>"


class Notification(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """A message queued for the surrounding application to deliver."""
    __tablename__ = "notifications"

    recipient_role: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str | None] = mapped_column(Text)
    resource_type: Mapped[str | None] = mapped_column(String(100))
    resource_id: Mapped[str | None] = mapped_column(String(200))
    read_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Notification {self.kind!r} to {self.recipient_role!r}>"
