"""Outbound notifications queued for the surrounding application to deliver."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import Notification

logger = logging.getLogger(__name__)

ACCOUNTING_ROLE = "controller"


class NotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        recipient_role: str,
        kind: str,
        title: str,
        body: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> Notification:
        notification = Notification(
            recipient_role=recipient_role,
            kind=kind,
            title=title,
            body=body,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        self.db.add(notification)
        await self.db.flush()
        logger.info("Queued %s notification for %s: %s", kind, recipient_role, title)
        return notification

    async def reconciliation_unmatched(self, reconciliation, period_name: str, account_code: str):
        return await self.notify(
            recipient_role=ACCOUNTING_ROLE,
            kind="reconciliation.unmatched",
            title=f"Reconciliation mismatch on {account_code} for {period_name}",
            body=(
                f"Subledger total {reconciliation.subledger_total} vs GL balance "
                f"{reconciliation.gl_balance} (difference {reconciliation.difference}). "
                "Resolve before closing the period."
            ),
            resource_type="gl_reconciliations",
            resource_id=str(reconciliation.id),
        )

    async def list_for_role(self, recipient_role: str) -> list[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(Notification.recipient_role == recipient_role)
            .order_by(Notification.created_at.desc())
        )
        return list(result.scalars().all())
