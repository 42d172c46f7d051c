"""Fiscal Period Manager.

Periods form a contiguous, non-overlapping calendar. A period moves
``open -> locked`` once; only the privileged :meth:`reopen_period` takes it
back, and that is journaled both as a :class:`FiscalPeriodEvent` and in the
audit trail. Periods lock in date order, so reopening one also reopens every
later locked period.
"""
from __future__ import annotations

import datetime
import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    NoPeriodDefinedError,
    NotFoundError,
    OpenPostingsPendingError,
    PeriodLockedError,
    ReconciliationRequiredError,
    ValidationError,
)
from app.models.base import utcnow
from app.models.gl import JournalEntry
from app.models.period import FiscalPeriod, FiscalPeriodEvent
from app.schemas.period import PeriodCreate
from app.services.audit_service import record_audit

logger = logging.getLogger(__name__)

ONE_DAY = datetime.timedelta(days=1)


def period_snapshot(period: FiscalPeriod) -> dict:
    return {
        "name": period.name,
        "start_date": period.start_date.isoformat(),
        "end_date": period.end_date.isoformat(),
        "status": period.status,
        "locked_by": period.locked_by,
        "locked_at": period.locked_at.isoformat() if period.locked_at else None,
    }


class FiscalPeriodService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_period(self, spec: PeriodCreate, actor: str | None = None) -> FiscalPeriod:
        if spec.start_date > spec.end_date:
            raise ValidationError("start_date must not be after end_date")

        dup = await self.db.execute(select(FiscalPeriod.id).where(FiscalPeriod.name == spec.name))
        if dup.scalar_one_or_none() is not None:
            raise ValidationError(f"Fiscal period '{spec.name}' already exists")

        overlap = await self.db.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.start_date <= spec.end_date,
                FiscalPeriod.end_date >= spec.start_date,
            )
        )
        clash = overlap.scalars().first()
        if clash is not None:
            raise ValidationError(
                f"Period overlaps '{clash.name}' ({clash.start_date} to {clash.end_date})"
            )

        bounds = await self.db.execute(
            select(func.min(FiscalPeriod.start_date), func.max(FiscalPeriod.end_date))
        )
        first_start, last_end = bounds.one()
        if first_start is not None:
            # New periods extend the calendar at either end without gaps
            if spec.start_date > last_end and spec.start_date != last_end + ONE_DAY:
                raise ValidationError(
                    f"Periods must be contiguous: next period starts {last_end + ONE_DAY}"
                )
            if spec.end_date < first_start and spec.end_date != first_start - ONE_DAY:
                raise ValidationError(
                    f"Periods must be contiguous: previous period ends {first_start - ONE_DAY}"
                )
            if spec.end_date < first_start:
                first = await self.db.execute(
                    select(FiscalPeriod).where(FiscalPeriod.start_date == first_start)
                )
                first_period = first.scalar_one()
                if first_period.status == "locked":
                    # An open period may never sit before a locked one
                    raise ValidationError(
                        f"Cannot add a period before locked period '{first_period.name}'",
                        {"locked_period": first_period.name},
                    )

        period = FiscalPeriod(
            name=spec.name,
            start_date=spec.start_date,
            end_date=spec.end_date,
            status="open",
        )
        self.db.add(period)
        await self.db.flush()
        await record_audit(self.db, actor, "fiscal.period.create", "fiscal_periods",
                           period.id, new_value=period_snapshot(period))
        return period

    async def get_period(self, period_id: uuid.UUID, for_update: bool = False) -> FiscalPeriod:
        stmt = select(FiscalPeriod).where(FiscalPeriod.id == period_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        period = result.scalar_one_or_none()
        if period is None:
            raise NotFoundError(f"Fiscal period {period_id} not found")
        return period

    async def list_periods(self, status: str | None = None) -> list[FiscalPeriod]:
        stmt = select(FiscalPeriod).order_by(FiscalPeriod.start_date)
        if status:
            stmt = stmt.where(FiscalPeriod.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def resolve_period(self, day: datetime.date, for_update: bool = False) -> FiscalPeriod:
        stmt = select(FiscalPeriod).where(
            FiscalPeriod.start_date <= day,
            FiscalPeriod.end_date >= day,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        period = result.scalar_one_or_none()
        if period is None:
            raise NoPeriodDefinedError(f"No fiscal period covers {day.isoformat()}")
        return period

    async def require_postable(self, day: datetime.date) -> FiscalPeriod:
        """Return the open period covering ``day``.

        The period row stays locked until the caller's transaction ends, so a
        concurrent :meth:`lock_period` cannot slip in between this check and
        the posting's commit.
        """
        period = await self.resolve_period(day, for_update=True)
        if period.status != "open":
            raise PeriodLockedError(
                f"Fiscal period '{period.name}' is locked",
                {"period_id": str(period.id), "period_name": period.name},
            )
        return period

    async def lock_period(self, period_id: uuid.UUID, actor: str | None = None) -> FiscalPeriod:
        period = await self.get_period(period_id, for_update=True)
        if period.status == "locked":
            raise PeriodLockedError(f"Fiscal period '{period.name}' is already locked")

        earlier = await self.db.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.end_date < period.start_date, FiscalPeriod.status == "open")
            .order_by(FiscalPeriod.start_date)
        )
        still_open = earlier.scalars().first()
        if still_open is not None:
            raise ValidationError(
                f"Periods close in date order; '{still_open.name}' is still open",
                {"open_period_id": str(still_open.id)},
            )

        if settings.REQUIRE_NO_PENDING_DRAFTS:
            drafts = await self.db.execute(
                select(func.count(JournalEntry.id)).where(
                    JournalEntry.status == "draft",
                    JournalEntry.entry_date >= period.start_date,
                    JournalEntry.entry_date <= period.end_date,
                )
            )
            pending = drafts.scalar_one()
            if pending:
                raise OpenPostingsPendingError(
                    f"{pending} draft journal entries are dated inside '{period.name}'",
                    {"pending_drafts": pending},
                )

        if settings.REQUIRE_ZERO_DIFFERENCE_CLOSE:
            await self._require_reconciled(period)

        before = period_snapshot(period)
        period.status = "locked"
        period.locked_by = actor
        period.locked_at = utcnow()
        self.db.add(FiscalPeriodEvent(period_id=period.id, action="lock", actor=actor))
        await self.db.flush()
        await record_audit(self.db, actor, "fiscal.period.lock", "fiscal_periods", period.id,
                           old_value=before, new_value=period_snapshot(period))
        logger.info("Locked fiscal period %s by %s", period.name, actor)
        return period

    async def _require_reconciled(self, period: FiscalPeriod) -> None:
        from app.services.coa_service import ChartOfAccountsService
        from app.services.reconciliation_service import ReconciliationService

        recon = ReconciliationService(self.db)
        for account in await ChartOfAccountsService(self.db).list_control_accounts():
            latest = await recon.latest_for(period.id, account.id)
            if latest is None or latest.status == "unmatched":
                raise ReconciliationRequiredError(
                    f"Control account {account.code} is not reconciled for '{period.name}'",
                    {
                        "control_account_id": str(account.id),
                        "reconciliation_id": str(latest.id) if latest else None,
                    },
                )

    async def reopen_period(
        self,
        period_id: uuid.UUID,
        actor: str | None,
        reason: str,
    ) -> list[FiscalPeriod]:
        """Reopen ``period_id`` and every later locked period.

        Returns the reopened periods in date order.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reopen a fiscal period")

        period = await self.get_period(period_id, for_update=True)
        if period.status != "locked":
            raise ValidationError(f"Fiscal period '{period.name}' is not locked")

        later = await self.db.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.start_date > period.end_date, FiscalPeriod.status == "locked")
            .order_by(FiscalPeriod.start_date)
            .with_for_update()
        )
        reopened = [period, *later.scalars().all()]

        for p in reopened:
            before = period_snapshot(p)
            p.status = "open"
            p.locked_by = None
            p.locked_at = None
            self.db.add(FiscalPeriodEvent(period_id=p.id, action="reopen", actor=actor,
                                          reason=reason))
            await self.db.flush()
            await record_audit(self.db, actor, "fiscal.period.reopen", "fiscal_periods", p.id,
                               old_value=before,
                               new_value={**period_snapshot(p), "reason": reason})
            logger.warning("Reopened fiscal period %s by %s: %s", p.name, actor, reason)
        return reopened

    async def period_history(self, period_id: uuid.UUID) -> list[FiscalPeriodEvent]:
        await self.get_period(period_id)
        result = await self.db.execute(
            select(FiscalPeriodEvent)
            .where(FiscalPeriodEvent.period_id == period_id)
            .order_by(FiscalPeriodEvent.created_at, FiscalPeriodEvent.id)
        )
        return list(result.scalars().all())
