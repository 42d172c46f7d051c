"""Fiscal calendar routes — periods, lock, privileged reopen, history."""
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import require_permission
from app.models.period import FiscalPeriod
from app.schemas.period import PeriodCreate, ReopenRequest
from app.services.period_service import FiscalPeriodService

router = APIRouter(prefix="/api/fiscal-periods", tags=["fiscal-periods"])


def period_out(p: FiscalPeriod) -> dict:
    return {
        "id": str(p.id),
        "name": p.name,
        "start_date": str(p.start_date),
        "end_date": str(p.end_date),
        "status": p.status,
        "locked_by": p.locked_by,
        "locked_at": p.locked_at.isoformat() if p.locked_at else None,
    }


@router.get("")
async def list_periods(
    period_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("fiscal.periods.view")),
):
    periods = await FiscalPeriodService(db).list_periods(period_status)
    items = [period_out(p) for p in periods]
    return {"items": items, "total": len(items)}


@router.post("", status_code=201)
async def create_period(
    body: PeriodCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("fiscal.periods.create")),
):
    period = await FiscalPeriodService(db).create_period(body, user["username"])
    await db.commit()
    return period_out(period)


@router.get("/{period_id}")
async def get_period(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("fiscal.periods.view")),
):
    return period_out(await FiscalPeriodService(db).get_period(period_id))


@router.post("/{period_id}/lock")
async def lock_period(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("fiscal.periods.lock")),
):
    period = await FiscalPeriodService(db).lock_period(period_id, user["username"])
    await db.commit()
    return period_out(period)


@router.post("/{period_id}/reopen")
async def reopen_period(
    period_id: uuid.UUID,
    body: ReopenRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("fiscal.periods.reopen")),
):
    """Reopen a locked period and every later locked period."""
    reopened = await FiscalPeriodService(db).reopen_period(period_id, user["username"], body.reason)
    await db.commit()
    return {"items": [period_out(p) for p in reopened], "total": len(reopened)}


@router.get("/{period_id}/history")
async def period_history(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("fiscal.periods.view")),
):
    events = await FiscalPeriodService(db).period_history(period_id)
    return {
        "items": [
            {
                "id": str(e.id),
                "action": e.action,
                "actor": e.actor,
                "reason": e.reason,
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
        "total": len(events),
    }
