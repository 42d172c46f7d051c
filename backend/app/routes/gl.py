"""General Ledger routes — Funds, Chart of Accounts, Journal, Trial Balance,
Financial Statements, Reconciliation."""
from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import require_permission
from app.models.fund import Fund
from app.models.gl import Account, JournalEntry
from app.models.reconciliation import GlReconciliation
from app.schemas.gl import (
    AccountCreate,
    FundCreate,
    ManualJournalEntryCreate,
    ReconcileRequest,
    ResolveRequest,
    ReverseRequest,
)
from app.services.coa_service import ChartOfAccountsService
from app.services.journal_service import JournalService
from app.services.reconciliation_service import ReconciliationService
from app.services.statement_service import StatementService

router = APIRouter(prefix="/api/gl", tags=["general-ledger"])


# ---------------------------------------------------------------------------
# Serialisers
# ---------------------------------------------------------------------------

def fund_out(f: Fund) -> dict:
    return {
        "id": str(f.id),
        "code": f.code,
        "name": f.name,
        "restriction_type": f.restriction_type,
        "description": f.description,
        "is_active": f.is_active,
    }


def account_out(a: Account) -> dict:
    return {
        "id": str(a.id),
        "code": a.code,
        "name": a.name,
        "account_type": a.account_type,
        "normal_balance": a.normal_balance,
        "parent_id": str(a.parent_id) if a.parent_id else None,
        "fund_id": str(a.fund_id) if a.fund_id else None,
        "is_control_account": a.is_control_account,
        "subledger": a.subledger,
        "is_active": a.is_active,
        "description": a.description,
    }


def entry_out(je: JournalEntry, with_lines: bool = True) -> dict:
    out = {
        "id": str(je.id),
        "sequence": je.sequence,
        "entry_date": str(je.entry_date),
        "fiscal_period_id": str(je.fiscal_period_id) if je.fiscal_period_id else None,
        "memo": je.memo,
        "source_type": je.source_type,
        "source_id": str(je.source_id) if je.source_id else None,
        "status": je.status,
        "reverses_entry_id": str(je.reverses_entry_id) if je.reverses_entry_id else None,
        "reversed_by_entry_id": str(je.reversed_by_entry_id) if je.reversed_by_entry_id else None,
        "posted_by": je.posted_by,
        "posted_at": je.posted_at.isoformat() if je.posted_at else None,
        "total_debits": je.total_debits,
        "total_credits": je.total_credits,
    }
    if with_lines:
        out["lines"] = [
            {
                "line_number": l.line_number,
                "account_id": str(l.account_id),
                "account_code": l.account.code if l.account else None,
                "account_name": l.account.name if l.account else None,
                "fund_id": str(l.fund_id),
                "debit": l.debit,
                "credit": l.credit,
                "memo": l.memo,
            }
            for l in je.lines
        ]
    else:
        out["line_count"] = len(je.lines)
    return out


def reconciliation_out(r: GlReconciliation) -> dict:
    return {
        "id": str(r.id),
        "fiscal_period_id": str(r.fiscal_period_id),
        "fiscal_period": r.fiscal_period.name if r.fiscal_period else None,
        "control_account_id": str(r.control_account_id),
        "control_account_code": r.control_account.code if r.control_account else None,
        "fund_id": str(r.fund_id) if r.fund_id else None,
        "subledger_total": r.subledger_total,
        "gl_balance": r.gl_balance,
        "difference": r.difference,
        "status": r.status,
        "reconciled_by": r.reconciled_by,
        "resolved_by": r.resolved_by,
        "resolved_at": r.resolved_at.isoformat() if r.resolved_at else None,
        "notes": r.notes,
        "adjustment_entry_id": str(r.adjustment_entry_id) if r.adjustment_entry_id else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


# ---------------------------------------------------------------------------
# FUNDS
# ---------------------------------------------------------------------------

@router.get("/funds")
async def list_funds(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.funds.view")),
):
    funds = await ChartOfAccountsService(db).list_funds(include_inactive)
    items = [fund_out(f) for f in funds]
    return {"items": items, "total": len(items)}


@router.post("/funds", status_code=201)
async def create_fund(
    body: FundCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.funds.create")),
):
    fund = await ChartOfAccountsService(db).create_fund(body, user["username"])
    await db.commit()
    return fund_out(fund)


@router.post("/funds/{code}/deactivate")
async def deactivate_fund(
    code: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.funds.update")),
):
    fund = await ChartOfAccountsService(db).deactivate_fund(code, user["username"])
    await db.commit()
    return fund_out(fund)


# ---------------------------------------------------------------------------
# CHART OF ACCOUNTS
# ---------------------------------------------------------------------------

@router.get("/accounts")
async def list_accounts(
    account_type: str | None = Query(None),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.accounts.view")),
):
    accounts = await ChartOfAccountsService(db).list_accounts(account_type, include_inactive)
    items = [account_out(a) for a in accounts]
    return {"items": items, "total": len(items)}


@router.get("/accounts/tree")
async def get_accounts_tree(
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.accounts.view")),
):
    """Return chart of accounts as a nested tree."""
    return {"items": await ChartOfAccountsService(db).account_tree()}


@router.post("/accounts", status_code=201)
async def create_account(
    body: AccountCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.accounts.create")),
):
    account = await ChartOfAccountsService(db).create_account(body, user["username"])
    await db.commit()
    return account_out(account)


@router.get("/accounts/{code}")
async def get_account(
    code: str,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.accounts.view")),
):
    return account_out(await ChartOfAccountsService(db).get_account(code))


@router.delete("/accounts/{code}", status_code=204)
async def delete_account(
    code: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.accounts.delete")),
):
    await ChartOfAccountsService(db).delete_account(code, user["username"])
    await db.commit()


@router.post("/accounts/{code}/deactivate")
async def deactivate_account(
    code: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.accounts.update")),
):
    account = await ChartOfAccountsService(db).deactivate_account(code, user["username"])
    await db.commit()
    return account_out(account)


@router.get("/accounts/{code}/balance")
async def get_account_balance(
    code: str,
    fund_id: uuid.UUID | None = Query(None),
    as_of: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.accounts.view")),
):
    account = await ChartOfAccountsService(db).get_account(code)
    return await JournalService(db).account_balance(account.id, fund_id, as_of)


# ---------------------------------------------------------------------------
# JOURNAL ENTRIES
# ---------------------------------------------------------------------------

@router.get("/journal-entries")
async def list_journal_entries(
    fiscal_period_id: uuid.UUID | None = Query(None),
    source_type: str | None = Query(None),
    je_status: str | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.journal_entries.view")),
):
    entries, total = await JournalService(db).list_entries(
        fiscal_period_id, source_type, je_status, page, page_size
    )
    return {
        "items": [entry_out(je, with_lines=False) for je in entries],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.post("/journal-entries", status_code=201)
async def post_journal_entry(
    body: ManualJournalEntryCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.journal_entries.post")),
):
    je = await JournalService(db).post_entry(body.to_entry(idempotency_key), user["username"])
    await db.commit()
    return entry_out(je)


@router.post("/journal-entries/drafts", status_code=201)
async def create_draft_entry(
    body: ManualJournalEntryCreate,
    idempotency_key: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.journal_entries.create")),
):
    je = await JournalService(db).create_draft(body.to_entry(idempotency_key), user["username"])
    await db.commit()
    return entry_out(je)


@router.get("/journal-entries/{entry_id}")
async def get_journal_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.journal_entries.view")),
):
    return entry_out(await JournalService(db).get_entry(entry_id))


@router.post("/journal-entries/{entry_id}/post")
async def post_draft_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.journal_entries.post")),
):
    je = await JournalService(db).post_draft(entry_id, user["username"])
    await db.commit()
    return entry_out(je)


@router.post("/journal-entries/{entry_id}/reverse", status_code=201)
async def reverse_journal_entry(
    entry_id: uuid.UUID,
    body: ReverseRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.journal_entries.reverse")),
):
    body = body or ReverseRequest()
    je = await JournalService(db).reverse_entry(
        entry_id, user["username"], reversal_date=body.reversal_date, memo=body.memo
    )
    await db.commit()
    return entry_out(je)


# ---------------------------------------------------------------------------
# TRIAL BALANCE & PROJECTION
# ---------------------------------------------------------------------------

@router.get("/trial-balance")
async def get_trial_balance(
    fiscal_period_id: uuid.UUID = Query(...),
    fund_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.trial_balance.view")),
):
    return await StatementService(db).trial_balance(fiscal_period_id, fund_id)


@router.post("/balances/rebuild")
async def rebuild_balances(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.balances.rebuild")),
):
    rows = await JournalService(db).rebuild_balances(user["username"])
    await db.commit()
    return {"status": "rebuilt", "rows": rows}


# ---------------------------------------------------------------------------
# FINANCIAL STATEMENTS
# ---------------------------------------------------------------------------

@router.get("/reports/balance-sheet")
async def balance_sheet(
    as_of: date = Query(...),
    fund_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.reports.view")),
):
    return await StatementService(db).balance_sheet(as_of, fund_id)


@router.get("/reports/income-statement")
async def income_statement(
    start_date: date = Query(...),
    end_date: date = Query(...),
    fund_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.reports.view")),
):
    return await StatementService(db).income_statement(start_date, end_date, fund_id)


# ---------------------------------------------------------------------------
# RECONCILIATION
# ---------------------------------------------------------------------------

@router.get("/reconciliations")
async def list_reconciliations(
    fiscal_period_id: uuid.UUID | None = Query(None),
    rec_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.reconciliations.view")),
):
    recs = await ReconciliationService(db).list_reconciliations(fiscal_period_id, rec_status)
    items = [reconciliation_out(r) for r in recs]
    return {"items": items, "total": len(items)}


@router.post("/reconciliations", status_code=201)
async def run_reconciliation(
    body: ReconcileRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.reconciliations.run")),
):
    rec = await ReconciliationService(db).reconcile_period(
        body.fiscal_period_id, body.control_account_id, body.fund_id, user["username"]
    )
    await db.commit()
    return reconciliation_out(rec)


@router.get("/reconciliations/{reconciliation_id}")
async def get_reconciliation(
    reconciliation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _user: dict = Depends(require_permission("gl.reconciliations.view")),
):
    return reconciliation_out(await ReconciliationService(db).get_reconciliation(reconciliation_id))


@router.post("/reconciliations/{reconciliation_id}/resolve")
async def resolve_reconciliation(
    reconciliation_id: uuid.UUID,
    body: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_permission("gl.reconciliations.resolve")),
):
    rec = await ReconciliationService(db).resolve(
        reconciliation_id, body.notes, user["username"], body.adjustment
    )
    await db.commit()
    return reconciliation_out(rec)
