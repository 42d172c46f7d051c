"""Journal Engine.

``post_entry`` is the only path into the posted journal. It runs four pure
checks (structure, balance, control-account ownership, period gate) and only
then adds the entry, its lines and the balance projection rows to the
session. The caller commits; a failure anywhere leaves the session without a
trace of the entry.
"""
from __future__ import annotations

import datetime
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import (
    ControlAccountViolationError,
    NotFoundError,
    StorageError,
    UnbalancedEntryError,
    ValidationError,
)
from app.models.base import utcnow
from app.models.fund import Fund
from app.models.gl import Account, AccountBalance, JournalEntry, JournalLine
from app.models.period import FiscalPeriod
from app.schemas.gl import JournalEntryIn, JournalLineIn
from app.services.audit_service import record_audit
from app.services.period_service import FiscalPeriodService

logger = logging.getLogger(__name__)

# source_type -> subledger that may post it to its control accounts
SUBLEDGER_SOURCES = {
    "ar-bill": "ar",
    "ar-payment": "ar",
    "ar-refund": "ar",
    "ap-invoice": "ap",
    "ap-payment": "ap",
}


@dataclass
class ResolvedLine:
    account: Account
    fund_id: uuid.UUID
    debit: int
    credit: int
    memo: str | None


def _is_minor_units(value) -> bool:
    return type(value) is int and value >= 0


def entry_snapshot(entry: JournalEntry) -> dict:
    return {
        "sequence": entry.sequence,
        "entry_date": entry.entry_date.isoformat(),
        "source_type": entry.source_type,
        "source_id": str(entry.source_id) if entry.source_id else None,
        "status": entry.status,
        "reverses_entry_id": str(entry.reverses_entry_id) if entry.reverses_entry_id else None,
        "lines": [
            {
                "account_id": str(line.account_id),
                "fund_id": str(line.fund_id),
                "debit": line.debit,
                "credit": line.credit,
            }
            for line in entry.lines
        ],
    }


def signed_balance(normal_balance: str, debits: int, credits: int) -> int:
    if normal_balance == "debit":
        return debits - credits
    return credits - debits


class JournalService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.periods = FiscalPeriodService(db)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def _resolve_lines(self, lines: list[JournalLineIn]) -> list[ResolvedLine]:
        if len(lines) < 2:
            raise ValidationError("A journal entry needs at least two lines")

        resolved = []
        for number, line in enumerate(lines, start=1):
            if not _is_minor_units(line.debit) or not _is_minor_units(line.credit):
                raise ValidationError(
                    f"Line {number}: amounts must be non-negative integer minor units",
                    {"line_number": number},
                )
            if (line.debit == 0) == (line.credit == 0):
                raise ValidationError(
                    f"Line {number}: exactly one of debit or credit must be non-zero",
                    {"line_number": number},
                )

            account = await self.db.get(Account, line.account_id)
            if account is None:
                raise ValidationError(f"Line {number}: account {line.account_id} does not exist")
            if not account.is_active:
                raise ValidationError(f"Line {number}: account {account.code} is inactive")

            fund_id = line.fund_id or account.fund_id
            if fund_id is None:
                raise ValidationError(
                    f"Line {number}: no fund given and account {account.code} has no default fund"
                )
            fund = await self.db.get(Fund, fund_id)
            if fund is None or not fund.is_active:
                raise ValidationError(f"Line {number}: fund {fund_id} is missing or inactive")

            resolved.append(ResolvedLine(account, fund_id, line.debit, line.credit, line.memo))
        return resolved

    @staticmethod
    def _require_balanced(lines: list[ResolvedLine]) -> None:
        debits = sum(line.debit for line in lines)
        credits = sum(line.credit for line in lines)
        if debits != credits:
            raise UnbalancedEntryError(debits, credits)

    @staticmethod
    def _require_control_ownership(
        source_type: str,
        lines: list[ResolvedLine],
        allow_control_adjustment: bool,
    ) -> None:
        owner = SUBLEDGER_SOURCES.get(source_type)
        for line in lines:
            account = line.account
            if not account.is_control_account:
                continue
            if owner is not None and owner == account.subledger:
                continue
            if source_type == "adjustment" and allow_control_adjustment:
                continue
            raise ControlAccountViolationError(
                f"Control account {account.code} accepts postings only from the "
                f"{account.subledger.upper()} subledger",
                {"account_code": account.code, "source_type": source_type},
            )

    async def _validate(self, entry: JournalEntryIn, allow_control_adjustment: bool):
        lines = await self._resolve_lines(entry.lines)
        self._require_balanced(lines)
        self._require_control_ownership(entry.source_type, lines, allow_control_adjustment)
        return lines

    # =========================================================================
    # POSTING
    # =========================================================================

    async def post_entry(
        self,
        entry: JournalEntryIn,
        actor: str | None = None,
        *,
        allow_control_adjustment: bool = False,
        reverses: JournalEntry | None = None,
    ) -> JournalEntry:
        """Validate and post ``entry``; return the posted :class:`JournalEntry`.

        A repeated ``idempotency_key`` returns the entry posted the first time.
        A key already held by a draft is refused; drafts post through
        :meth:`post_draft`.
        """
        if entry.idempotency_key:
            existing = await self._by_idempotency_key(entry.idempotency_key)
            if existing is not None:
                if existing.status == "draft":
                    raise ValidationError(
                        f"Idempotency key belongs to draft entry {existing.id}; post the draft instead",
                        {"journal_entry_id": str(existing.id)},
                    )
                logger.info("Idempotent replay of journal entry %s", existing.id)
                return existing

        lines = await self._validate(entry, allow_control_adjustment)
        period = await self.periods.require_postable(entry.entry_date)

        je = JournalEntry(
            entry_date=entry.entry_date,
            memo=entry.memo,
            source_type=entry.source_type,
            source_id=entry.source_id,
            idempotency_key=entry.idempotency_key,
            status="draft",
            created_by=actor,
            reverses_entry_id=reverses.id if reverses is not None else None,
        )
        je.lines = self._build_lines(lines)
        self.db.add(je)
        await self._finalize(je, period, actor)
        if reverses is not None:
            reverses.reversed_by_entry_id = je.id
            await self._flush()
        return je

    @staticmethod
    def _build_lines(lines: list[ResolvedLine]) -> list[JournalLine]:
        return [
            JournalLine(
                line_number=number,
                account=line.account,
                fund_id=line.fund_id,
                debit=line.debit,
                credit=line.credit,
                memo=line.memo,
            )
            for number, line in enumerate(lines, start=1)
        ]

    async def _finalize(self, je: JournalEntry, period: FiscalPeriod, actor: str | None) -> None:
        """Stamp ``je`` as posted in ``period`` and project it into balances."""
        result = await self.db.execute(select(func.max(JournalEntry.sequence)))
        je.sequence = (result.scalar_one() or 0) + 1
        je.fiscal_period_id = period.id
        je.status = "posted"
        je.posted_by = actor
        je.posted_at = utcnow()
        await self._flush()

        await self._apply_to_balances(je)
        await record_audit(self.db, actor, "gl.journal.post", "journal_entries", je.id,
                           new_value=entry_snapshot(je))
        logger.info(
            "Posted journal entry #%s (%s) %s in %s",
            je.sequence, je.source_type, je.total_debits, period.name,
        )

    async def _flush(self) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise StorageError(
                "Concurrent posting conflict; retry the request",
                {"reason": str(exc.orig)},
            ) from exc

    async def _apply_to_balances(self, je: JournalEntry) -> None:
        totals: dict[tuple[uuid.UUID, uuid.UUID], list[int]] = defaultdict(lambda: [0, 0])
        for line in je.lines:
            bucket = totals[(line.account_id, line.fund_id)]
            bucket[0] += line.debit
            bucket[1] += line.credit

        for (account_id, fund_id), (debits, credits) in totals.items():
            result = await self.db.execute(
                select(AccountBalance)
                .where(
                    AccountBalance.account_id == account_id,
                    AccountBalance.fund_id == fund_id,
                    AccountBalance.fiscal_period_id == je.fiscal_period_id,
                )
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                self.db.add(AccountBalance(
                    account_id=account_id,
                    fund_id=fund_id,
                    fiscal_period_id=je.fiscal_period_id,
                    debit_total=debits,
                    credit_total=credits,
                ))
            else:
                row.debit_total += debits
                row.credit_total += credits
        await self._flush()

    async def _by_idempotency_key(self, key: str) -> JournalEntry | None:
        result = await self.db.execute(
            select(JournalEntry).where(JournalEntry.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # DRAFTS
    # =========================================================================

    async def create_draft(self, entry: JournalEntryIn, actor: str | None = None) -> JournalEntry:
        """Save a balanced entry without posting it. Drafts are not period-gated."""
        if entry.idempotency_key:
            existing = await self._by_idempotency_key(entry.idempotency_key)
            if existing is not None:
                return existing

        lines = await self._validate(entry, allow_control_adjustment=False)
        je = JournalEntry(
            entry_date=entry.entry_date,
            memo=entry.memo,
            source_type=entry.source_type,
            source_id=entry.source_id,
            idempotency_key=entry.idempotency_key,
            status="draft",
            created_by=actor,
        )
        je.lines = self._build_lines(lines)
        self.db.add(je)
        await self._flush()
        await record_audit(self.db, actor, "gl.journal.draft", "journal_entries", je.id,
                           new_value=entry_snapshot(je))
        return je

    async def post_draft(self, entry_id: uuid.UUID, actor: str | None = None) -> JournalEntry:
        je = await self.get_entry(entry_id)
        if je.status != "draft":
            raise ValidationError(f"Journal entry {entry_id} is already posted")

        # Accounts may have been deactivated since the draft was saved
        await self._validate(self._as_input(je), allow_control_adjustment=False)
        period = await self.periods.require_postable(je.entry_date)
        await self._finalize(je, period, actor)
        return je

    @staticmethod
    def _as_input(je: JournalEntry) -> JournalEntryIn:
        return JournalEntryIn(
            entry_date=je.entry_date,
            memo=je.memo,
            source_type=je.source_type,
            source_id=je.source_id,
            lines=[
                JournalLineIn(
                    account_id=line.account_id,
                    fund_id=line.fund_id,
                    debit=line.debit,
                    credit=line.credit,
                    memo=line.memo,
                )
                for line in je.lines
            ],
        )

    # =========================================================================
    # REVERSAL
    # =========================================================================

    async def reverse_entry(
        self,
        entry_id: uuid.UUID,
        actor: str | None = None,
        reversal_date: datetime.date | None = None,
        memo: str | None = None,
        allow_subledger: bool = False,
    ) -> JournalEntry:
        """Post a new entry with every line's debit and credit swapped.

        The reversal keeps the original's ``source_type`` and ``source_id`` so
        subledger statements pick it up. It is dated ``reversal_date`` or, by
        default, the original's date.
        """
        original = await self.get_entry(entry_id)
        if original.status != "posted":
            raise ValidationError("Only posted entries can be reversed")
        if original.reversed_by_entry_id is not None:
            raise ValidationError(
                f"Journal entry #{original.sequence} is already reversed",
                {"reversed_by_entry_id": str(original.reversed_by_entry_id)},
            )
        if original.reverses_entry_id is not None:
            raise ValidationError("A reversing entry cannot itself be reversed")
        if original.source_type in SUBLEDGER_SOURCES and not allow_subledger:
            raise ControlAccountViolationError(
                f"Journal entry #{original.sequence} belongs to the "
                f"{SUBLEDGER_SOURCES[original.source_type].upper()} subledger; "
                "void it through its subledger record",
                {"source_type": original.source_type},
            )

        reversal = JournalEntryIn(
            entry_date=reversal_date or original.entry_date,
            memo=memo or f"Reversal of journal entry #{original.sequence}",
            source_type=original.source_type,
            source_id=original.source_id,
            lines=[
                JournalLineIn(
                    account_id=line.account_id,
                    fund_id=line.fund_id,
                    debit=line.credit,
                    credit=line.debit,
                    memo=line.memo,
                )
                for line in original.lines
            ],
        )
        je = await self.post_entry(reversal, actor, reverses=original)
        await record_audit(self.db, actor, "gl.journal.reverse", "journal_entries", original.id,
                           old_value={"reversed_by_entry_id": None},
                           new_value={"reversed_by_entry_id": str(je.id)})
        logger.info("Reversed journal entry #%s with #%s", original.sequence, je.sequence)
        return je

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_entry(self, entry_id: uuid.UUID) -> JournalEntry:
        je = await self.db.get(JournalEntry, entry_id)
        if je is None:
            raise NotFoundError(f"Journal entry {entry_id} not found")
        return je

    async def list_entries(
        self,
        period_id: uuid.UUID | None = None,
        source_type: str | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[JournalEntry], int]:
        filters = []
        if period_id:
            filters.append(JournalEntry.fiscal_period_id == period_id)
        if source_type:
            filters.append(JournalEntry.source_type == source_type)
        if status:
            filters.append(JournalEntry.status == status)

        total = (await self.db.execute(
            select(func.count(JournalEntry.id)).where(*filters)
        )).scalar_one()
        result = await self.db.execute(
            select(JournalEntry)
            .where(*filters)
            .order_by(JournalEntry.sequence.desc(), JournalEntry.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def account_activity(
        self,
        account_id: uuid.UUID,
        period_id: uuid.UUID | None = None,
        fund_id: uuid.UUID | None = None,
        as_of: datetime.date | None = None,
    ) -> tuple[int, int]:
        """Posted (debits, credits) on an account, computed from the journal."""
        stmt = (
            select(
                func.coalesce(func.sum(JournalLine.debit), 0),
                func.coalesce(func.sum(JournalLine.credit), 0),
            )
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(JournalEntry.status == "posted", JournalLine.account_id == account_id)
        )
        if period_id is not None:
            stmt = stmt.where(JournalEntry.fiscal_period_id == period_id)
        if fund_id is not None:
            stmt = stmt.where(JournalLine.fund_id == fund_id)
        if as_of is not None:
            stmt = stmt.where(JournalEntry.entry_date <= as_of)
        debits, credits = (await self.db.execute(stmt)).one()
        return int(debits), int(credits)

    async def account_balance(
        self,
        account_id: uuid.UUID,
        fund_id: uuid.UUID | None = None,
        as_of: datetime.date | None = None,
    ) -> dict:
        account = await self.db.get(Account, account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        debits, credits = await self.account_activity(account_id, fund_id=fund_id, as_of=as_of)
        return {
            "account_id": str(account.id),
            "account_code": account.code,
            "fund_id": str(fund_id) if fund_id else None,
            "as_of": as_of.isoformat() if as_of else None,
            "normal_balance": account.normal_balance,
            "total_debits": debits,
            "total_credits": credits,
            "balance": signed_balance(account.normal_balance, debits, credits),
        }

    async def rebuild_balances(self, actor: str | None = None) -> int:
        """Recompute ``account_balances`` from posted lines; returns rows written."""
        await self.db.execute(delete(AccountBalance))
        result = await self.db.execute(
            select(
                JournalLine.account_id,
                JournalLine.fund_id,
                JournalEntry.fiscal_period_id,
                func.sum(JournalLine.debit),
                func.sum(JournalLine.credit),
            )
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(JournalEntry.status == "posted")
            .group_by(JournalLine.account_id, JournalLine.fund_id, JournalEntry.fiscal_period_id)
        )
        rows = result.all()
        for account_id, fund_id, period_id, debits, credits in rows:
            self.db.add(AccountBalance(
                account_id=account_id,
                fund_id=fund_id,
                fiscal_period_id=period_id,
                debit_total=int(debits),
                credit_total=int(credits),
            ))
        await self._flush()
        await record_audit(self.db, actor, "gl.balances.rebuild", "account_balances",
                           new_value={"rows": len(rows)})
        logger.info("Rebuilt balance projection: %d rows", len(rows))
        return len(rows)

    async def projected_balances(self, period_id: uuid.UUID) -> list[AccountBalance]:
        result = await self.db.execute(
            select(AccountBalance).where(AccountBalance.fiscal_period_id == period_id)
        )
        return list(result.scalars().all())

    async def period_totals(
        self,
        period_id: uuid.UUID,
        fund_id: uuid.UUID | None = None,
    ) -> list[tuple[Account, int, int]]:
        """Per-account posted (debits, credits) inside a period, ordered by code."""
        return await self._account_totals(fund_id, JournalEntry.fiscal_period_id == period_id)

    async def totals_between(
        self,
        start_date: datetime.date | None,
        end_date: datetime.date,
        fund_id: uuid.UUID | None = None,
    ) -> list[tuple[Account, int, int]]:
        """Per-account posted (debits, credits) by entry date; open-ended when no start."""
        criteria = [JournalEntry.entry_date <= end_date]
        if start_date is not None:
            criteria.append(JournalEntry.entry_date >= start_date)
        return await self._account_totals(fund_id, *criteria)

    async def _account_totals(self, fund_id, *criteria) -> list[tuple[Account, int, int]]:
        stmt = (
            select(
                Account,
                func.sum(JournalLine.debit),
                func.sum(JournalLine.credit),
            )
            .join(JournalLine, JournalLine.account_id == Account.id)
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(JournalEntry.status == "posted", *criteria)
            .group_by(Account.id)
            .order_by(Account.code)
        )
        if fund_id is not None:
            stmt = stmt.where(JournalLine.fund_id == fund_id)
        result = await self.db.execute(stmt)
        return [(account, int(dr), int(cr)) for account, dr, cr in result.all()]
