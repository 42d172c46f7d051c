"""Chart of Accounts registry: GL accounts and funds."""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.errors import (
    AccountInUseError,
    DuplicateCodeError,
    InvalidHierarchyError,
    NotFoundError,
    ValidationError,
)
from app.models.fund import Fund
from app.models.gl import Account, JournalLine
from app.schemas.gl import AccountCreate, FundCreate
from app.services.audit_service import record_audit

logger = logging.getLogger(__name__)


def parent_code(code: str) -> str | None:
    """``"1000.100.5"`` -> ``"1000.100"``; top-level codes have no parent."""
    if "." not in code:
        return None
    return code.rsplit(".", 1)[0]


def account_snapshot(account: Account) -> dict:
    return {
        "code": account.code,
        "name": account.name,
        "account_type": account.account_type,
        "normal_balance": account.normal_balance,
        "fund_id": str(account.fund_id) if account.fund_id else None,
        "is_control_account": account.is_control_account,
        "subledger": account.subledger,
        "is_active": account.is_active,
    }


class ChartOfAccountsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # FUNDS
    # =========================================================================

    async def create_fund(self, spec: FundCreate, actor: str | None = None) -> Fund:
        existing = await self.db.execute(select(Fund.id).where(Fund.code == spec.code))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateCodeError(f"Fund code '{spec.code}' already exists")

        fund = Fund(
            code=spec.code,
            name=spec.name,
            restriction_type=spec.restriction_type,
            description=spec.description,
        )
        self.db.add(fund)
        await self.db.flush()
        await record_audit(self.db, actor, "gl.fund.create", "funds", fund.id,
                           new_value={"code": fund.code, "name": fund.name,
                                      "restriction_type": fund.restriction_type})
        return fund

    async def get_fund(self, code: str) -> Fund:
        result = await self.db.execute(select(Fund).where(Fund.code == code))
        fund = result.scalar_one_or_none()
        if fund is None:
            raise NotFoundError(f"Fund '{code}' not found")
        return fund

    async def list_funds(self, include_inactive: bool = False) -> list[Fund]:
        stmt = select(Fund).order_by(Fund.code)
        if not include_inactive:
            stmt = stmt.where(Fund.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_fund(self, code: str, actor: str | None = None) -> Fund:
        fund = await self.get_fund(code)
        if fund.is_active:
            fund.is_active = False
            await self.db.flush()
            await record_audit(self.db, actor, "gl.fund.deactivate", "funds", fund.id,
                               old_value={"is_active": True}, new_value={"is_active": False})
        return fund

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def create_account(self, spec: AccountCreate, actor: str | None = None) -> Account:
        existing = await self.db.execute(select(Account.id).where(Account.code == spec.code))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateCodeError(f"Account code '{spec.code}' already exists")

        parent_id = None
        prefix = parent_code(spec.code)
        if prefix is not None:
            result = await self.db.execute(select(Account).where(Account.code == prefix))
            parent = result.scalar_one_or_none()
            if parent is None:
                raise InvalidHierarchyError(
                    f"Parent account '{prefix}' does not exist for '{spec.code}'",
                    {"parent_code": prefix},
                )
            parent_id = parent.id

        if spec.is_control_account and spec.subledger is None:
            raise ValidationError("Control accounts must name their owning subledger (ar or ap)")
        if not spec.is_control_account and spec.subledger is not None:
            raise ValidationError("Only control accounts may be owned by a subledger")

        if spec.fund_id is not None:
            fund = await self.db.get(Fund, spec.fund_id)
            if fund is None:
                raise ValidationError(f"Fund {spec.fund_id} does not exist")

        account = Account(
            code=spec.code,
            name=spec.name,
            account_type=spec.account_type,
            normal_balance=spec.normal_balance,
            parent_id=parent_id,
            fund_id=spec.fund_id,
            is_control_account=spec.is_control_account,
            subledger=spec.subledger,
            description=spec.description,
        )
        self.db.add(account)
        await self.db.flush()
        await record_audit(self.db, actor, "gl.account.create", "accounts", account.id,
                           new_value=account_snapshot(account))
        logger.info("Created account %s (%s)", account.code, account.account_type)
        return account

    async def get_account(self, code: str) -> Account:
        result = await self.db.execute(select(Account).where(Account.code == code))
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"Account '{code}' not found")
        return account

    async def get_account_by_id(self, account_id: uuid.UUID) -> Account:
        account = await self.db.get(Account, account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    async def list_accounts(
        self,
        account_type: str | None = None,
        include_inactive: bool = False,
    ) -> list[Account]:
        stmt = select(Account).order_by(Account.code)
        if account_type:
            stmt = stmt.where(Account.account_type == account_type)
        if not include_inactive:
            stmt = stmt.where(Account.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def account_tree(self) -> list[dict]:
        """Return active accounts as a nested tree keyed on parent code."""
        accounts = await self.list_accounts()

        nodes = {}
        for a in accounts:
            nodes[a.id] = {
                "id": str(a.id),
                "code": a.code,
                "name": a.name,
                "account_type": a.account_type,
                "is_control_account": a.is_control_account,
                "children": [],
            }

        roots = []
        for a in accounts:
            node = nodes[a.id]
            if a.parent_id and a.parent_id in nodes:
                nodes[a.parent_id]["children"].append(node)
            else:
                roots.append(node)
        return roots

    async def deactivate_account(self, code: str, actor: str | None = None) -> Account:
        """Block new postings while keeping the account's history."""
        account = await self.get_account(code)
        if account.is_active:
            account.is_active = False
            await self.db.flush()
            await record_audit(self.db, actor, "gl.account.deactivate", "accounts", account.id,
                               old_value={"is_active": True}, new_value={"is_active": False})
            logger.info("Deactivated account %s", account.code)
        return account

    async def delete_account(self, code: str, actor: str | None = None) -> None:
        account = await self.get_account(code)

        used = await self.db.execute(
            select(func.count(JournalLine.id)).where(JournalLine.account_id == account.id)
        )
        if used.scalar_one() > 0:
            raise AccountInUseError(
                f"Account '{code}' is referenced by journal lines; deactivate it instead"
            )
        children = await self.db.execute(
            select(func.count(Account.id)).where(Account.parent_id == account.id)
        )
        if children.scalar_one() > 0:
            raise AccountInUseError(f"Account '{code}' has child accounts")

        snapshot = account_snapshot(account)
        await self.db.delete(account)
        await self.db.flush()
        await record_audit(self.db, actor, "gl.account.delete", "accounts", account.id,
                           old_value=snapshot)

    async def find_control_account(
        self,
        subledger: str,
        fund_id: uuid.UUID | None = None,
    ) -> Account:
        """The active control account owned by ``subledger``.

        An account bound to ``fund_id`` wins over an unbound one.
        """
        result = await self.db.execute(
            select(Account)
            .where(
                Account.is_control_account.is_(True),
                Account.subledger == subledger,
                Account.is_active.is_(True),
            )
            .order_by(Account.code)
        )
        candidates = list(result.scalars().all())
        for account in candidates:
            if fund_id is not None and account.fund_id == fund_id:
                return account
        for account in candidates:
            if account.fund_id is None:
                return account
        raise NotFoundError(f"No active {subledger.upper()} control account configured")

    async def list_control_accounts(self) -> list[Account]:
        result = await self.db.execute(
            select(Account)
            .where(Account.is_control_account.is_(True), Account.is_active.is_(True))
            .order_by(Account.code)
        )
        return list(result.scalars().all())

    async def require_posting_account(
        self,
        account_id: uuid.UUID,
        role: str,
        account_types: tuple[str, ...],
    ) -> Account:
        """The non-control side of a subledger posting (cash, income, expense).

        Subledger documents must move their control account by exactly their
        own amount, so the other side may never be a control account.
        """
        account = await self.db.get(Account, account_id)
        if account is None or not account.is_active:
            raise ValidationError(f"{role.capitalize()} account {account_id} is missing or inactive")
        if account.is_control_account:
            raise ValidationError(
                f"Control account {account.code} cannot be used as the {role} account",
                {"account_code": account.code, "role": role},
            )
        if account.account_type not in account_types:
            raise ValidationError(
                f"Account {account.code} is {account.account_type}; the {role} account must be "
                f"{' or '.join(account_types)}",
                {"account_code": account.code, "role": role},
            )
        return account

    async def cash_account(self, account_id: uuid.UUID | None = None) -> Account:
        """``account_id``, or the configured default, checked as a cash account."""
        if account_id is None:
            account_id = (await self.get_account(settings.DEFAULT_CASH_ACCOUNT_CODE)).id
        return await self.require_posting_account(account_id, "cash", ("asset",))
