"""
RBAC Permission Registry — Campus Ledger

Defines the canonical role-to-permission mapping. Roles arrive in the bearer
token minted by the surrounding school ERP; this module is the only place
that decides what each role may do inside the ledger.

Permission string format: {module}.{resource}.{action}
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# All permission strings used across the system
# ---------------------------------------------------------------------------

ALL_PERMISSIONS: list[str] = sorted([
    # General Ledger
    "gl.funds.view",
    "gl.funds.create",
    "gl.funds.update",
    "gl.accounts.view",
    "gl.accounts.create",
    "gl.accounts.update",
    "gl.accounts.delete",
    "gl.journal_entries.view",
    "gl.journal_entries.create",
    "gl.journal_entries.post",
    "gl.journal_entries.reverse",
    "gl.trial_balance.view",
    "gl.reports.view",
    "gl.balances.rebuild",
    "gl.reconciliations.view",
    "gl.reconciliations.run",
    "gl.reconciliations.resolve",
    # Fiscal calendar
    "fiscal.periods.view",
    "fiscal.periods.create",
    "fiscal.periods.lock",
    "fiscal.periods.reopen",
    # Accounts receivable
    "ar.bills.view",
    "ar.bills.create",
    "ar.bills.void",
    "ar.payments.view",
    "ar.payments.create",
    "ar.refunds.view",
    "ar.refunds.create",
    "ar.statements.view",
    "ar.aging.view",
    # Accounts payable
    "ap.vendors.view",
    "ap.vendors.create",
    "ap.invoices.view",
    "ap.invoices.create",
    "ap.purchase_orders.view",
    "ap.purchase_orders.create",
    "ap.purchase_orders.receive",
    "ap.payments.view",
    "ap.payments.create",
])

_VIEW_ALL = {p for p in ALL_PERMISSIONS if p.endswith(".view")}


# ---------------------------------------------------------------------------
# Role → Permissions mapping (source of truth)
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    # ── System Admin ─────────────────────────────────────────────────────
    "system_admin": set(ALL_PERMISSIONS),

    # ── Controller ───────────────────────────────────────────────────────
    # Owns the close: locks and reopens periods, resolves reconciliations.
    "controller": set(ALL_PERMISSIONS),

    # ── Senior Accountant ────────────────────────────────────────────────
    # Posts and reverses entries, runs reconciliations and locks periods.
    # Cannot reopen a locked period.
    "senior_accountant": _VIEW_ALL | {
        "gl.accounts.create", "gl.accounts.update",
        "gl.journal_entries.create", "gl.journal_entries.post",
        "gl.journal_entries.reverse",
        "gl.reconciliations.run", "gl.reconciliations.resolve",
        "fiscal.periods.create", "fiscal.periods.lock",
        "ar.bills.create", "ar.bills.void", "ar.payments.create",
        "ar.refunds.create",
        "ap.vendors.create", "ap.invoices.create",
        "ap.purchase_orders.create", "ap.purchase_orders.receive",
        "ap.payments.create",
    },

    # ── Junior Accountant ────────────────────────────────────────────────
    # Creates draft entries only.  Cannot post or reverse.
    "junior_accountant": {
        "gl.funds.view", "gl.accounts.view",
        "gl.journal_entries.view", "gl.journal_entries.create",
        "gl.trial_balance.view", "fiscal.periods.view",
    },

    # ── Bursar ───────────────────────────────────────────────────────────
    # Student billing desk: bills, payments, refunds, statements.
    "bursar": {
        "gl.funds.view", "gl.accounts.view", "fiscal.periods.view",
        "ar.bills.view", "ar.bills.create", "ar.bills.void",
        "ar.payments.view", "ar.payments.create",
        "ar.refunds.view", "ar.refunds.create",
        "ar.statements.view", "ar.aging.view",
    },

    # ── Auditor ──────────────────────────────────────────────────────────
    # Read-only across the whole ledger.
    "auditor": set(_VIEW_ALL),
}


VALID_ROLES: list[str] = sorted(ROLE_PERMISSIONS.keys())


def get_role_permissions(role: str) -> set[str]:
    """Return the base permission set for a role, or empty set if unknown."""
    return ROLE_PERMISSIONS.get(role, set())
