from app.models.ap import (
    ApInvoice,
    ApInvoiceLine,
    ApPayment,
    ApPaymentAllocation,
    ApPurchaseOrder,
    ApPurchaseOrderItem,
    ApVendor,
)
from app.models.ar import (
    ArBillLineItem,
    ArPayment,
    ArPaymentAllocation,
    ArRefund,
    ArStudentBill,
)
from app.models.audit import AuditLog, Notification
from app.models.fund import Fund
from app.models.gl import Account, AccountBalance, JournalEntry, JournalLine
from app.models.period import FiscalPeriod, FiscalPeriodEvent
from app.models.reconciliation import GlReconciliation

__all__ = [
    # Fiscal calendar
    "FiscalPeriod",
    "FiscalPeriodEvent",
    # General Ledger
    "Account",
    "JournalEntry",
    "JournalLine",
    "AccountBalance",
    "GlReconciliation",
    # Fund accounting
    "Fund",
    # Accounts receivable
    "ArStudentBill",
    "ArBillLineItem",
    "ArPayment",
    "ArPaymentAllocation",
    "ArRefund",
    # Accounts payable
    "ApVendor",
    "ApPurchaseOrder",
    "ApPurchaseOrderItem",
    "ApInvoice",
    "ApInvoiceLine",
    "ApPayment",
    "ApPaymentAllocation",
    # Audit & notifications
    "AuditLog",
    "Notification",
]
