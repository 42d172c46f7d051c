"""
Ledger error taxonomy.

Every domain failure raised by the services is a ``LedgerError`` carrying a
stable ``code``, a human message, the HTTP status the API maps it to, and
optional structured ``details``. ``register_exception_handlers`` installs the
FastAPI handlers that render them as ``{"error": {...}}``.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    # Caller input (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_HIERARCHY = "INVALID_HIERARCHY"

    # Business rules (409 / 422)
    UNBALANCED_ENTRY = "UNBALANCED_ENTRY"
    CONTROL_ACCOUNT_VIOLATION = "CONTROL_ACCOUNT_VIOLATION"
    PERIOD_LOCKED = "PERIOD_LOCKED"
    NO_PERIOD_DEFINED = "NO_PERIOD_DEFINED"
    OVER_ALLOCATION = "OVER_ALLOCATION"
    OPEN_POSTINGS_PENDING = "OPEN_POSTINGS_PENDING"
    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"

    # State conflicts (404 / 409)
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_CODE = "DUPLICATE_CODE"
    ACCOUNT_IN_USE = "ACCOUNT_IN_USE"

    # Infrastructure (503)
    STORAGE_ERROR = "STORAGE_ERROR"


class LedgerError(Exception):
    """Base exception for all ledger failures."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Caller input
# ============================================================================

class ValidationError(LedgerError):
    """Malformed input; the caller must correct it."""


class InvalidHierarchyError(ValidationError):
    code = ErrorCode.INVALID_HIERARCHY


# ============================================================================
# Business-rule violations
# ============================================================================

class UnbalancedEntryError(LedgerError):
    code = ErrorCode.UNBALANCED_ENTRY
    status_code = 422

    def __init__(self, total_debits: int, total_credits: int) -> None:
        self.delta = total_debits - total_credits
        super().__init__(
            f"Debits ({total_debits}) must equal credits ({total_credits})",
            {
                "total_debits": total_debits,
                "total_credits": total_credits,
                "delta": self.delta,
            },
        )


class ControlAccountViolationError(LedgerError):
    code = ErrorCode.CONTROL_ACCOUNT_VIOLATION
    status_code = 422


class PeriodLockedError(LedgerError):
    code = ErrorCode.PERIOD_LOCKED
    status_code = status.HTTP_409_CONFLICT


class NoPeriodDefinedError(LedgerError):
    code = ErrorCode.NO_PERIOD_DEFINED
    status_code = 422


class OverAllocationError(LedgerError):
    code = ErrorCode.OVER_ALLOCATION
    status_code = 422


class OpenPostingsPendingError(LedgerError):
    code = ErrorCode.OPEN_POSTINGS_PENDING
    status_code = status.HTTP_409_CONFLICT


class ReconciliationRequiredError(LedgerError):
    code = ErrorCode.RECONCILIATION_REQUIRED
    status_code = status.HTTP_409_CONFLICT


# ============================================================================
# State conflicts
# ============================================================================

class NotFoundError(LedgerError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class DuplicateCodeError(LedgerError):
    code = ErrorCode.DUPLICATE_CODE
    status_code = status.HTTP_409_CONFLICT


class AccountInUseError(LedgerError):
    code = ErrorCode.ACCOUNT_IN_USE
    status_code = status.HTTP_409_CONFLICT


# ============================================================================
# Infrastructure
# ============================================================================

class StorageError(LedgerError):
    """The store failed; the transaction left nothing behind, so retry is safe."""

    code = ErrorCode.STORAGE_ERROR
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


# ============================================================================
# FastAPI integration
# ============================================================================

async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s %s", request.method, request.url.path,
                    exc.code.value, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    error = StorageError("The ledger store rejected the operation; retry the request")
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
