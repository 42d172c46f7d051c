"""Chart of accounts, journal and reconciliation request schemas."""
from __future__ import annotations

import uuid
from datetime import date

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.fund import RESTRICTION_TYPES
from app.models.gl import ACCOUNT_TYPES, NORMAL_BALANCES, SOURCE_TYPES, SUBLEDGERS
from app.schemas import MinorUnits


class FundCreate(BaseModel):
    code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=200)
    restriction_type: str = "unrestricted"
    description: str | None = None

    @field_validator("restriction_type")
    @classmethod
    def validate_restriction_type(cls, v):
        if v not in RESTRICTION_TYPES:
            raise ValueError(f"Must be one of {', '.join(RESTRICTION_TYPES)}")
        return v


class AccountCreate(BaseModel):
    code: str = Field(min_length=1, max_length=40, pattern=r"^[0-9A-Za-z]+(\.[0-9A-Za-z]+)*$")
    name: str = Field(min_length=1, max_length=200)
    account_type: str
    normal_balance: str
    fund_id: uuid.UUID | None = None
    is_control_account: bool = False
    subledger: str | None = None
    description: str | None = None

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v):
        if v not in ACCOUNT_TYPES:
            raise ValueError("Must be asset, liability, equity, income, or expense")
        return v

    @field_validator("normal_balance")
    @classmethod
    def validate_normal_balance(cls, v):
        if v not in NORMAL_BALANCES:
            raise ValueError("Must be debit or credit")
        return v

    @field_validator("subledger")
    @classmethod
    def validate_subledger(cls, v):
        if v is not None and v not in SUBLEDGERS:
            raise ValueError("Must be ar or ap")
        return v


class JournalLineIn(BaseModel):
    account_id: uuid.UUID
    # Inherited from the account when omitted
    fund_id: uuid.UUID | None = None
    debit: MinorUnits = 0
    credit: MinorUnits = 0
    memo: str | None = None


class JournalEntryIn(BaseModel):
    entry_date: date
    memo: str | None = None
    lines: list[JournalLineIn]
    source_type: str = "manual"
    source_id: uuid.UUID | None = None
    idempotency_key: str | None = Field(default=None, max_length=100)

    @field_validator("source_type")
    @classmethod
    def validate_source_type(cls, v):
        if v not in SOURCE_TYPES:
            raise ValueError(f"Must be one of {', '.join(SOURCE_TYPES)}")
        return v


class ManualJournalEntryCreate(BaseModel):
    """Free-form entry submitted over HTTP; always ``manual``."""
    entry_date: date
    memo: str | None = None
    lines: list[JournalLineIn]

    def to_entry(self, idempotency_key: str | None = None) -> JournalEntryIn:
        return JournalEntryIn(
            entry_date=self.entry_date,
            memo=self.memo,
            lines=self.lines,
            source_type="manual",
            idempotency_key=idempotency_key,
        )


class ReverseRequest(BaseModel):
    reversal_date: date | None = None
    memo: str | None = None


class ReconcileRequest(BaseModel):
    fiscal_period_id: uuid.UUID
    control_account_id: uuid.UUID
    fund_id: uuid.UUID | None = None


class AdjustmentIn(BaseModel):
    entry_date: date
    memo: str | None = None
    lines: list[JournalLineIn]


class ResolveRequest(BaseModel):
    notes: str = Field(min_length=1)
    adjustment: AdjustmentIn | None = None

    @model_validator(mode="after")
    def notes_not_blank(self):
        if not self.notes.strip():
            raise ValueError("notes must not be blank")
        return self
