"""Fiscal period request schemas."""
from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field, model_validator


class PeriodCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ReopenRequest(BaseModel):
    reason: str = Field(min_length=1)
