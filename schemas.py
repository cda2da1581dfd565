import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import ExpenseCategory
from periods import to_local_naive


class DepositIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=120)
    received_at: Optional[datetime] = None

    @field_validator("received_at")
    @classmethod
    def _store_local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        # the columns hold naive local time
        return to_local_naive(value) if value is not None else None


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., gt=0)
    category: ExpenseCategory
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=200)


class TopupOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    received_at: datetime
    created_at: datetime
    amount_cents: int
    original_amount_cents: int
    carry_over_cents: int
    spent_cents: int
    remaining_cents: int
    is_active: bool
    depleted_at: Optional[datetime]
    days_lasted: Optional[int]


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    occurred_at: datetime
    amount_cents: int
    category: ExpenseCategory
    note: Optional[str]
    allowance_topup_id: Optional[int]


class TopupHistoryOut(TopupOut):
    expenses: list[ExpenseOut] = Field(default_factory=list)
    expense_count: int = 0
