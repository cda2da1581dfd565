from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseCategory(str, Enum):
    essentials = "essentials"
    allowance = "allowance"
    extra = "extra"

    @property
    def draws_on_allowance(self) -> bool:
        return self in LEDGER_CATEGORIES


LEDGER_CATEGORIES = frozenset({ExpenseCategory.allowance, ExpenseCategory.extra})


def _utcnow() -> datetime:
    from periods import utc_now

    return utc_now()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    # Advisory cache, see BalanceService for the recomputed value.
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    last_allowance_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    last_rollover_period: Mapped[Optional[str]] = mapped_column(String(7))
    period_opening_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    period_topup_floor_id: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    topups: Mapped[list["AllowanceTopup"]] = relationship(
        "AllowanceTopup", back_populates="user"
    )
    expenses: Mapped[list["Expense"]] = relationship("Expense", back_populates="user")


class AllowanceTopup(Base, TimestampMixin):
    __tablename__ = "allowance_topups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    description: Mapped[str] = mapped_column(
        String(200), nullable=False, default="Allowance top-up"
    )
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    original_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    carry_over_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    depleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    days_lasted: Mapped[Optional[int]] = mapped_column(Integer)

    user: Mapped["User"] = relationship("User", back_populates="topups")
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="topup", order_by="Expense.date.desc()"
    )

    __table_args__ = (
        Index("ix_topups_user_remaining", "user_id", "remaining_cents"),
        CheckConstraint("amount_cents >= 0", name="ck_topups_amount_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_topups_spent_positive"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(
        SAEnum(ExpenseCategory), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    allowance_topup_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("allowance_topups.id")
    )

    user: Mapped["User"] = relationship("User", back_populates="expenses")
    topup: Mapped[Optional["AllowanceTopup"]] = relationship(
        "AllowanceTopup", back_populates="expenses"
    )

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_topup", "allowance_topup_id"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
