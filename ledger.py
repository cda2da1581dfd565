"""Field bookkeeping for allowance topups.

Every write that touches ``spent_cents`` goes through one of these helpers so
that ``remaining_cents`` and the depletion fields can never fall out of step.
They mutate the topup in place and return it.
"""

from datetime import datetime

from models import AllowanceTopup
from periods import days_ceil


def track_depletion(topup: AllowanceTopup, now: datetime) -> AllowanceTopup:
    topup.remaining_cents = topup.amount_cents - topup.spent_cents
    if topup.remaining_cents <= 0 and topup.spent_cents > 0:
        topup.is_active = False
        if topup.depleted_at is None:
            topup.depleted_at = now
            topup.days_lasted = days_ceil(topup.received_at, now)
    return topup


def apply_expense(
    topup: AllowanceTopup, amount_cents: int, now: datetime
) -> AllowanceTopup:
    if amount_cents <= 0:
        raise ValueError("Expense amount must be positive")
    topup.spent_cents = (topup.spent_cents or 0) + amount_cents
    return track_depletion(topup, now)


def reverse_expense(
    topup: AllowanceTopup, amount_cents: int, now: datetime
) -> AllowanceTopup:
    # Depletion is an edge: a refund raises remaining but never reactivates.
    topup.spent_cents = max(0, (topup.spent_cents or 0) - amount_cents)
    return track_depletion(topup, now)


def retire_topup(topup: AllowanceTopup, now: datetime) -> AllowanceTopup:
    """Force-deplete a topup whose balance was folded into a newer one."""
    topup.spent_cents = topup.amount_cents
    track_depletion(topup, now)
    if topup.depleted_at is None:
        topup.depleted_at = now
    topup.is_active = False
    return topup


def reset_topup(topup: AllowanceTopup) -> AllowanceTopup:
    topup.spent_cents = 0
    topup.remaining_cents = topup.amount_cents
    topup.is_active = topup.amount_cents > 0
    topup.depleted_at = None
    topup.days_lasted = None
    return topup


def new_topup(
    *,
    user_id: int,
    original_amount_cents: int,
    carry_over_cents: int,
    received_at: datetime,
    description: str,
) -> AllowanceTopup:
    amount = original_amount_cents + carry_over_cents
    return AllowanceTopup(
        user_id=user_id,
        description=description,
        received_at=received_at,
        amount_cents=amount,
        original_amount_cents=original_amount_cents,
        carry_over_cents=carry_over_cents,
        spent_cents=0,
        remaining_cents=amount,
        is_active=True,
        depleted_at=None,
        days_lasted=None,
    )
