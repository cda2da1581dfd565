from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session, selectinload

from balance import BalanceDecision, compute_balance, reconcile_balance
from config import get_settings
from ledger import (
    apply_expense,
    new_topup,
    reset_topup,
    retire_topup,
    reverse_expense,
    track_depletion,
)
from models import LEDGER_CATEGORIES, AllowanceTopup, Expense, User
from periods import (
    is_last_day_of_month,
    local_now,
    local_today,
    month_period,
    next_month_start,
    period_key,
)
from prediction import HISTORY_LIMIT, Prediction, format_amount, predict, recommendations
from schemas import DepositIn, ExpenseIn, TopupHistoryOut


logger = logging.getLogger(__name__)

DEFAULT_DEPOSIT_DESCRIPTION = "Allowance top-up"


class LedgerValidationError(ValueError):
    pass


class InsufficientBalance(ValueError):
    pass


class NoActiveTopup(InsufficientBalance):
    def __init__(self) -> None:
        super().__init__("No active allowance available. Add a new top-up first.")


class InsufficientRemaining(InsufficientBalance):
    def __init__(self, required_cents: int, available_cents: int) -> None:
        self.required_cents = required_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient allowance: need {format_amount(required_cents)}, "
            f"available {format_amount(available_cents)}"
        )


class ExpenseNotFound(ValueError):
    pass


def get_or_create_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        user = User(
            id=user_id,
            current_balance_cents=0,
            last_allowance_cents=0,
            period_opening_cents=0,
            period_topup_floor_id=0,
        )
        session.add(user)
        session.flush()
    return user


def _topups_with_balance(user_id: int):
    return (
        select(AllowanceTopup)
        .where(
            AllowanceTopup.user_id == user_id,
            AllowanceTopup.remaining_cents > 0,
        )
        .order_by(AllowanceTopup.id)
    )


def latest_topup_with_balance(
    session: Session, user_id: int, *, active_only: bool = False
) -> Optional[AllowanceTopup]:
    stmt = select(AllowanceTopup).where(
        AllowanceTopup.user_id == user_id,
        AllowanceTopup.remaining_cents > 0,
    )
    if active_only:
        stmt = stmt.where(AllowanceTopup.is_active.is_(True))
    return session.scalar(stmt.order_by(AllowanceTopup.id.desc()).limit(1))


class AllowanceService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_topups(self) -> list[AllowanceTopup]:
        stmt = (
            select(AllowanceTopup)
            .where(AllowanceTopup.user_id == self.user_id)
            .order_by(AllowanceTopup.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def current_topup(self, *, active_only: bool = False) -> Optional[AllowanceTopup]:
        return latest_topup_with_balance(
            self.session, self.user_id, active_only=active_only
        )

    def record_deposit(
        self, data: DepositIn, now: Optional[datetime] = None
    ) -> AllowanceTopup:
        if data.amount_cents <= 0:
            raise LedgerValidationError("Deposit amount must be greater than 0")
        now = now or local_now()
        user = get_or_create_user(self.session, self.user_id)

        previous = self.session.scalars(
            _topups_with_balance(self.user_id)
        ).all()
        carry_over = sum(t.remaining_cents for t in previous)
        for old in previous:
            retire_topup(old, now)

        base = (data.description or "").strip() or DEFAULT_DEPOSIT_DESCRIPTION
        if carry_over > 0:
            description = f"{base} (includes {format_amount(carry_over)} carry-over)"
        else:
            description = base

        topup = new_topup(
            user_id=self.user_id,
            original_amount_cents=data.amount_cents,
            carry_over_cents=carry_over,
            received_at=data.received_at or now,
            description=description,
        )
        self.session.add(topup)
        # Replace rather than increment: the old remainders now live in this topup.
        user.current_balance_cents = topup.amount_cents
        user.last_allowance_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(topup)
        logger.info(
            f"deposit_recorded: user={self.user_id} topup={topup.id} "
            f"amount={data.amount_cents} carry_over={carry_over} retired={len(previous)}"
        )
        return topup

    def history(self) -> list[TopupHistoryOut]:
        stmt = (
            select(AllowanceTopup)
            .options(selectinload(AllowanceTopup.expenses))
            .where(AllowanceTopup.user_id == self.user_id)
            .order_by(AllowanceTopup.id.desc())
        )
        views: list[TopupHistoryOut] = []
        for topup in self.session.scalars(stmt).all():
            view = TopupHistoryOut.model_validate(topup)
            view.remaining_cents = max(0, view.remaining_cents)
            view.expense_count = len(view.expenses)
            views.append(view)
        return views


@dataclass
class CurrentBalance:
    decision: BalanceDecision
    topup: Optional[AllowanceTopup]

    @property
    def balance_cents(self) -> int:
        return self.decision.balance_cents


class BalanceService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        tolerance_cents: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        if tolerance_cents is None:
            tolerance_cents = get_settings().drift_tolerance_cents
        self.tolerance_cents = tolerance_cents

    def read_cache(self) -> int:
        return int(get_or_create_user(self.session, self.user_id).current_balance_cents)

    def _truth_components(self) -> tuple[int, int, int]:
        user = get_or_create_user(self.session, self.user_id)
        deposits = int(
            self.session.execute(
                select(
                    func.coalesce(func.sum(AllowanceTopup.original_amount_cents), 0)
                ).where(
                    AllowanceTopup.user_id == self.user_id,
                    AllowanceTopup.id > user.period_topup_floor_id,
                )
            ).scalar_one()
            or 0
        )
        # Rollover purges expenses, so everything left belongs to this period.
        expenses = int(
            self.session.execute(
                select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                    Expense.user_id == self.user_id,
                    Expense.category.in_(sorted(LEDGER_CATEGORIES)),
                )
            ).scalar_one()
            or 0
        )
        return int(user.period_opening_cents or 0), deposits, expenses

    def compute_truth(self) -> int:
        opening, deposits, expenses = self._truth_components()
        return compute_balance(deposits, expenses, opening)

    def authoritative_balance(self, *, resync: bool = False) -> BalanceDecision:
        decision = reconcile_balance(
            self.read_cache(), self.compute_truth(), self.tolerance_cents
        )
        if decision.diverged:
            logger.warning(
                f"balance_drift: user={self.user_id} cached={decision.cached_cents} "
                f"computed={decision.computed_cents} drift={decision.drift_cents}"
            )
            if resync:
                user = get_or_create_user(self.session, self.user_id)
                user.current_balance_cents = decision.computed_cents
                self.session.commit()
        return decision

    def current_balance(self, *, resync: bool = False) -> CurrentBalance:
        decision = self.authoritative_balance(resync=resync)
        topup = latest_topup_with_balance(self.session, self.user_id)
        return CurrentBalance(decision=decision, topup=topup)

    def fix_balance(self) -> dict[str, int]:
        user = get_or_create_user(self.session, self.user_id)
        before = int(user.current_balance_cents)
        opening, deposits, expenses = self._truth_components()
        after = compute_balance(deposits, expenses, opening)
        user.current_balance_cents = after
        self.session.commit()
        logger.info(f"balance_fixed: user={self.user_id} before={before} after={after}")
        return {
            "before_cents": before,
            "after_cents": after,
            "opening_cents": opening,
            "deposits_cents": deposits,
            "expenses_cents": expenses,
        }


class ExpenseService:
    """Ledger side of expense entry: links, validates and books expenses."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise ExpenseNotFound("Expense not found")
        return expense

    def list_for_topup(self, topup_id: int) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.allowance_topup_id == topup_id,
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def commit_expense(self, data: ExpenseIn, now: Optional[datetime] = None) -> Expense:
        if data.amount_cents <= 0:
            raise LedgerValidationError("Amount must be greater than 0")
        now = now or local_now()
        user = get_or_create_user(self.session, self.user_id)

        topup: Optional[AllowanceTopup] = None
        if data.category.draws_on_allowance:
            topup = latest_topup_with_balance(
                self.session, self.user_id, active_only=True
            )
            if topup is None:
                raise NoActiveTopup()
            if topup.remaining_cents < data.amount_cents:
                raise InsufficientRemaining(data.amount_cents, topup.remaining_cents)

        expense_date = data.date or now.date()
        occurred_at = now if expense_date == now.date() else datetime.combine(
            expense_date, time(12, 0)
        )
        expense = Expense(
            user_id=self.user_id,
            date=expense_date,
            occurred_at=occurred_at,
            amount_cents=data.amount_cents,
            category=data.category,
            note=data.note,
            allowance_topup_id=topup.id if topup else None,
        )
        self.session.add(expense)
        if topup is not None:
            apply_expense(topup, data.amount_cents, now)
            user.current_balance_cents -= data.amount_cents
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_committed: user={self.user_id} expense={expense.id} "
            f"amount={data.amount_cents} category={data.category.value} "
            f"topup={expense.allowance_topup_id}"
        )
        return expense

    def delete_expense(self, expense_id: int, now: Optional[datetime] = None) -> None:
        now = now or local_now()
        expense = self.get(expense_id)
        topup = expense.topup
        if topup is not None:
            reverse_expense(topup, expense.amount_cents, now)
            user = get_or_create_user(self.session, self.user_id)
            user.current_balance_cents += expense.amount_cents
        self.session.delete(expense)
        self.session.commit()
        logger.info(
            f"expense_deleted: user={self.user_id} expense={expense_id} "
            f"topup={topup.id if topup else None}"
        )


class RepairService:
    """Heals users left with several topups holding a balance at once."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def consolidate(self, user_id: int, now: Optional[datetime] = None) -> int:
        now = now or local_now()
        holding = self.session.scalars(_topups_with_balance(user_id)).all()
        if len(holding) <= 1:
            return 0

        latest = holding[-1]
        total_amount = sum(t.amount_cents for t in holding)
        total_remaining = sum(t.remaining_cents for t in holding)

        latest.amount_cents = total_amount
        latest.carry_over_cents = total_amount - latest.original_amount_cents
        latest.spent_cents = total_amount - total_remaining
        latest.remaining_cents = total_remaining
        latest.is_active = True
        latest.description = f"Consolidated allowance ({len(holding)} topups merged)"

        for old in holding[:-1]:
            retire_topup(old, now)
        logger.info(
            f"topups_consolidated: user={user_id} into={latest.id} merged={len(holding)} "
            f"remaining={total_remaining}"
        )
        return len(holding)

    def sync_topups(self, user_id: int, now: Optional[datetime] = None) -> dict[str, int]:
        """Rebuild ``spent`` from the linked expense records.

        The newest topup, and any older one that never ran out, is set to the
        sum of its linked expenses. Older topups with a ``depleted_at`` keep
        their booked ``spent``, which includes the balance carried forward when
        they were retired. If the rebuild leaves the newest topup with money
        and no topup is active, the newest one is reactivated.
        """
        now = now or local_now()
        user = get_or_create_user(self.session, user_id)
        topups = self.session.scalars(
            select(AllowanceTopup)
            .where(AllowanceTopup.user_id == user_id)
            .order_by(AllowanceTopup.id)
        ).all()
        linked = dict(
            self.session.execute(
                select(Expense.allowance_topup_id, func.sum(Expense.amount_cents))
                .where(
                    Expense.user_id == user_id,
                    Expense.allowance_topup_id.is_not(None),
                )
                .group_by(Expense.allowance_topup_id)
            ).all()
        )

        synced = 0
        for topup in topups:
            retired = topup is not topups[-1] and topup.depleted_at is not None
            spent = topup.spent_cents if retired else int(linked.get(topup.id, 0))
            if (spent, topup.amount_cents - spent) != (
                topup.spent_cents,
                topup.remaining_cents,
            ):
                synced += 1
            topup.spent_cents = spent
            track_depletion(topup, now)

        reactivated = False
        if topups:
            latest = topups[-1]
            spendable = any(t.is_active and t.remaining_cents > 0 for t in topups)
            if latest.remaining_cents > 0 and not spendable:
                latest.is_active = True
                reactivated = True

        self.session.flush()
        balance = BalanceService(self.session, user_id).compute_truth()
        user.current_balance_cents = balance
        self.session.commit()
        logger.info(
            f"topups_synced: user={user_id} topups={len(topups)} synced={synced} "
            f"reactivated={reactivated} balance={balance}"
        )
        return {
            "synced": synced,
            "reactivated": int(reactivated),
            "balance_cents": balance,
        }

    def repair_user(self, user_id: int, now: Optional[datetime] = None) -> dict[str, int]:
        merged = self.consolidate(user_id, now)
        self.session.flush()
        balance = BalanceService(self.session, user_id)
        computed = balance.compute_truth()
        get_or_create_user(self.session, user_id).current_balance_cents = computed
        self.session.commit()
        return {"merged": merged, "balance_cents": computed}

    def repair_all(self, now: Optional[datetime] = None) -> dict[str, int]:
        user_ids = self.session.scalars(select(User.id).order_by(User.id)).all()
        fixed = 0
        for user_id in user_ids:
            if self.repair_user(user_id, now)["merged"]:
                fixed += 1
        logger.info(f"repair_all: users={len(user_ids)} fixed={fixed}")
        return {"users": len(user_ids), "fixed_users": fixed}


class PredictionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def historical_topups(self, exclude_id: Optional[int] = None) -> list[AllowanceTopup]:
        stmt = (
            select(AllowanceTopup)
            .where(
                AllowanceTopup.user_id == self.user_id,
                AllowanceTopup.depleted_at.is_not(None),
                AllowanceTopup.days_lasted > 0,
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(AllowanceTopup.id != exclude_id)
        stmt = stmt.order_by(AllowanceTopup.id.desc()).limit(HISTORY_LIMIT)
        return list(self.session.scalars(stmt).all())

    def get_prediction(self, now: Optional[datetime] = None) -> Optional[Prediction]:
        now = now or local_now()
        topup = latest_topup_with_balance(self.session, self.user_id, active_only=True)
        if topup is None:
            return None

        expenses = ExpenseService(self.session, self.user_id).list_for_topup(topup.id)
        history = self.historical_topups(exclude_id=topup.id)
        result = predict(topup, expenses, history, now)
        result.recommendations = recommendations(result, topup.remaining_cents)
        return result


@dataclass
class RolloverResult:
    user_id: int
    deleted_expenses: int
    reset_topups: int
    balance_cents: int


@dataclass
class RolloverFailure:
    user_id: int
    error: str


@dataclass
class RolloverReport:
    source: str
    period: Optional[str] = None
    skipped: bool = False
    succeeded: list[RolloverResult] = field(default_factory=list)
    failures: list[RolloverFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


class RolloverService:
    """Start a fresh budgeting period: purge expenses, restore every topup."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def user_ids(self) -> list[int]:
        return list(self.session.scalars(select(User.id).order_by(User.id)).all())

    def rollover_user(self, user_id: int, period: Optional[str] = None) -> RolloverResult:
        user = get_or_create_user(self.session, user_id)
        deleted = self.session.execute(
            delete(Expense).where(Expense.user_id == user_id)
        ).rowcount
        topups = self.session.scalars(
            select(AllowanceTopup).where(AllowanceTopup.user_id == user_id)
        ).all()
        for topup in topups:
            reset_topup(topup)
        total = sum(t.amount_cents for t in topups)

        user.current_balance_cents = total
        user.period_opening_cents = total
        if topups:
            user.period_topup_floor_id = max(t.id for t in topups)
        if period is not None:
            user.last_rollover_period = period
        self.session.commit()
        return RolloverResult(
            user_id=user_id,
            deleted_expenses=int(deleted or 0),
            reset_topups=len(topups),
            balance_cents=total,
        )

    def rollover_all(
        self,
        user_ids: Optional[list[int]] = None,
        *,
        period: Optional[str] = None,
        source: str = "manual",
    ) -> RolloverReport:
        report = RolloverReport(source=source, period=period)
        ids = self.user_ids() if user_ids is None else user_ids
        for user_id in ids:
            try:
                result = self.rollover_user(user_id, period)
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"rollover_failed: source={source} user={user_id}")
                report.failures.append(RolloverFailure(user_id=user_id, error=str(exc)))
                continue
            logger.info(
                f"rollover_done: source={source} user={user_id} "
                f"deleted={result.deleted_expenses} reset={result.reset_topups} "
                f"balance={result.balance_cents}"
            )
            report.succeeded.append(result)
        logger.info(
            f"rollover_run: source={source} period={period} users={len(ids)} "
            f"ok={report.success_count} failed={report.failure_count}"
        )
        return report

    def _pending(self, period: str) -> list[int]:
        stmt = (
            select(User.id)
            .where(
                or_(
                    User.last_rollover_period.is_(None),
                    User.last_rollover_period != period,
                )
            )
            .order_by(User.id)
        )
        return list(self.session.scalars(stmt).all())

    def needs_catch_up(self, user_id: int, today: Optional[date] = None) -> bool:
        month_start = month_period(today).start
        current = self.session.scalar(
            select(Expense.id)
            .where(Expense.user_id == user_id, Expense.date >= month_start)
            .limit(1)
        )
        if current is not None:
            return False
        earlier = self.session.scalar(
            select(Expense.id)
            .where(Expense.user_id == user_id, Expense.date < month_start)
            .limit(1)
        )
        return earlier is not None

    def run_scheduled(self, now: Optional[datetime] = None) -> RolloverReport:
        now = now or local_now()
        today = now.date()
        if not is_last_day_of_month(today):
            return RolloverReport(source="scheduled", skipped=True)
        period = period_key(next_month_start(today))
        return self.rollover_all(self._pending(period), period=period, source="scheduled")

    def run_startup_catch_up(self, today: Optional[date] = None) -> RolloverReport:
        today = today or local_today()
        period = period_key(today)
        due = [uid for uid in self._pending(period) if self.needs_catch_up(uid, today)]
        return self.rollover_all(due, period=period, source="startup")

    def check_reset_needed(
        self, user_id: int, today: Optional[date] = None
    ) -> dict[str, object]:
        month = month_period(today)
        latest = self.session.scalar(
            select(func.max(Expense.date)).where(Expense.user_id == user_id)
        )
        return {
            "needs_reset": latest is not None and latest < month.start,
            "period": month.key,
            "latest_expense_date": latest,
        }

    def reset_stats(self, user_id: int, today: Optional[date] = None) -> dict[str, object]:
        month = month_period(today)
        row = self.session.execute(
            select(
                func.count(Expense.id).label("count"),
                func.coalesce(func.sum(Expense.amount_cents), 0).label("total"),
            ).where(Expense.user_id == user_id, Expense.date >= month.start)
        ).one()
        return {
            "period": month.key,
            "month_start": month.start,
            "expenses_this_month": int(row.count),
            "spending_this_month_cents": int(row.total),
        }
