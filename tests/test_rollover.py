from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import scheduler
import services
from database import Base
from models import AllowanceTopup, Expense, ExpenseCategory, User
from schemas import DepositIn, ExpenseIn
from services import AllowanceService, BalanceService, ExpenseService, RolloverService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_user(session, user_id: int, spend_on: date, amount_cents: int = 10_000):
    received = datetime.combine(spend_on.replace(day=1), datetime.min.time())
    AllowanceService(session, user_id).record_deposit(
        DepositIn(amount_cents=amount_cents), now=received
    )
    ExpenseService(session, user_id).commit_expense(
        ExpenseIn(amount_cents=1_000, category=ExpenseCategory.allowance, date=spend_on),
        now=datetime.combine(spend_on, datetime.min.time()).replace(hour=18),
    )


def expense_count(session, user_id: int) -> int:
    return len(session.scalars(select(Expense).where(Expense.user_id == user_id)).all())


def test_rollover_resets_every_topup_and_purges_expenses() -> None:
    session = make_session()
    allowance = AllowanceService(session, 1)
    expenses = ExpenseService(session, 1)
    allowance.record_deposit(DepositIn(amount_cents=30_000), now=datetime(2026, 3, 1, 9, 0))
    expenses.commit_expense(
        ExpenseIn(amount_cents=16_800, category=ExpenseCategory.allowance),
        now=datetime(2026, 3, 2, 9, 0),
    )
    expenses.commit_expense(
        ExpenseIn(amount_cents=2_000, category=ExpenseCategory.essentials),
        now=datetime(2026, 3, 2, 9, 30),
    )
    allowance.record_deposit(DepositIn(amount_cents=20_000), now=datetime(2026, 3, 8, 9, 0))

    rollover = RolloverService(session)
    result = rollover.rollover_user(1)

    assert result.deleted_expenses == 2
    assert result.reset_topups == 2
    assert result.balance_cents == 63_200
    topups = session.scalars(select(AllowanceTopup).order_by(AllowanceTopup.id)).all()
    for topup in topups:
        assert topup.spent_cents == 0
        assert topup.remaining_cents == topup.amount_cents
        assert topup.is_active is True
        assert topup.depleted_at is None
        assert topup.days_lasted is None
    assert expense_count(session, 1) == 0
    assert session.get(User, 1).current_balance_cents == 63_200
    assert BalanceService(session, 1).compute_truth() == 63_200

    snapshot = [(t.spent_cents, t.remaining_cents, t.is_active) for t in topups]
    again = rollover.rollover_user(1)
    assert again.balance_cents == 63_200
    assert again.deleted_expenses == 0
    assert snapshot == [(t.spent_cents, t.remaining_cents, t.is_active) for t in topups]


def test_rollover_of_user_without_topups_is_harmless() -> None:
    session = make_session()
    result = RolloverService(session).rollover_user(7)
    assert result.reset_topups == 0
    assert result.balance_cents == 0
    assert session.get(User, 7).current_balance_cents == 0


def test_scheduled_run_only_acts_on_last_day_of_month() -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 3, 10))
    rollover = RolloverService(session)

    skipped = rollover.run_scheduled(now=datetime(2026, 3, 30, 23, 59))
    assert skipped.skipped is True
    assert expense_count(session, 1) == 1

    report = rollover.run_scheduled(now=datetime(2026, 3, 31, 23, 59))
    assert report.skipped is False
    assert report.period == "2026-04"
    assert report.success_count == 1
    assert expense_count(session, 1) == 0
    assert session.get(User, 1).last_rollover_period == "2026-04"

    repeat = rollover.run_scheduled(now=datetime(2026, 3, 31, 23, 59, 30))
    assert repeat.success_count == 0
    assert repeat.failure_count == 0


def test_scheduled_run_handles_year_end() -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 12, 5))
    report = RolloverService(session).run_scheduled(now=datetime(2026, 12, 31, 23, 59))
    assert report.period == "2027-01"
    assert report.success_count == 1


def test_startup_catch_up_only_rolls_users_with_stale_expenses() -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 3, 15))
    seed_user(session, 2, date(2026, 4, 2))
    AllowanceService(session, 3).record_deposit(
        DepositIn(amount_cents=5_000), now=datetime(2026, 4, 1, 9, 0)
    )

    rollover = RolloverService(session)
    assert rollover.needs_catch_up(1, today=date(2026, 4, 3)) is True
    assert rollover.needs_catch_up(2, today=date(2026, 4, 3)) is False
    assert rollover.needs_catch_up(3, today=date(2026, 4, 3)) is False

    report = rollover.run_startup_catch_up(today=date(2026, 4, 3))

    assert report.source == "startup"
    assert report.period == "2026-04"
    assert [r.user_id for r in report.succeeded] == [1]
    assert expense_count(session, 1) == 0
    assert expense_count(session, 2) == 1
    assert session.get(User, 1).last_rollover_period == "2026-04"
    assert session.get(User, 2).last_rollover_period is None


def test_catch_up_skips_users_already_rolled_by_schedule() -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 3, 10))
    rollover = RolloverService(session)
    rollover.run_scheduled(now=datetime(2026, 3, 31, 23, 59))

    # entered after midnight but dated on the last day of the old month
    ExpenseService(session, 1).commit_expense(
        ExpenseIn(
            amount_cents=500,
            category=ExpenseCategory.allowance,
            date=date(2026, 3, 31),
        ),
        now=datetime(2026, 4, 1, 0, 5),
    )
    report = rollover.run_startup_catch_up(today=date(2026, 4, 1))

    assert report.success_count == 0
    assert expense_count(session, 1) == 1


def test_one_failing_user_does_not_abort_the_pass(monkeypatch) -> None:
    session = make_session()
    for user_id in (1, 2, 3):
        seed_user(session, user_id, date(2026, 3, 10))

    real_reset = services.reset_topup

    def flaky_reset(topup):
        if topup.user_id == 2:
            raise RuntimeError("disk full")
        return real_reset(topup)

    monkeypatch.setattr(services, "reset_topup", flaky_reset)
    report = RolloverService(session).rollover_all(period="2026-04", source="test")

    assert [r.user_id for r in report.succeeded] == [1, 3]
    assert report.failure_count == 1
    assert report.failures[0].user_id == 2
    assert report.failures[0].error == "disk full"
    assert expense_count(session, 1) == 0
    assert expense_count(session, 2) == 1
    assert expense_count(session, 3) == 0
    assert session.get(User, 2).last_rollover_period is None
    assert session.get(User, 3).last_rollover_period == "2026-04"


def test_check_reset_needed_and_stats() -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 3, 10))
    ExpenseService(session, 1).commit_expense(
        ExpenseIn(
            amount_cents=500,
            category=ExpenseCategory.essentials,
            date=date(2026, 3, 12),
        ),
        now=datetime(2026, 3, 12, 20, 0),
    )
    rollover = RolloverService(session)

    same_month = rollover.check_reset_needed(1, today=date(2026, 3, 20))
    assert same_month["needs_reset"] is False
    assert same_month["period"] == "2026-03"

    next_month = rollover.check_reset_needed(1, today=date(2026, 4, 2))
    assert next_month["needs_reset"] is True
    assert next_month["latest_expense_date"] == date(2026, 3, 12)

    assert rollover.check_reset_needed(9, today=date(2026, 4, 2))["needs_reset"] is False

    stats = rollover.reset_stats(1, today=date(2026, 3, 20))
    assert stats["month_start"] == date(2026, 3, 1)
    assert stats["expenses_this_month"] == 2
    assert stats["spending_this_month_cents"] == 1_500
    assert rollover.reset_stats(1, today=date(2026, 4, 2))["expenses_this_month"] == 0


def test_scheduler_manager_runs_through_session_scope(monkeypatch) -> None:
    session = make_session()
    seed_user(session, 1, date(2026, 3, 10))

    @contextmanager
    def scope():
        yield session
        session.commit()

    monkeypatch.setattr(scheduler, "session_scope", scope)
    manager = scheduler.SchedulerManager()

    report = manager._run_monthly("test", now=datetime(2026, 3, 31, 23, 59))
    assert report.success_count == 1
    assert manager._run_catch_up(today=date(2026, 4, 1)).success_count == 0


def test_scheduler_registers_job_even_when_catch_up_fails(monkeypatch) -> None:
    manager = scheduler.SchedulerManager()

    def broken_catch_up(today=None):
        raise RuntimeError("database locked")

    monkeypatch.setattr(manager, "_run_catch_up", broken_catch_up)
    manager.start()
    try:
        job = manager.scheduler.get_job("monthly_rollover")
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
    finally:
        manager.stop()
