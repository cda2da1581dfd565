from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from balance import BalanceSource, compute_balance, reconcile_balance
from database import Base
from models import ExpenseCategory, User
from schemas import DepositIn, ExpenseIn
from services import AllowanceService, BalanceService, ExpenseService, RolloverService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_small_drift_keeps_cached_value() -> None:
    decision = reconcile_balance(14_000, 13_200, tolerance_cents=1_000)
    assert decision.balance_cents == 14_000
    assert decision.source == BalanceSource.cache
    assert decision.drift_cents == 800
    assert decision.diverged is False


def test_large_drift_reports_computed_value() -> None:
    decision = reconcile_balance(14_000, 10_000, tolerance_cents=1_000)
    assert decision.balance_cents == 10_000
    assert decision.source == BalanceSource.computed
    assert decision.drift_cents == 4_000
    assert decision.diverged is True


def test_drift_exactly_at_tolerance_trusts_cache() -> None:
    assert reconcile_balance(11_000, 10_000, 1_000).balance_cents == 11_000
    assert reconcile_balance(11_001, 10_000, 1_000).balance_cents == 10_000


def test_negative_cache_is_never_trusted() -> None:
    decision = reconcile_balance(-200, 0, tolerance_cents=1_000)
    assert decision.balance_cents == 0
    assert decision.source == BalanceSource.computed


def test_compute_balance_floors_at_zero() -> None:
    assert compute_balance(10_000, 3_000) == 7_000
    assert compute_balance(10_000, 3_000, opening_cents=5_000) == 12_000
    assert compute_balance(1_000, 3_000) == 0


def test_truth_matches_cache_across_carry_over() -> None:
    session = make_session()
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=30_000), now=datetime(2026, 3, 1, 9, 0)
    )
    expenses = ExpenseService(session, 1)
    expenses.commit_expense(
        ExpenseIn(amount_cents=16_800, category=ExpenseCategory.allowance),
        now=datetime(2026, 3, 2, 9, 0),
    )
    expenses.commit_expense(
        ExpenseIn(amount_cents=4_000, category=ExpenseCategory.essentials),
        now=datetime(2026, 3, 2, 9, 5),
    )
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=20_000), now=datetime(2026, 3, 8, 9, 0)
    )

    balance = BalanceService(session, 1)
    assert balance.read_cache() == 33_200
    assert balance.compute_truth() == 33_200
    current = balance.current_balance()
    assert current.balance_cents == 33_200
    assert current.decision.source == BalanceSource.cache
    assert current.topup.amount_cents == 33_200


def test_truth_after_rollover_starts_from_restored_total() -> None:
    session = make_session()
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=10_000), now=datetime(2026, 3, 1, 9, 0)
    )
    ExpenseService(session, 1).commit_expense(
        ExpenseIn(amount_cents=2_000, category=ExpenseCategory.allowance),
        now=datetime(2026, 3, 2, 9, 0),
    )
    RolloverService(session).rollover_user(1)

    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=5_000), now=datetime(2026, 4, 1, 9, 0)
    )
    ExpenseService(session, 1).commit_expense(
        ExpenseIn(amount_cents=1_500, category=ExpenseCategory.extra),
        now=datetime(2026, 4, 2, 9, 0),
    )

    balance = BalanceService(session, 1)
    assert balance.read_cache() == 13_500
    assert balance.compute_truth() == 13_500


def test_drifted_cache_is_reported_and_optionally_resynced(caplog) -> None:
    session = make_session()
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=10_000), now=datetime(2026, 3, 1, 9, 0)
    )
    user = session.get(User, 1)
    user.current_balance_cents = 14_000
    session.commit()

    balance = BalanceService(session, 1)
    with caplog.at_level("WARNING"):
        decision = balance.authoritative_balance()
    assert decision.balance_cents == 10_000
    assert decision.source == BalanceSource.computed
    assert "balance_drift" in caplog.text
    # reads alone never rewrite the cache
    assert balance.read_cache() == 14_000

    balance.authoritative_balance(resync=True)
    assert balance.read_cache() == 10_000


def test_tolerance_is_configurable_per_service() -> None:
    session = make_session()
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=10_000), now=datetime(2026, 3, 1, 9, 0)
    )
    session.get(User, 1).current_balance_cents = 10_500
    session.commit()

    assert BalanceService(session, 1).authoritative_balance().balance_cents == 10_500
    strict = BalanceService(session, 1, tolerance_cents=100)
    assert strict.authoritative_balance().balance_cents == 10_000


def test_fix_balance_overwrites_cache_and_reports_figures() -> None:
    session = make_session()
    AllowanceService(session, 1).record_deposit(
        DepositIn(amount_cents=10_000), now=datetime(2026, 3, 1, 9, 0)
    )
    ExpenseService(session, 1).commit_expense(
        ExpenseIn(amount_cents=2_500, category=ExpenseCategory.allowance),
        now=datetime(2026, 3, 1, 12, 0),
    )
    session.get(User, 1).current_balance_cents = 7_000
    session.commit()

    result = BalanceService(session, 1).fix_balance()
    assert result == {
        "before_cents": 7_000,
        "after_cents": 7_500,
        "opening_cents": 0,
        "deposits_cents": 10_000,
        "expenses_cents": 2_500,
    }
    assert session.get(User, 1).current_balance_cents == 7_500
