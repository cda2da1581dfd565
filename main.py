import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import AllowanceTopup
from scheduler import SchedulerManager
from schemas import DepositIn, ExpenseIn, ExpenseOut, TopupHistoryOut, TopupOut
from services import (
    AllowanceService,
    BalanceService,
    ExpenseNotFound,
    ExpenseService,
    PredictionService,
    RepairService,
    RolloverService,
)

app = FastAPI(title="Allowance Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: int = Header(...)) -> int:
    # Identity is verified upstream; only the opaque id reaches the ledger.
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().enable_scheduler:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _topup_summary(topup: Optional[AllowanceTopup]) -> Optional[dict]:
    if topup is None:
        return None
    out = TopupOut.model_validate(topup)
    out.remaining_cents = max(0, out.remaining_cents)
    return out.model_dump()


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/allowance", response_model=list[TopupOut])
def api_list_topups(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AllowanceService(db, user_id).list_topups()


@app.post("/api/allowance")
def api_record_deposit(
    payload: DepositIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        topup = AllowanceService(db, user_id).record_deposit(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "topup": _topup_summary(topup),
        "balance_cents": topup.amount_cents,
        "carry_over_cents": topup.carry_over_cents,
        "original_amount_cents": topup.original_amount_cents,
    }


@app.get("/api/allowance/current")
def api_current_balance(
    resync: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    current = BalanceService(db, user_id).current_balance(resync=resync)
    return {
        "balance_cents": current.balance_cents,
        "source": current.decision.source.value,
        "drift_cents": current.decision.drift_cents,
        "has_active_allowance": current.topup is not None,
        "topup": _topup_summary(current.topup),
    }


@app.get("/api/allowance/history", response_model=list[TopupHistoryOut])
def api_history(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AllowanceService(db, user_id).history()


@app.get("/api/allowance/prediction")
def api_prediction(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    result = PredictionService(db, user_id).get_prediction()
    if result is None:
        return {"prediction": None, "message": "No active allowance found"}
    topup = AllowanceService(db, user_id).current_topup(active_only=True)
    return {"topup": _topup_summary(topup), "prediction": result.to_dict()}


@app.post("/api/allowance/fix-balance")
def api_fix_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return BalanceService(db, user_id).fix_balance()


@app.post("/api/allowance/sync-balance")
def api_sync_balance(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return RepairService(db).sync_topups(user_id)


@app.post("/api/allowance/repair-balances")
def api_repair_balances(
    all_users: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = RepairService(db)
    if all_users:
        return service.repair_all()
    return service.repair_user(user_id)


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def api_commit_expense(
    payload: ExpenseIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return ExpenseService(db, user_id).commit_expense(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/expenses/{expense_id}")
def api_delete_expense(
    expense_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db, user_id).delete_expense(expense_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"deleted": expense_id}


@app.post("/api/monthly-reset/reset-current-month")
def api_reset_current_month(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    try:
        result = RolloverService(db).rollover_user(user_id)
    except Exception as exc:
        logging.exception("Manual monthly reset failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {
        "deleted_expenses": result.deleted_expenses,
        "reset_topups": result.reset_topups,
        "balance_cents": result.balance_cents,
    }


@app.post("/api/monthly-reset/reset-all-users")
def api_reset_all_users(db: Session = Depends(get_db)):
    report = RolloverService(db).rollover_all()
    return {
        "reset_count": report.success_count,
        "errors": [
            {"user_id": failure.user_id, "error": failure.error}
            for failure in report.failures
        ],
    }


@app.get("/api/monthly-reset/check-reset-needed")
def api_check_reset_needed(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return RolloverService(db).check_reset_needed(user_id)


@app.get("/api/monthly-reset/reset-stats")
def api_reset_stats(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return RolloverService(db).reset_stats(user_id)
