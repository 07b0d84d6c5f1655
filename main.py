import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import ErrorKind
from groups import GroupTransactionFilters
from models import GroupTransactionScope, GroupTransactionType, TransactionType
from operations import LedgerOperations, OperationResult
from scheduler import SchedulerManager
from schemas import (
    BudgetOut,
    BudgetUpdate,
    CategoryOut,
    GoalAmountIn,
    GroupTransactionIn,
    GroupTransactionOut,
    GroupTransactionUpdate,
    SavingGoalOut,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    WalletIn,
    WalletOut,
)
from services import TransactionFilters, TransactionService, WalletService

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")

STATUS_BY_KIND = {
    ErrorKind.not_found: 404,
    ErrorKind.validation_error: 400,
    ErrorKind.type_mismatch: 422,
    ErrorKind.state_conflict: 409,
    ErrorKind.authorization_error: 403,
    ErrorKind.consistency_failure: 503,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def operations(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
) -> LedgerOperations:
    return LedgerOperations(db, user_id)


def render(result: OperationResult, out: Optional[type[BaseModel]] = None):
    if not result.success:
        raise HTTPException(
            status_code=STATUS_BY_KIND.get(result.error_kind, 400),
            detail={
                "kind": result.error_kind.value if result.error_kind else None,
                "code": result.code,
                "message": result.message,
            },
        )
    if out is None:
        return Response(status_code=204)
    return out.model_validate(result.data).model_dump(mode="json")


settings = get_settings()
scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.scheduler_enabled:
        scheduler_manager.start()
    else:
        logger.info("Scheduler disabled by configuration")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/wallets")
def list_wallets(db: Session = Depends(get_db), user_id: int = Depends(current_user)):
    wallets = WalletService(db, user_id).list_all()
    return [WalletOut.model_validate(w).model_dump(mode="json") for w in wallets]


@app.post("/wallets", status_code=201)
def create_wallet(payload: WalletIn, ops: LedgerOperations = Depends(operations)):
    return render(ops.create_wallet(payload), WalletOut)


@app.post("/wallets/{wallet_id}/default")
def set_default_wallet(wallet_id: int, ops: LedgerOperations = Depends(operations)):
    return render(ops.set_default_wallet(wallet_id), WalletOut)


@app.post("/wallets/{wallet_id}/recalculate")
def recalculate_wallet(wallet_id: int, ops: LedgerOperations = Depends(operations)):
    return render(ops.recalculate_wallet(wallet_id), WalletOut)


@app.get("/transactions")
def list_transactions(
    wallet_id: Optional[int] = None,
    category_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    filters = TransactionFilters(wallet_id=wallet_id, category_id=category_id, type=type)
    txns = TransactionService(db, user_id).list(filters, limit=min(limit, 200), offset=offset)
    return [TransactionOut.model_validate(t).model_dump(mode="json") for t in txns]


@app.post("/transactions", status_code=201)
def create_transaction(payload: TransactionIn, ops: LedgerOperations = Depends(operations)):
    return render(ops.create_transaction(payload), TransactionOut)


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    ops: LedgerOperations = Depends(operations),
):
    return render(ops.update_transaction(transaction_id, payload), TransactionOut)


@app.delete("/transactions/{transaction_id}", status_code=204)
def delete_transaction(transaction_id: int, ops: LedgerOperations = Depends(operations)):
    return render(ops.delete_transaction(transaction_id))


@app.patch("/transactions/{transaction_id}/restore")
def restore_transaction(transaction_id: int, ops: LedgerOperations = Depends(operations)):
    return render(ops.restore_transaction(transaction_id), TransactionOut)


@app.get("/groups/{group_id}/transactions")
def list_group_transactions(
    group_id: int,
    type: Optional[GroupTransactionType] = None,
    scope: Optional[GroupTransactionScope] = None,
    wallet_id: Optional[int] = None,
    paid_by: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    ops: LedgerOperations = Depends(operations),
):
    filters = GroupTransactionFilters(
        type=type, scope=scope, wallet_id=wallet_id, paid_by=paid_by
    )
    result = ops.list_group_transactions(group_id, filters, limit=limit, offset=offset)
    if not result.success:
        render(result)
    return [
        GroupTransactionOut.model_validate(t).model_dump(mode="json") for t in result.data
    ]


@app.post("/groups/{group_id}/transactions", status_code=201)
def create_group_transaction(
    group_id: int,
    payload: GroupTransactionIn,
    ops: LedgerOperations = Depends(operations),
):
    return render(ops.create_group_transaction(group_id, payload), GroupTransactionOut)


@app.put("/groups/{group_id}/transactions/{transaction_id}")
def update_group_transaction(
    group_id: int,
    transaction_id: int,
    payload: GroupTransactionUpdate,
    ops: LedgerOperations = Depends(operations),
):
    return render(
        ops.update_group_transaction(group_id, transaction_id, payload),
        GroupTransactionOut,
    )


@app.delete("/groups/{group_id}/transactions/{transaction_id}", status_code=204)
def delete_group_transaction(
    group_id: int, transaction_id: int, ops: LedgerOperations = Depends(operations)
):
    return render(ops.delete_group_transaction(group_id, transaction_id))


@app.post("/saving-goals/{goal_id}/deposit")
def deposit_to_goal(
    goal_id: int, payload: GoalAmountIn, ops: LedgerOperations = Depends(operations)
):
    return render(ops.deposit_to_goal(goal_id, payload.amount), SavingGoalOut)


@app.post("/saving-goals/{goal_id}/withdraw")
def withdraw_from_goal(
    goal_id: int, payload: GoalAmountIn, ops: LedgerOperations = Depends(operations)
):
    return render(ops.withdraw_from_goal(goal_id, payload.amount), SavingGoalOut)


@app.post("/recurring-bills/{bill_id}/pay", status_code=201)
def pay_bill(bill_id: int, ops: LedgerOperations = Depends(operations)):
    return render(ops.pay_bill(bill_id), TransactionOut)


@app.post("/categories/defaults", status_code=201)
def seed_default_categories(ops: LedgerOperations = Depends(operations)):
    result = ops.seed_default_categories()
    if not result.success:
        render(result)
    return [CategoryOut.model_validate(c).model_dump(mode="json") for c in result.data]


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: int, payload: BudgetUpdate, ops: LedgerOperations = Depends(operations)
):
    return render(ops.update_budget(budget_id, payload), BudgetOut)


@app.get("/budgets/{budget_id}/progress")
def budget_progress(budget_id: int, ops: LedgerOperations = Depends(operations)):
    result = ops.budget_progress(budget_id)
    if not result.success:
        render(result)
    data = dict(result.data)
    data["start_date"] = data["start_date"].isoformat()
    data["end_date"] = data["end_date"].isoformat()
    return data


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
