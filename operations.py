"""Structured-result facade over the ledger services.

Callers that prefer not to handle exceptions get an :class:`OperationResult`
carrying either the value or the error kind, code and message.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import (
    AuthorizationError,
    ConsistencyFailure,
    ErrorKind,
    LedgerError,
    NotFoundError,
    StateConflict,
    TypeMismatchError,
    ValidationError,
)
from groups import GroupTransactionFilters, GroupTransactionService
from schemas import (
    BudgetUpdate,
    GroupTransactionIn,
    GroupTransactionUpdate,
    TransactionIn,
    TransactionUpdate,
    WalletIn,
)
from services import (
    BudgetService,
    CategoryService,
    RecurringBillService,
    SavingGoalService,
    TransactionService,
    WalletService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

ERROR_BY_KIND = {
    ErrorKind.not_found: NotFoundError,
    ErrorKind.validation_error: ValidationError,
    ErrorKind.type_mismatch: TypeMismatchError,
    ErrorKind.state_conflict: StateConflict,
    ErrorKind.authorization_error: AuthorizationError,
    ErrorKind.consistency_failure: ConsistencyFailure,
}


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error_kind: Optional[ErrorKind] = None
    code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, exc: LedgerError) -> "OperationResult":
        return cls(success=False, error_kind=exc.kind, code=exc.code, message=exc.message)

    def unwrap(self) -> Any:
        if not self.success:
            error_class = ERROR_BY_KIND.get(self.error_kind, LedgerError)
            raise error_class(self.message or "Operation failed", code=self.code)
        return self.data


class LedgerOperations:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create_transaction(self, data: TransactionIn) -> OperationResult:
        return self._run(
            "create_transaction",
            lambda: TransactionService(self.session, self.user_id).create(data),
        )

    def update_transaction(self, transaction_id: int, data: TransactionUpdate) -> OperationResult:
        return self._run(
            "update_transaction",
            lambda: TransactionService(self.session, self.user_id).update(transaction_id, data),
        )

    def delete_transaction(self, transaction_id: int) -> OperationResult:
        return self._run(
            "delete_transaction",
            lambda: TransactionService(self.session, self.user_id).delete(transaction_id),
        )

    def restore_transaction(self, transaction_id: int) -> OperationResult:
        return self._run(
            "restore_transaction",
            lambda: TransactionService(self.session, self.user_id).restore(transaction_id),
        )

    def create_group_transaction(self, group_id: int, data: GroupTransactionIn) -> OperationResult:
        return self._run(
            "create_group_transaction",
            lambda: GroupTransactionService(self.session, group_id, self.user_id).create(data),
        )

    def update_group_transaction(
        self, group_id: int, transaction_id: int, data: GroupTransactionUpdate
    ) -> OperationResult:
        return self._run(
            "update_group_transaction",
            lambda: GroupTransactionService(self.session, group_id, self.user_id).update(
                transaction_id, data
            ),
        )

    def delete_group_transaction(self, group_id: int, transaction_id: int) -> OperationResult:
        return self._run(
            "delete_group_transaction",
            lambda: GroupTransactionService(self.session, group_id, self.user_id).delete(
                transaction_id
            ),
        )

    def deposit_to_goal(self, goal_id: int, amount: int) -> OperationResult:
        return self._run(
            "deposit_to_goal",
            lambda: SavingGoalService(self.session, self.user_id).deposit(goal_id, amount),
        )

    def withdraw_from_goal(self, goal_id: int, amount: int) -> OperationResult:
        return self._run(
            "withdraw_from_goal",
            lambda: SavingGoalService(self.session, self.user_id).withdraw(goal_id, amount),
        )

    def pay_bill(self, bill_id: int, now: Optional[datetime] = None) -> OperationResult:
        return self._run(
            "pay_bill",
            lambda: RecurringBillService(self.session, self.user_id).pay(bill_id, now=now),
        )

    def budget_progress(self, budget_id: int) -> OperationResult:
        return self._run(
            "budget_progress",
            lambda: BudgetService(self.session, self.user_id).progress(budget_id),
        )

    def update_budget(self, budget_id: int, data: BudgetUpdate) -> OperationResult:
        return self._run(
            "update_budget",
            lambda: BudgetService(self.session, self.user_id).update(budget_id, data),
        )

    def seed_default_categories(self) -> OperationResult:
        return self._run(
            "seed_default_categories",
            lambda: CategoryService(self.session, self.user_id).seed_defaults(),
        )

    def list_group_transactions(
        self, group_id: int, filters: Optional[GroupTransactionFilters] = None, **page
    ) -> OperationResult:
        return self._run(
            "list_group_transactions",
            lambda: GroupTransactionService(self.session, group_id, self.user_id).list(
                filters, **page
            ),
        )

    def create_wallet(self, data: WalletIn) -> OperationResult:
        return self._run(
            "create_wallet",
            lambda: WalletService(self.session, self.user_id).create(data),
        )

    def set_default_wallet(self, wallet_id: int) -> OperationResult:
        return self._run(
            "set_default_wallet",
            lambda: WalletService(self.session, self.user_id).set_default(wallet_id),
        )

    def recalculate_wallet(self, wallet_id: int) -> OperationResult:
        return self._run(
            "recalculate_wallet",
            lambda: WalletService(self.session, self.user_id).recalculate_balance(wallet_id),
        )

    def _run(self, operation: str, action: Callable[[], Any]) -> OperationResult:
        try:
            data = action()
        except LedgerError as exc:
            self.session.rollback()
            if exc.kind == ErrorKind.consistency_failure:
                logger.error(f"operation_failed: op={operation} code={exc.code} reason={exc}")
            else:
                logger.warning(f"operation_rejected: op={operation} code={exc.code} reason={exc}")
            return OperationResult.failure(exc)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception(f"operation_storage_error: op={operation}")
            return OperationResult(
                success=False,
                error_kind=ErrorKind.consistency_failure,
                code="CONSISTENCY_FAILURE",
                message="Storage failure; re-check state before retrying",
            )
        return OperationResult.ok(data)
