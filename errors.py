from enum import Enum
from typing import Iterable, Optional


class ErrorKind(str, Enum):
    not_found = "not_found"
    validation_error = "validation_error"
    type_mismatch = "type_mismatch"
    state_conflict = "state_conflict"
    authorization_error = "authorization_error"
    consistency_failure = "consistency_failure"


class LedgerError(ValueError):
    kind: ErrorKind = ErrorKind.validation_error
    default_code = "LEDGER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class NotFoundError(LedgerError):
    kind = ErrorKind.not_found
    default_code = "NOT_FOUND"


class WalletNotFound(NotFoundError):
    default_code = "WALLET_NOT_FOUND"


class ValidationError(LedgerError):
    kind = ErrorKind.validation_error
    default_code = "VALIDATION_ERROR"


class InvalidTransfer(ValidationError):
    default_code = "INVALID_TRANSFER"


class InvalidAmount(ValidationError):
    default_code = "INVALID_AMOUNT"


class TypeMismatchError(LedgerError):
    kind = ErrorKind.type_mismatch
    default_code = "CATEGORY_TYPE_MISMATCH"


class StateConflict(LedgerError):
    kind = ErrorKind.state_conflict
    default_code = "STATE_CONFLICT"


class InsufficientGoalBalance(StateConflict):
    default_code = "INSUFFICIENT_GOAL_BALANCE"


class AlreadyPaidThisPeriod(StateConflict):
    default_code = "ALREADY_PAID_THIS_PERIOD"


class BillInactive(StateConflict):
    default_code = "BILL_INACTIVE"


class AuthorizationError(LedgerError):
    kind = ErrorKind.authorization_error
    default_code = "FORBIDDEN"


class ConsistencyFailure(LedgerError):
    """The write unit could not be completed as a whole.

    ``compensated`` tells whether every partial effect was undone. When it is
    False the listed wallets need a balance recalculation.
    """

    kind = ErrorKind.consistency_failure
    default_code = "CONSISTENCY_FAILURE"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        wallet_ids: Iterable[int] = (),
        compensated: bool = True,
    ) -> None:
        super().__init__(message, code)
        self.wallet_ids = sorted(set(wallet_ids))
        self.compensated = compensated
