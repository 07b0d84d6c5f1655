from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ErrorKind, LedgerError, NotFoundError, StateConflict
from groups import GroupService
from ledger import WalletLedger
from models import Category, CategoryType, TransactionType, Wallet
from operations import LedgerOperations, OperationResult
from schemas import GroupIn, TransactionIn, TransactionUpdate, WalletIn


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    session.info["atomic_mode"] = "transactional"
    return session


def balance_of(session, wallet_id: int) -> int:
    return session.scalar(select(Wallet.balance).where(Wallet.id == wallet_id))


def test_successful_operation_wraps_value() -> None:
    session = make_session()
    ops = LedgerOperations(session, user_id=1)

    result = ops.create_wallet(WalletIn(name="Cash", balance=100_000))
    assert result.success is True
    wallet = result.unwrap()

    expense = ops.create_transaction(
        TransactionIn(wallet_id=wallet.id, type=TransactionType.expense, amount=30_000)
    )
    assert expense.success is True
    assert balance_of(session, wallet.id) == 70_000


def test_failures_carry_kind_and_code() -> None:
    session = make_session()
    ops = LedgerOperations(session, user_id=1)
    wallet = ops.create_wallet(WalletIn(name="Cash", balance=100_000)).unwrap()
    salary = Category(user_id=1, name="Salary", type=CategoryType.income)
    session.add(salary)
    session.commit()

    missing = ops.delete_transaction(999)
    assert missing.success is False
    assert missing.error_kind == ErrorKind.not_found

    same = ops.create_transaction(
        TransactionIn(
            wallet_id=wallet.id,
            to_wallet_id=wallet.id,
            type=TransactionType.transfer,
            amount=10,
        )
    )
    assert same.error_kind == ErrorKind.validation_error

    mismatch = ops.create_transaction(
        TransactionIn(
            wallet_id=wallet.id,
            type=TransactionType.expense,
            amount=10,
            category_id=salary.id,
        )
    )
    assert mismatch.error_kind == ErrorKind.type_mismatch
    assert mismatch.code == "CATEGORY_TYPE_MISMATCH"
    assert balance_of(session, wallet.id) == 100_000


def test_group_access_is_authorization_failure() -> None:
    session = make_session()
    group = GroupService(session, 1).create(GroupIn(name="Trip"))

    result = LedgerOperations(session, user_id=2).list_group_transactions(group.id)
    assert result.error_kind == ErrorKind.authorization_error
    assert result.code == "NOT_MEMBER"


def test_restore_twice_is_state_conflict() -> None:
    session = make_session()
    ops = LedgerOperations(session, user_id=1)
    wallet = ops.create_wallet(WalletIn(name="Cash", balance=100)).unwrap()
    txn = ops.create_transaction(
        TransactionIn(wallet_id=wallet.id, type=TransactionType.income, amount=50)
    ).unwrap()

    assert ops.delete_transaction(txn.id).success
    assert ops.restore_transaction(txn.id).success
    again = ops.restore_transaction(txn.id)
    assert again.error_kind == ErrorKind.state_conflict
    assert balance_of(session, wallet.id) == 150


def test_storage_failure_is_consistency_failure(monkeypatch) -> None:
    session = make_session()
    ops = LedgerOperations(session, user_id=1)
    wallet = ops.create_wallet(WalletIn(name="Cash", balance=100)).unwrap()
    txn = ops.create_transaction(
        TransactionIn(
            wallet_id=wallet.id,
            type=TransactionType.expense,
            amount=40,
            occurred_at=datetime(2026, 3, 1),
        )
    ).unwrap()

    def broken(self, wallet_id, amount):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(WalletLedger, "_increment", broken)
    result = ops.update_transaction(txn.id, TransactionUpdate(amount=10))
    monkeypatch.undo()

    assert result.success is False
    assert result.error_kind == ErrorKind.consistency_failure
    assert balance_of(session, wallet.id) == 60


def test_unwrap_raises_on_failure() -> None:
    failed = OperationResult(
        success=False,
        error_kind=ErrorKind.not_found,
        code="WALLET_NOT_FOUND",
        message="Wallet not found",
    )
    with pytest.raises(LedgerError) as exc:
        failed.unwrap()
    assert exc.value.code == "WALLET_NOT_FOUND"
    assert OperationResult.ok(5).unwrap() == 5
    assert isinstance(exc.value, NotFoundError)
    assert exc.value.kind == ErrorKind.not_found


def test_unwrap_keeps_kind_of_failed_operation() -> None:
    session = make_session()
    ops = LedgerOperations(session, user_id=1)
    wallet = ops.create_wallet(WalletIn(name="Cash", balance=100)).unwrap()
    txn = ops.create_transaction(
        TransactionIn(wallet_id=wallet.id, type=TransactionType.income, amount=50)
    ).unwrap()

    with pytest.raises(StateConflict) as exc:
        ops.restore_transaction(txn.id).unwrap()
    assert exc.value.kind == ErrorKind.state_conflict
    assert exc.value.code == "NOT_DELETED"
