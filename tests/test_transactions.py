from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    InvalidAmount,
    InvalidTransfer,
    NotFoundError,
    StateConflict,
    TypeMismatchError,
    ValidationError,
    WalletNotFound,
)
from models import Category, CategoryType, Transaction, TransactionType, Wallet
from schemas import TransactionIn, TransactionUpdate, WalletIn
from services import TransactionFilters, TransactionService, WalletService


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


def seed(session, user_id: int = 1):
    wallets = WalletService(session, user_id)
    cash = wallets.create(WalletIn(name="Cash", balance=100_000))
    bank = wallets.create(WalletIn(name="Bank", type="bank", balance=0))
    food = Category(user_id=user_id, name="Food", type=CategoryType.expense)
    salary = Category(user_id=user_id, name="Salary", type=CategoryType.income)
    session.add_all([food, salary])
    session.commit()
    return cash, bank, food, salary


def expense(wallet_id: int, amount: int, category_id=None) -> TransactionIn:
    return TransactionIn(
        wallet_id=wallet_id,
        type=TransactionType.expense,
        amount=amount,
        category_id=category_id,
        occurred_at=datetime(2026, 3, 1, 12, 0),
    )


def test_expense_then_delete_restores_wallet() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)

    txn = service.create(expense(cash.id, 30_000, food.id))
    assert balance_of(session, cash.id) == 70_000
    assert txn.wallet.id == cash.id
    assert txn.category.name == "Food"

    service.delete(txn.id)
    assert balance_of(session, cash.id) == 100_000


def test_transfer_moves_both_sides_and_update_rebalances() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A", balance=500_000))
    b = wallets.create(WalletIn(name="B", balance=0))
    service = TransactionService(session)

    txn = service.create(
        TransactionIn(
            wallet_id=a.id,
            to_wallet_id=b.id,
            type=TransactionType.transfer,
            amount=200_000,
            occurred_at=datetime(2026, 3, 1),
        )
    )
    assert balance_of(session, a.id) == 300_000
    assert balance_of(session, b.id) == 200_000

    service.update(txn.id, TransactionUpdate(amount=100_000))
    assert balance_of(session, a.id) == 400_000
    assert balance_of(session, b.id) == 100_000


def test_transfer_requires_distinct_destination() -> None:
    session = make_session()
    cash, _, _, _ = seed(session)
    service = TransactionService(session)

    with pytest.raises(InvalidTransfer):
        service.create(
            TransactionIn(
                wallet_id=cash.id,
                to_wallet_id=cash.id,
                type=TransactionType.transfer,
                amount=10,
            )
        )
    with pytest.raises(InvalidTransfer):
        service.create(
            TransactionIn(wallet_id=cash.id, type=TransactionType.transfer, amount=10)
        )
    assert balance_of(session, cash.id) == 100_000


def test_category_direction_mismatch_writes_nothing() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)

    with pytest.raises(TypeMismatchError):
        service.create(
            TransactionIn(
                wallet_id=cash.id,
                type=TransactionType.income,
                amount=5_000,
                category_id=food.id,
            )
        )

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert balance_of(session, cash.id) == 100_000


def test_non_positive_amount_is_rejected() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)

    with pytest.raises(InvalidAmount):
        service.create(expense(cash.id, 0, food.id))
    with pytest.raises(InvalidAmount):
        service.create(expense(cash.id, -5, food.id))


def test_foreign_wallet_is_not_found() -> None:
    session = make_session()
    cash, _, _, _ = seed(session, user_id=1)
    service = TransactionService(session, user_id=2)

    with pytest.raises(WalletNotFound):
        service.create(expense(cash.id, 1_000))


def test_failed_update_leaves_balances_untouched() -> None:
    session = make_session()
    cash, _, food, salary = seed(session)
    service = TransactionService(session)
    txn = service.create(expense(cash.id, 10_000, food.id))

    with pytest.raises(TypeMismatchError):
        service.update(txn.id, TransactionUpdate(category_id=salary.id))

    assert balance_of(session, cash.id) == 90_000
    assert service.get(txn.id).category_id == food.id


def test_update_can_move_transaction_between_wallets() -> None:
    session = make_session()
    cash, bank, food, _ = seed(session)
    service = TransactionService(session)
    txn = service.create(expense(cash.id, 10_000, food.id))

    service.update(txn.id, TransactionUpdate(wallet_id=bank.id))

    assert balance_of(session, cash.id) == 100_000
    assert balance_of(session, bank.id) == -10_000


def test_restore_reapplies_effect() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)
    txn = service.create(expense(cash.id, 25_000, food.id))
    service.delete(txn.id)

    with pytest.raises(NotFoundError):
        service.get(txn.id)
    assert [t.id for t in service.deleted()] == [txn.id]

    restored = service.restore(txn.id)
    assert restored.deleted_at is None
    assert balance_of(session, cash.id) == 75_000

    with pytest.raises(StateConflict):
        service.restore(txn.id)


def test_deleting_twice_is_not_found() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)
    txn = service.create(expense(cash.id, 1_000, food.id))
    service.delete(txn.id)

    with pytest.raises(NotFoundError):
        service.delete(txn.id)
    assert balance_of(session, cash.id) == 100_000


def test_soft_deleted_rows_are_hidden_from_plain_queries() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)
    keep = service.create(expense(cash.id, 1_000, food.id))
    gone = service.create(expense(cash.id, 2_000, food.id))
    service.delete(gone.id)

    visible = session.scalars(select(Transaction)).all()
    assert [t.id for t in visible] == [keep.id]

    everything = session.scalars(
        select(Transaction).execution_options(include_deleted=True)
    ).all()
    assert {t.id for t in everything} == {keep.id, gone.id}


def test_adjust_to_target_balance() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)

    adjust = service.create(
        TransactionIn(
            wallet_id=cash.id,
            type=TransactionType.adjust,
            adjust_to=250_000,
            adjust_reason="Counted the drawer",
        )
    )
    assert adjust.amount == 150_000
    assert adjust.adjust_from == 100_000
    assert balance_of(session, cash.id) == 250_000

    service.create(expense(cash.id, 50_000, food.id))
    service.update(adjust.id, TransactionUpdate(note="recount"))
    assert service.get(adjust.id).amount == 150_000
    assert balance_of(session, cash.id) == 200_000

    service.update(adjust.id, TransactionUpdate(adjust_to=300_000))
    assert balance_of(session, cash.id) == 300_000


def test_adjust_requires_reason() -> None:
    session = make_session()
    cash, _, _, _ = seed(session)

    with pytest.raises(ValidationError):
        TransactionService(session).create(
            TransactionIn(wallet_id=cash.id, type=TransactionType.adjust, amount=-500)
        )


def test_negative_adjust_amount_is_allowed() -> None:
    session = make_session()
    cash, _, _, _ = seed(session)

    TransactionService(session).create(
        TransactionIn(
            wallet_id=cash.id,
            type=TransactionType.adjust,
            amount=-500,
            adjust_reason="Lost coins",
        )
    )
    assert balance_of(session, cash.id) == 99_500


def test_transfer_and_adjust_drop_category() -> None:
    session = make_session()
    cash, bank, food, _ = seed(session)

    txn = TransactionService(session).create(
        TransactionIn(
            wallet_id=cash.id,
            to_wallet_id=bank.id,
            type=TransactionType.transfer,
            amount=100,
            category_id=food.id,
        )
    )
    assert txn.category_id is None


def test_debt_and_loan_settle() -> None:
    session = make_session()
    cash, _, food, _ = seed(session)
    service = TransactionService(session)

    debt = service.create(
        TransactionIn(
            wallet_id=cash.id,
            type=TransactionType.debt,
            amount=40_000,
            counterparty_name="Minh",
        )
    )
    loan = service.create(
        TransactionIn(wallet_id=cash.id, type=TransactionType.loan, amount=10_000)
    )
    assert balance_of(session, cash.id) == 70_000

    assert service.settle(debt.id).is_settled is True
    assert balance_of(session, cash.id) == 70_000
    assert service.list(TransactionFilters(is_settled=False))[0].id == loan.id

    plain = service.create(expense(cash.id, 1_000, food.id))
    with pytest.raises(ValidationError):
        service.settle(plain.id)


def test_list_filters_by_wallet_including_incoming_transfers() -> None:
    session = make_session()
    cash, bank, food, _ = seed(session)
    service = TransactionService(session)
    service.create(expense(cash.id, 1_000, food.id))
    transfer = service.create(
        TransactionIn(
            wallet_id=cash.id,
            to_wallet_id=bank.id,
            type=TransactionType.transfer,
            amount=5_000,
        )
    )

    assert [t.id for t in service.list(TransactionFilters(wallet_id=bank.id))] == [
        transfer.id
    ]
    assert len(service.list(TransactionFilters(wallet_id=cash.id))) == 2


def test_balance_matches_transaction_log_after_mixed_operations() -> None:
    session = make_session()
    cash, bank, food, salary = seed(session)
    service = TransactionService(session)
    wallets = WalletService(session)

    a = service.create(expense(cash.id, 12_000, food.id))
    service.create(
        TransactionIn(
            wallet_id=bank.id,
            type=TransactionType.income,
            amount=900_000,
            category_id=salary.id,
        )
    )
    t = service.create(
        TransactionIn(
            wallet_id=bank.id,
            to_wallet_id=cash.id,
            type=TransactionType.transfer,
            amount=300_000,
        )
    )
    service.update(a.id, TransactionUpdate(amount=15_000))
    service.delete(t.id)
    service.restore(t.id)
    service.update(t.id, TransactionUpdate(wallet_id=cash.id, to_wallet_id=bank.id))

    for wallet in (cash, bank):
        assert balance_of(session, wallet.id) == wallets.expected_balance(wallet.id)
