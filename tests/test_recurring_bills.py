from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    AlreadyPaidThisPeriod,
    BillInactive,
    ConsistencyFailure,
    TypeMismatchError,
    ValidationError,
)
from ledger import WalletLedger
from models import (
    BillFrequency,
    Category,
    CategoryType,
    Transaction,
    TransactionSource,
    TransactionType,
    Wallet,
)
import recurrence
from periods import billing_period_start, same_billing_period
from recurrence import add_months, calculate_next_run
from schemas import RecurringBillIn, RecurringBillUpdate, WalletIn
from services import RecurringBillService, WalletService


def make_session(mode: str = "transactional"):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    session.info["atomic_mode"] = mode
    return session


def balance_of(session, wallet_id: int) -> int:
    return session.scalar(select(Wallet.balance).where(Wallet.id == wallet_id))


def transaction_count(session) -> int:
    return session.scalar(
        select(func.count(Transaction.id)).execution_options(include_deleted=True)
    )


def seed_bill(session, **overrides):
    wallet = WalletService(session).create(WalletIn(name="Bank", balance=1_000_000))
    utilities = Category(user_id=1, name="Utilities", type=CategoryType.expense)
    session.add(utilities)
    session.commit()
    fields = dict(
        name="Internet",
        wallet_id=wallet.id,
        category_id=utilities.id,
        amount=250_000,
        type=CategoryType.expense,
        frequency=BillFrequency.monthly,
        next_run=datetime(2026, 3, 10, 9, 0),
    )
    fields.update(overrides)
    bill = RecurringBillService(session).create(RecurringBillIn(**fields))
    return wallet, bill


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(datetime(2026, 1, 31, 8, 0), 1) == datetime(2026, 2, 28, 8, 0)
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)


def test_next_run_per_frequency() -> None:
    start = datetime(2026, 3, 10, 9, 0)
    assert calculate_next_run(BillFrequency.daily, start) == datetime(2026, 3, 11, 9, 0)
    assert calculate_next_run(BillFrequency.weekly, start) == datetime(2026, 3, 17, 9, 0)
    assert calculate_next_run(BillFrequency.biweekly, start) == datetime(2026, 3, 24, 9, 0)
    assert calculate_next_run(BillFrequency.monthly, start) == datetime(2026, 4, 10, 9, 0)
    assert calculate_next_run(BillFrequency.yearly, start) == datetime(2027, 3, 10, 9, 0)
    assert calculate_next_run(BillFrequency.custom, start) == datetime(2026, 3, 11, 9, 0)


def test_billing_period_boundaries() -> None:
    # 2026-03-11 is a Wednesday.
    moment = datetime(2026, 3, 11, 15, 30)
    assert billing_period_start(BillFrequency.daily, moment) == datetime(2026, 3, 11)
    assert billing_period_start(BillFrequency.weekly, moment) == datetime(2026, 3, 9)
    assert billing_period_start(BillFrequency.monthly, moment) == datetime(2026, 3, 1)
    assert billing_period_start(BillFrequency.yearly, moment) == datetime(2026, 1, 1)
    assert billing_period_start(BillFrequency.biweekly, datetime(1970, 1, 18)) == datetime(
        1970, 1, 5
    )
    assert billing_period_start(BillFrequency.biweekly, datetime(1970, 1, 19)) == datetime(
        1970, 1, 19
    )


def test_same_billing_period() -> None:
    assert same_billing_period(BillFrequency.monthly, None, datetime(2026, 3, 1)) is False
    assert same_billing_period(
        BillFrequency.monthly, datetime(2026, 3, 1, 0, 5), datetime(2026, 3, 31, 23, 0)
    )
    assert not same_billing_period(
        BillFrequency.monthly, datetime(2026, 2, 28), datetime(2026, 3, 1)
    )
    assert not same_billing_period(
        BillFrequency.weekly, datetime(2026, 3, 8), datetime(2026, 3, 9)
    )


def test_pay_is_idempotent_within_period() -> None:
    session = make_session()
    wallet, bill = seed_bill(session)
    bills = RecurringBillService(session)
    now = datetime(2026, 3, 10, 9, 0)

    txn = bills.pay(bill.id, now=now)
    assert txn.type == TransactionType.expense
    assert txn.source == TransactionSource.recurring_bill
    assert txn.recurring_bill_id == bill.id
    assert balance_of(session, wallet.id) == 750_000

    refreshed = bills.get(bill.id)
    assert refreshed.last_paid_at == now
    assert refreshed.next_run == datetime(2026, 4, 10, 9, 0)

    with pytest.raises(AlreadyPaidThisPeriod):
        bills.pay(bill.id, now=datetime(2026, 3, 10, 18, 0))
    assert transaction_count(session) == 1
    assert balance_of(session, wallet.id) == 750_000

    bills.pay(bill.id, now=datetime(2026, 4, 10, 9, 0))
    assert transaction_count(session) == 2
    assert balance_of(session, wallet.id) == 500_000


def test_income_bill_credits_wallet() -> None:
    session = make_session()
    wallet = WalletService(session).create(WalletIn(name="Bank", balance=0))
    bill = RecurringBillService(session).create(
        RecurringBillIn(
            name="Rent received",
            wallet_id=wallet.id,
            amount=5_000_000,
            type=CategoryType.income,
            frequency=BillFrequency.monthly,
            next_run=datetime(2026, 3, 1),
        )
    )
    RecurringBillService(session).pay(bill.id, now=datetime(2026, 3, 1, 8, 0))
    assert balance_of(session, wallet.id) == 5_000_000


def test_bill_past_end_is_deactivated() -> None:
    session = make_session()
    wallet, bill = seed_bill(
        session,
        frequency=BillFrequency.daily,
        next_run=datetime(2026, 3, 10, 9, 0),
        ends_at=datetime(2026, 3, 10, 21, 0),
    )
    bills = RecurringBillService(session)

    bills.pay(bill.id, now=datetime(2026, 3, 10, 9, 0))
    assert bills.get(bill.id).active is False

    with pytest.raises(BillInactive):
        bills.pay(bill.id, now=datetime(2026, 3, 11, 9, 0))
    assert transaction_count(session) == 1


def test_inactive_bill_cannot_be_paid() -> None:
    session = make_session()
    wallet, bill = seed_bill(session)
    bills = RecurringBillService(session)
    bills.update(bill.id, RecurringBillUpdate(active=False))

    with pytest.raises(BillInactive):
        bills.pay(bill.id, now=datetime(2026, 3, 10, 9, 0))
    assert balance_of(session, wallet.id) == 1_000_000


def test_pay_due_sweeps_only_auto_bills() -> None:
    session = make_session()
    wallet, auto = seed_bill(session)
    manual = RecurringBillService(session).create(
        RecurringBillIn(
            name="Gym",
            wallet_id=wallet.id,
            amount=100_000,
            type=CategoryType.expense,
            frequency=BillFrequency.monthly,
            next_run=datetime(2026, 3, 1),
            auto_create_transaction=False,
        )
    )
    bills = RecurringBillService(session)

    assert bills.pay_due(now=datetime(2026, 3, 10, 10, 0)) == 1
    assert bills.pay_due(now=datetime(2026, 3, 10, 11, 0)) == 0
    assert balance_of(session, wallet.id) == 750_000
    assert bills.get(manual.id).last_paid_at is None
    assert bills.get(auto.id).last_paid_at == datetime(2026, 3, 10, 10, 0)


def test_bill_category_must_match_type() -> None:
    session = make_session()
    wallet = WalletService(session).create(WalletIn(name="Bank"))
    salary = Category(user_id=1, name="Salary", type=CategoryType.income)
    session.add(salary)
    session.commit()

    with pytest.raises(TypeMismatchError):
        RecurringBillService(session).create(
            RecurringBillIn(
                name="Power",
                wallet_id=wallet.id,
                category_id=salary.id,
                amount=10,
                type=CategoryType.expense,
                frequency=BillFrequency.monthly,
                next_run=datetime(2026, 3, 1),
            )
        )


def test_ends_at_before_next_run_is_rejected() -> None:
    session = make_session()
    wallet = WalletService(session).create(WalletIn(name="Bank"))
    with pytest.raises(ValidationError):
        RecurringBillService(session).create(
            RecurringBillIn(
                name="Power",
                wallet_id=wallet.id,
                amount=10,
                type=CategoryType.expense,
                frequency=BillFrequency.monthly,
                next_run=datetime(2026, 3, 1),
                ends_at=datetime(2026, 2, 1),
            )
        )


def test_concurrent_pay_loses_the_period_claim(monkeypatch) -> None:
    session = make_session()
    wallet, bill = seed_bill(session)
    bills = RecurringBillService(session)
    bills.pay(bill.id, now=datetime(2026, 3, 10, 9, 0))

    # A second payer that read the bill before the first one committed.
    monkeypatch.setattr(recurrence, "same_billing_period", lambda *args: False)
    with pytest.raises(AlreadyPaidThisPeriod):
        bills.pay(bill.id, now=datetime(2026, 3, 10, 9, 5))

    assert transaction_count(session) == 1
    assert balance_of(session, wallet.id) == 750_000
    assert bills.get(bill.id).last_paid_at == datetime(2026, 3, 10, 9, 0)


def test_sequential_pay_failure_releases_the_claim(monkeypatch) -> None:
    session = make_session("sequential")
    wallet, bill = seed_bill(session)

    def broken(self, wallet_id, amount):
        raise SQLAlchemyError("connection dropped")

    monkeypatch.setattr(WalletLedger, "_increment", broken)
    with pytest.raises(ConsistencyFailure) as exc:
        RecurringBillService(session).pay(bill.id, now=datetime(2026, 3, 10, 9, 0))
    monkeypatch.undo()

    assert exc.value.compensated is True
    refreshed = RecurringBillService(session).get(bill.id)
    assert refreshed.last_paid_at is None
    assert refreshed.next_run == datetime(2026, 3, 10, 9, 0)
    assert refreshed.active is True
    assert transaction_count(session) == 0
    assert balance_of(session, wallet.id) == 1_000_000

    RecurringBillService(session).pay(bill.id, now=datetime(2026, 3, 10, 9, 30))
    assert balance_of(session, wallet.id) == 750_000
