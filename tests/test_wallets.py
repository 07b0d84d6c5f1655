import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    NotFoundError,
    StateConflict,
    TypeMismatchError,
    ValidationError,
    WalletNotFound,
)
from models import CategoryType, TransactionType, Wallet
from schemas import CategoryIn, CategoryUpdate, TransactionIn, WalletIn, WalletUpdate
from services import CategoryService, TransactionService, WalletService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    session.info["atomic_mode"] = "transactional"
    return session


def defaults(session, user_id: int = 1) -> list[int]:
    return session.scalars(
        select(Wallet.id).where(Wallet.user_id == user_id, Wallet.is_default.is_(True))
    ).all()


def test_first_wallet_becomes_default() -> None:
    session = make_session()
    wallets = WalletService(session)
    first = wallets.create(WalletIn(name="Cash", balance=1_000))
    second = wallets.create(WalletIn(name="Bank"))

    assert first.is_default is True
    assert second.is_default is False
    assert first.initial_balance == first.balance == 1_000


def test_wallet_names_are_unique_per_user() -> None:
    session = make_session()
    WalletService(session, user_id=1).create(WalletIn(name="Cash"))

    with pytest.raises(ValidationError):
        WalletService(session, user_id=1).create(WalletIn(name="cash"))
    WalletService(session, user_id=2).create(WalletIn(name="Cash"))


def test_set_default_leaves_exactly_one() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A"))
    b = wallets.create(WalletIn(name="B"))
    c = wallets.create(WalletIn(name="C"))
    other = WalletService(session, user_id=2).create(WalletIn(name="Other"))

    wallets.set_default(c.id)
    assert defaults(session) == [c.id]
    wallets.set_default(b.id)
    assert defaults(session) == [b.id]
    assert wallets.get(a.id).is_default is False
    assert defaults(session, user_id=2) == [other.id]


def test_archiving_default_promotes_oldest() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A"))
    b = wallets.create(WalletIn(name="B"))
    wallets.create(WalletIn(name="C"))

    wallets.archive(a.id)
    assert defaults(session) == [b.id]

    with pytest.raises(StateConflict):
        wallets.set_default(a.id)


def test_default_wallet_cannot_be_deleted() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A"))
    b = wallets.create(WalletIn(name="B"))

    with pytest.raises(StateConflict):
        wallets.delete(a.id)

    wallets.delete(b.id)
    with pytest.raises(WalletNotFound):
        wallets.get(b.id)
    assert [w.id for w in wallets.list_all()] == [a.id]

    assert wallets.restore(b.id).deleted_at is None


def test_update_never_touches_balance() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A", balance=10))

    with pytest.raises(SchemaValidationError):
        WalletUpdate(balance=99)
    renamed = wallets.update(a.id, WalletUpdate(name="Wallet A", currency="usd"))
    assert renamed.name == "Wallet A"
    assert renamed.currency == "USD"
    assert renamed.balance == 10


def test_total_balance_skips_archived() -> None:
    session = make_session()
    wallets = WalletService(session)
    wallets.create(WalletIn(name="A", balance=100))
    b = wallets.create(WalletIn(name="B", balance=50))
    wallets.create(WalletIn(name="C", balance=-20, type="credit"))
    wallets.archive(b.id)

    assert wallets.total_balance() == 80


def test_recalculate_repairs_drifted_balance() -> None:
    session = make_session()
    wallets = WalletService(session)
    a = wallets.create(WalletIn(name="A", balance=1_000))
    TransactionService(session).create(
        TransactionIn(wallet_id=a.id, type=TransactionType.expense, amount=300)
    )
    session.execute(update(Wallet).where(Wallet.id == a.id).values(balance=0))
    session.commit()

    assert wallets.recalculate_balance(a.id).balance == 700


def test_category_parent_rules() -> None:
    session = make_session()
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    snacks = categories.create(
        CategoryIn(name="Snacks", type=CategoryType.expense, parent_id=food.id)
    )
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))

    with pytest.raises(TypeMismatchError):
        categories.create(
            CategoryIn(name="Bonus", type=CategoryType.income, parent_id=food.id)
        )
    with pytest.raises(ValidationError) as exc:
        categories.update(food.id, CategoryUpdate(parent_id=snacks.id))
    assert exc.value.code == "CATEGORY_CYCLE"

    assert categories.assert_category(salary.id, TransactionType.income).id == salary.id
    with pytest.raises(TypeMismatchError):
        categories.assert_category(salary.id, TransactionType.expense)
    # debt carries no category direction
    assert categories.assert_category(salary.id, TransactionType.debt).id == salary.id


def test_deleted_category_is_not_usable() -> None:
    session = make_session()
    categories = CategoryService(session)
    wallet = WalletService(session).create(WalletIn(name="A", balance=100))
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    categories.delete(food.id)

    with pytest.raises(NotFoundError):
        TransactionService(session).create(
            TransactionIn(
                wallet_id=wallet.id,
                type=TransactionType.expense,
                amount=10,
                category_id=food.id,
            )
        )
    categories.restore(food.id)
    TransactionService(session).create(
        TransactionIn(
            wallet_id=wallet.id,
            type=TransactionType.expense,
            amount=10,
            category_id=food.id,
        )
    )


def test_seed_defaults_is_idempotent() -> None:
    session = make_session()
    categories = CategoryService(session)
    categories.create(CategoryIn(name="coffee", type=CategoryType.expense))

    created = categories.seed_defaults()
    assert sum(c.type == CategoryType.expense for c in created) == 12
    assert sum(c.type == CategoryType.income for c in created) == 7
    assert len(categories.list_all(CategoryType.expense)) == 13
    assert {c.name for c in categories.list_all(CategoryType.income)} >= {"Salary", "Other"}

    assert categories.seed_defaults() == []
    assert len(categories.list_all()) == 20
    assert CategoryService(session, 2).seed_defaults() != []
