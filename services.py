from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from errors import (
    InvalidAmount,
    InvalidTransfer,
    InsufficientGoalBalance,
    NotFoundError,
    StateConflict,
    TypeMismatchError,
    ValidationError,
    WalletNotFound,
)
from ledger import WalletLedger, effects_for
from models import (
    Budget,
    Category,
    CategoryType,
    RecurringBill,
    SavingGoal,
    Transaction,
    TransactionSource,
    TransactionType,
    Wallet,
)
from periods import Period, budget_window
from recurrence import RecurringBillPayer, local_now
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    RecurringBillIn,
    RecurringBillUpdate,
    SavingGoalIn,
    SavingGoalUpdate,
    TransactionIn,
    TransactionUpdate,
    WalletIn,
    WalletUpdate,
)
from unit_of_work import atomic

logger = logging.getLogger(__name__)

DIRECTIONAL_TYPES = {"income", "expense"}
CREDIT_TYPES = [TransactionType.income, TransactionType.loan, TransactionType.adjust]
DEBIT_TYPES = [TransactionType.expense, TransactionType.debt, TransactionType.transfer]
NULLABLE_TRANSACTION_FIELDS = {"category_id", "to_wallet_id", "due_date", "adjust_to"}
NULLABLE_BUDGET_FIELDS = {"wallet_id", "start_date", "end_date"}

DEFAULT_CATEGORIES = [
    ("Food & drink", CategoryType.expense, "utensils"),
    ("Coffee", CategoryType.expense, "coffee"),
    ("Transport", CategoryType.expense, "car"),
    ("Shopping", CategoryType.expense, "shopping-bag"),
    ("Rent", CategoryType.expense, "home"),
    ("Utilities", CategoryType.expense, "zap"),
    ("Internet / Phone", CategoryType.expense, "smartphone"),
    ("Entertainment", CategoryType.expense, "gamepad-2"),
    ("Travel", CategoryType.expense, "plane"),
    ("Health", CategoryType.expense, "stethoscope"),
    ("Education", CategoryType.expense, "graduation-cap"),
    ("Gifts", CategoryType.expense, "gift"),
    ("Other", CategoryType.expense, "more-horizontal"),
    ("Salary", CategoryType.income, "briefcase"),
    ("Bonus", CategoryType.income, "party-popper"),
    ("Side job", CategoryType.income, "laptop"),
    ("Business", CategoryType.income, "store"),
    ("Investment", CategoryType.income, "trending-up"),
    ("Refunds", CategoryType.income, "credit-card"),
    ("Other", CategoryType.income, "plus"),
]


def get_current_user_id() -> int:
    return 1


def _type_key(value) -> Optional[str]:
    return getattr(value, "value", value)


def assert_category(
    session: Session,
    owner_id: int,
    category_id: int,
    expected_type=None,
    *,
    model=Category,
):
    """Return the owner's category or raise.

    The direction check only applies to income/expense; debt, loan, transfer
    and adjust carry no category direction.
    """
    stmt = select(model).where(
        model.id == category_id, getattr(model, model.owner_key) == owner_id
    )
    if hasattr(model, "is_active"):
        stmt = stmt.where(model.is_active.is_(True))
    category = session.scalar(stmt)
    if category is None:
        raise NotFoundError("Category not found", code="CATEGORY_NOT_FOUND")
    expected = _type_key(expected_type)
    if expected in DIRECTIONAL_TYPES and _type_key(category.type) != expected:
        raise TypeMismatchError("Category type mismatch")
    return category


def wallet_effect_sum(wallet_id: int):
    """Scalar subquery: signed sum of active transaction effects on a wallet."""
    source_effect = case(
        (
            and_(Transaction.wallet_id == wallet_id, Transaction.type.in_(CREDIT_TYPES)),
            Transaction.amount,
        ),
        (
            and_(Transaction.wallet_id == wallet_id, Transaction.type.in_(DEBIT_TYPES)),
            -Transaction.amount,
        ),
        else_=0,
    )
    incoming = case(
        (
            and_(
                Transaction.to_wallet_id == wallet_id,
                Transaction.type == TransactionType.transfer,
            ),
            Transaction.amount,
        ),
        else_=0,
    )
    return (
        select(func.coalesce(func.sum(source_effect + incoming), 0))
        .where(
            Transaction.deleted_at.is_(None),
            or_(
                Transaction.wallet_id == wallet_id,
                Transaction.to_wallet_id == wallet_id,
            ),
        )
        .scalar_subquery()
    )


class WalletService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = WalletLedger(session)

    def list_all(self, include_archived: bool = True) -> list[Wallet]:
        stmt = (
            select(Wallet)
            .where(Wallet.user_id == self.user_id)
            .order_by(Wallet.is_default.desc(), Wallet.created_at.desc(), Wallet.id.desc())
        )
        if not include_archived:
            stmt = stmt.where(Wallet.is_archived.is_(False))
        return self.session.scalars(stmt).all()

    def get(self, wallet_id: int, *, include_deleted: bool = False) -> Wallet:
        stmt = (
            select(Wallet)
            .where(Wallet.id == wallet_id, Wallet.user_id == self.user_id)
            .execution_options(include_deleted=include_deleted, populate_existing=True)
        )
        wallet = self.session.scalar(stmt)
        if not wallet:
            raise WalletNotFound("Wallet not found or does not belong to you")
        return wallet

    def create(self, data: WalletIn) -> Wallet:
        name = data.name.strip()
        existing = self.session.scalar(
            select(Wallet.id).where(
                Wallet.user_id == self.user_id,
                func.lower(Wallet.name) == name.lower(),
            )
        )
        if existing:
            raise ValidationError(
                "Wallet name already exists. Please try another name.",
                code="WALLET_NAME_TAKEN",
            )
        has_default = self.session.scalar(
            select(func.count(Wallet.id)).where(
                Wallet.user_id == self.user_id,
                Wallet.is_default.is_(True),
                Wallet.is_archived.is_(False),
            )
        )
        wallet = Wallet(
            user_id=self.user_id,
            name=name,
            type=data.type,
            currency=data.currency.upper(),
            initial_balance=data.balance,
            balance=data.balance,
            is_default=not has_default,
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        logger.info(f"wallet_created: id={wallet.id} user_id={self.user_id}")
        return wallet

    def update(self, wallet_id: int, data: WalletUpdate) -> Wallet:
        wallet = self.get(wallet_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        if "currency" in changes:
            changes["currency"] = changes["currency"].upper()
        for field, value in changes.items():
            setattr(wallet, field, value)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def set_default(self, wallet_id: int) -> Wallet:
        wallet = self.get(wallet_id)
        if wallet.is_archived:
            raise StateConflict(
                "Archived wallets cannot be the default", code="WALLET_ARCHIVED"
            )
        self._make_default(wallet_id)
        self.session.commit()
        return self.get(wallet_id)

    def archive(self, wallet_id: int) -> Wallet:
        wallet = self.get(wallet_id)
        was_default = wallet.is_default
        wallet.is_archived = True
        wallet.is_default = False
        self.session.flush()
        if was_default:
            successor = self.session.scalar(
                select(Wallet.id)
                .where(
                    Wallet.user_id == self.user_id,
                    Wallet.is_archived.is_(False),
                    Wallet.id != wallet_id,
                )
                .order_by(Wallet.created_at, Wallet.id)
                .limit(1)
            )
            if successor is not None:
                self._make_default(successor)
        self.session.commit()
        return self.get(wallet_id)

    def unarchive(self, wallet_id: int) -> Wallet:
        wallet = self.get(wallet_id)
        wallet.is_archived = False
        self.session.flush()
        has_default = self.session.scalar(
            select(func.count(Wallet.id)).where(
                Wallet.user_id == self.user_id,
                Wallet.is_default.is_(True),
                Wallet.is_archived.is_(False),
            )
        )
        if not has_default:
            self._make_default(wallet_id)
        self.session.commit()
        return self.get(wallet_id)

    def delete(self, wallet_id: int) -> None:
        wallet = self.get(wallet_id)
        if wallet.is_default:
            raise StateConflict(
                "Cannot delete default wallet", code="WALLET_IS_DEFAULT"
            )
        wallet.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, wallet_id: int) -> Wallet:
        wallet = self.get(wallet_id, include_deleted=True)
        if wallet.deleted_at is None:
            raise StateConflict("Wallet is not deleted", code="NOT_DELETED")
        wallet.deleted_at = None
        self.session.commit()
        return self.get(wallet_id)

    def total_balance(self) -> int:
        stmt = select(func.coalesce(func.sum(Wallet.balance), 0)).where(
            Wallet.user_id == self.user_id,
            Wallet.is_archived.is_(False),
            Wallet.deleted_at.is_(None),
        )
        return int(self.session.execute(stmt).scalar_one())

    def expected_balance(self, wallet_id: int) -> int:
        wallet = self.get(wallet_id)
        effects = self.session.execute(select(wallet_effect_sum(wallet_id))).scalar_one()
        return int(wallet.initial_balance + (effects or 0))

    def recalculate_balance(self, wallet_id: int) -> Wallet:
        self.get(wallet_id)
        with atomic(self.session):
            self.ledger.reset(
                wallet_id, Wallet.initial_balance + wallet_effect_sum(wallet_id)
            )
        return self.get(wallet_id)

    def _make_default(self, wallet_id: int) -> None:
        # One statement so concurrent calls always leave exactly one default.
        self.session.execute(
            update(Wallet)
            .where(Wallet.user_id == self.user_id, Wallet.deleted_at.is_(None))
            .values(is_default=case((Wallet.id == wallet_id, True), else_=False))
            .execution_options(synchronize_session="fetch")
        )


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int, *, include_deleted: bool = False) -> Category:
        category = self.session.scalar(
            select(Category)
            .where(Category.id == category_id, Category.user_id == self.user_id)
            .execution_options(include_deleted=include_deleted)
        )
        if not category:
            raise NotFoundError("Category not found", code="CATEGORY_NOT_FOUND")
        return category

    def assert_category(self, category_id: int, expected_type=None) -> Category:
        return assert_category(self.session, self.user_id, category_id, expected_type)

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValidationError(
                "Category name already exists. Please try another name.",
                code="CATEGORY_NAME_TAKEN",
            )
        if data.parent_id is not None:
            self._check_parent(None, data.parent_id, data.type)
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            parent_id=data.parent_id,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def seed_defaults(self) -> list[Category]:
        """Create the starter categories the user does not already have.

        Names are matched case-insensitively within a type, so running this
        twice creates nothing the second time.
        """
        taken = {
            (type, name.lower())
            for type, name in self.session.execute(
                select(Category.type, Category.name)
                .where(Category.user_id == self.user_id)
                .execution_options(include_deleted=True)
            )
        }
        created = []
        for name, type, icon in DEFAULT_CATEGORIES:
            if (type, name.lower()) in taken:
                continue
            created.append(
                Category(user_id=self.user_id, name=name, type=type, icon=icon)
            )
        if created:
            self.session.add_all(created)
            self.session.commit()
        logger.info(f"default_categories_seeded: user_id={self.user_id} created={len(created)}")
        return created

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if "parent_id" in changes and changes["parent_id"] is not None:
            self._check_parent(category.id, changes["parent_id"], category.type)
        if changes.get("name"):
            changes["name"] = changes["name"].strip()
        for field, value in changes.items():
            if field == "name" and value is None:
                continue
            setattr(category, field, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        category.deleted_at = datetime.utcnow()
        self.session.commit()

    def restore(self, category_id: int) -> Category:
        category = self.get(category_id, include_deleted=True)
        category.deleted_at = None
        self.session.commit()
        return category

    def _check_parent(
        self, category_id: Optional[int], parent_id: int, type: CategoryType
    ) -> None:
        parent = self.get(parent_id)
        if parent.type != type:
            raise TypeMismatchError("Parent category must have the same type")
        seen: set[int] = set()
        current: Optional[Category] = parent
        while current is not None:
            if category_id is not None and current.id == category_id:
                raise ValidationError(
                    "Category hierarchy cannot contain a cycle", code="CATEGORY_CYCLE"
                )
            if current.id in seen:
                raise ValidationError(
                    "Category hierarchy cannot contain a cycle", code="CATEGORY_CYCLE"
                )
            seen.add(current.id)
            current = current.parent


@dataclass
class TransactionFilters:
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    is_settled: Optional[bool] = None


class TransactionService:
    """Personal transactions and their wallet effects.

    Every mutating call runs inside one unit of work: the row write and the
    balance deltas commit together or not at all. Validation always happens
    before the first write.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = WalletLedger(session)

    def create(
        self,
        data: TransactionIn,
        *,
        source: TransactionSource = TransactionSource.manual,
        saving_goal_id: Optional[int] = None,
        recurring_bill_id: Optional[int] = None,
    ) -> Transaction:
        state = data.model_dump()
        adjust_to = state.pop("adjust_to")
        if state["occurred_at"] is None:
            state["occurred_at"] = local_now()
        with atomic(self.session) as unit:
            state = self._validated(state, adjust_to=adjust_to)
            txn = Transaction(
                user_id=self.user_id,
                source=source,
                saving_goal_id=saving_goal_id,
                recurring_bill_id=recurring_bill_id,
                **state,
            )
            unit.add(txn)
            self.ledger.apply(self._effects(txn))
        logger.info(
            f"transaction_created: id={txn.id} wallet_id={txn.wallet_id} "
            f"type={txn.type.value} amount={txn.amount}"
        )
        return self.get(txn.id)

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.wallet),
                joinedload(Transaction.to_wallet),
                joinedload(Transaction.category),
            )
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(include_deleted=include_deleted, populate_existing=True)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field in NULLABLE_TRANSACTION_FIELDS
        }
        adjust_to = changes.pop("adjust_to", None)
        with atomic(self.session) as unit:
            txn = self._load(transaction_id, for_update=True)
            old_effects = self._effects(txn)
            state = self._state_of(txn)
            state.update(changes)
            state = self._validated(state, adjust_to=adjust_to, prior=old_effects)

            self.ledger.revert(old_effects)
            undo = unit.snapshot(txn)
            for field, value in state.items():
                setattr(txn, field, value)
            unit.step(undo, label=f"update transactions:{txn.id}")
            self.ledger.apply(self._effects(txn))
            if txn.saving_goal_id:
                SavingGoalService(self.session, self.user_id).sync_progress(
                    txn.saving_goal_id
                )
        logger.info(f"transaction_updated: id={txn.id} fields={sorted(changes)}")
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session) as unit:
            txn = self._load(transaction_id, for_update=True)
            self.ledger.revert(self._effects(txn))
            undo = unit.snapshot(txn)
            txn.deleted_at = datetime.utcnow()
            unit.step(undo, label=f"delete transactions:{txn.id}")
            if txn.saving_goal_id:
                SavingGoalService(self.session, self.user_id).sync_progress(
                    txn.saving_goal_id
                )
        logger.info(f"transaction_deleted: id={transaction_id}")

    def restore(self, transaction_id: int) -> Transaction:
        with atomic(self.session) as unit:
            txn = self._load(transaction_id, for_update=True, include_deleted=True)
            if txn.deleted_at is None:
                raise StateConflict("Transaction is not deleted", code="NOT_DELETED")
            self._wallet(txn.wallet_id)
            if txn.to_wallet_id is not None:
                self._wallet(txn.to_wallet_id, "Destination wallet")
            undo = unit.snapshot(txn)
            txn.deleted_at = None
            unit.step(undo, label=f"restore transactions:{txn.id}")
            self.ledger.apply(self._effects(txn))
            if txn.saving_goal_id:
                SavingGoalService(self.session, self.user_id).sync_progress(
                    txn.saving_goal_id
                )
        logger.info(f"transaction_restored: id={transaction_id}")
        return self.get(transaction_id)

    def settle(self, transaction_id: int) -> Transaction:
        txn = self._load(transaction_id)
        if txn.type not in (TransactionType.debt, TransactionType.loan):
            raise ValidationError(
                "Only applicable for debt or loan", code="NOT_DEBT_OR_LOAN"
            )
        txn.is_settled = True
        self.session.commit()
        return self.get(transaction_id)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.wallet),
                joinedload(Transaction.to_wallet),
                joinedload(Transaction.category),
            )
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.wallet_id:
            stmt = stmt.where(
                or_(
                    Transaction.wallet_id == filters.wallet_id,
                    Transaction.to_wallet_id == filters.wallet_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.start:
            stmt = stmt.where(Transaction.occurred_at >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.occurred_at <= filters.end)
        if filters.is_settled is not None:
            stmt = stmt.where(Transaction.is_settled.is_(filters.is_settled))
        return self.session.scalars(stmt).unique().all()

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.deleted_at.isnot(None)
            )
            .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
            .limit(limit)
            .execution_options(include_deleted=True)
        )
        return self.session.scalars(stmt).all()

    def _load(
        self,
        transaction_id: int,
        *,
        for_update: bool = False,
        include_deleted: bool = False,
    ) -> Transaction:
        stmt = (
            select(Transaction)
            .where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
            .execution_options(include_deleted=include_deleted, populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
        return txn

    def _wallet(self, wallet_id: Optional[int], label: str = "Wallet") -> Wallet:
        if wallet_id is None:
            raise ValidationError(f"{label} is required", code="WALLET_REQUIRED")
        wallet = self.session.scalar(
            select(Wallet).where(Wallet.id == wallet_id, Wallet.user_id == self.user_id)
        )
        if not wallet:
            raise WalletNotFound(f"{label} not found or does not belong to you")
        return wallet

    @staticmethod
    def _effects(txn: Transaction):
        return effects_for(txn.type, txn.wallet_id, txn.amount, txn.to_wallet_id)

    @staticmethod
    def _state_of(txn: Transaction) -> dict:
        return {
            "wallet_id": txn.wallet_id,
            "to_wallet_id": txn.to_wallet_id,
            "category_id": txn.category_id,
            "type": txn.type,
            "amount": txn.amount,
            "occurred_at": txn.occurred_at,
            "note": txn.note,
            "counterparty_name": txn.counterparty_name,
            "counterparty_contact": txn.counterparty_contact,
            "due_date": txn.due_date,
            "adjust_reason": txn.adjust_reason,
        }

    def _validated(
        self, state: dict, *, adjust_to: Optional[int] = None, prior=()
    ) -> dict:
        txn_type = TransactionType(state["type"])
        state["type"] = txn_type
        wallet = self._wallet(state["wallet_id"])

        if txn_type in (TransactionType.transfer, TransactionType.adjust):
            state["category_id"] = None
        elif state.get("category_id") is not None:
            assert_category(self.session, self.user_id, state["category_id"], txn_type)

        if txn_type == TransactionType.transfer:
            to_wallet_id = state.get("to_wallet_id")
            if to_wallet_id is None:
                raise InvalidTransfer(
                    "Transfer requires toWalletId", code="TRANSFER_WALLET_REQUIRED"
                )
            if to_wallet_id == wallet.id:
                raise InvalidTransfer(
                    "Cannot transfer within the same wallet", code="TRANSFER_WALLET_SAME"
                )
            self._wallet(to_wallet_id, "Destination wallet")
        else:
            state["to_wallet_id"] = None

        amount = state.get("amount")
        if txn_type == TransactionType.adjust:
            if not (state.get("adjust_reason") or "").strip():
                raise ValidationError("Adjust requires a reason", code="ADJUST_REASON_REQUIRED")
            # Balance the adjustment starts from, excluding this transaction's own effect.
            base = self.ledger.balance_of(wallet.id) - sum(
                e.delta for e in prior if e.wallet_id == wallet.id
            )
            if adjust_to is not None:
                amount = adjust_to - base
            if not isinstance(amount, int):
                raise InvalidAmount("Adjust requires an amount or a target balance")
            state["amount"] = amount
            state["adjust_from"] = base
            state["adjust_to"] = base + amount
        else:
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise InvalidAmount("Amount must be a positive number")
            state["adjust_reason"] = ""
            state["adjust_from"] = None
            state["adjust_to"] = None

        if state.get("occurred_at") is None:
            raise ValidationError("Transaction date is required", code="INVALID_DATE")
        return state


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: BudgetIn) -> Budget:
        assert_category(
            self.session, self.user_id, data.category_id, CategoryType.expense
        )
        if data.wallet_id is not None:
            WalletService(self.session, self.user_id).get(data.wallet_id)
        budget_window(data.period, data.start_date, data.end_date)
        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            category_id=data.category_id,
            wallet_id=data.wallet_id,
            limit_amount=data.limit_amount,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
            description=data.description,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget)
            .options(joinedload(Budget.category), joinedload(Budget.wallet))
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if not budget:
            raise NotFoundError("Budget not found", code="BUDGET_NOT_FOUND")
        return budget

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category), joinedload(Budget.wallet))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        """Apply a partial update. An explicit ``wallet_id=None`` clears the wallet."""
        budget = self.get(budget_id)
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field in NULLABLE_BUDGET_FIELDS
        }
        if not changes:
            raise ValidationError("No update data provided", code="EMPTY_UPDATE")
        if "category_id" in changes:
            assert_category(
                self.session, self.user_id, changes["category_id"], CategoryType.expense
            )
        if changes.get("wallet_id") is not None:
            WalletService(self.session, self.user_id).get(changes["wallet_id"])
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        budget_window(
            changes.get("period", budget.period),
            changes.get("start_date", budget.start_date),
            changes.get("end_date", budget.end_date),
        )
        for field, value in changes.items():
            setattr(budget, field, value)
        self.session.commit()
        logger.info(f"budget_updated: id={budget_id} fields={sorted(changes)}")
        return self.get(budget_id)

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        budget.deleted_at = datetime.utcnow()
        self.session.commit()

    def window(self, budget: Budget, *, today: Optional[date] = None) -> Period:
        return budget_window(
            budget.period, budget.start_date, budget.end_date, today=today
        )

    def compute_spent(self, budget: Budget, *, today: Optional[date] = None) -> int:
        start, end = self.window(budget, today=today).bounds()
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
            Transaction.type == TransactionType.expense,
            Transaction.category_id == budget.category_id,
            Transaction.occurred_at >= start,
            Transaction.occurred_at < end,
        )
        if budget.wallet_id is not None:
            stmt = stmt.where(Transaction.wallet_id == budget.wallet_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def progress(self, budget_id: int, *, today: Optional[date] = None) -> dict[str, object]:
        budget = self.get(budget_id)
        spent = self.compute_spent(budget, today=today)
        window = self.window(budget, today=today)
        percent = (spent / budget.limit_amount * 100) if budget.limit_amount else 0.0
        return {
            "budget_id": budget.id,
            "start_date": window.start,
            "end_date": window.end,
            "limit_amount": budget.limit_amount,
            "spent": spent,
            "remaining": budget.limit_amount - spent,
            "percent": percent,
            "is_exceeded": spent > budget.limit_amount,
        }


class SavingGoalService:
    """Saving goals backed by tagged wallet transactions.

    A deposit is an expense on the goal's wallet and a withdrawal an income;
    ``current_amount`` is recomputed from those transactions in the same unit
    of work that writes them.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: SavingGoalIn) -> SavingGoal:
        WalletService(self.session, self.user_id).get(data.wallet_id)
        goal = SavingGoal(
            user_id=self.user_id,
            wallet_id=data.wallet_id,
            name=data.name.strip(),
            target_amount=data.target_amount,
            initial_amount=data.initial_amount,
            current_amount=data.initial_amount,
            target_date=data.target_date,
            description=data.description,
        )
        self._refresh_flags(goal)
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def get(self, goal_id: int) -> SavingGoal:
        goal = self.session.scalar(
            select(SavingGoal)
            .options(joinedload(SavingGoal.wallet))
            .where(SavingGoal.id == goal_id, SavingGoal.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if not goal:
            raise NotFoundError("Saving goal not found", code="GOAL_NOT_FOUND")
        return goal

    def list_all(self, is_active: Optional[bool] = None) -> list[SavingGoal]:
        stmt = (
            select(SavingGoal)
            .where(SavingGoal.user_id == self.user_id)
            .order_by(SavingGoal.created_at.desc(), SavingGoal.id.desc())
        )
        if is_active is not None:
            stmt = stmt.where(SavingGoal.is_active.is_(is_active))
        return self.session.scalars(stmt).all()

    def update(self, goal_id: int, data: SavingGoalUpdate) -> SavingGoal:
        goal = self.get(goal_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if field in ("name", "target_amount") and value is None:
                continue
            setattr(goal, field, value)
        self._refresh_flags(goal)
        self.session.commit()
        return self.get(goal_id)

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        goal.deleted_at = datetime.utcnow()
        self.session.commit()

    def deposit(
        self, goal_id: int, amount: int, *, occurred_at: Optional[datetime] = None
    ) -> SavingGoal:
        self._check_amount(amount)
        with atomic(self.session):
            goal = self.get(goal_id)
            self._post(goal, TransactionType.expense, amount, occurred_at, "deposit")
            self.sync_progress(goal.id)
        logger.info(f"goal_deposit: id={goal_id} amount={amount}")
        return self.get(goal_id)

    def withdraw(
        self, goal_id: int, amount: int, *, occurred_at: Optional[datetime] = None
    ) -> SavingGoal:
        self._check_amount(amount)
        with atomic(self.session):
            goal = self.get(goal_id)
            available = self._computed_amount(goal)
            if available < amount:
                raise InsufficientGoalBalance(
                    "Cannot withdraw more than current amount"
                )
            self._post(goal, TransactionType.income, amount, occurred_at, "withdrawal")
            self.sync_progress(goal.id)
        logger.info(f"goal_withdraw: id={goal_id} amount={amount}")
        return self.get(goal_id)

    def sync_progress(self, goal_id: int) -> SavingGoal:
        with atomic(self.session) as unit:
            goal = self.session.scalar(
                select(SavingGoal)
                .where(SavingGoal.id == goal_id)
                .execution_options(include_deleted=True, populate_existing=True)
            )
            if goal is None:
                raise NotFoundError("Saving goal not found", code="GOAL_NOT_FOUND")
            undo = unit.snapshot(goal)
            goal.current_amount = self._computed_amount(goal)
            self._refresh_flags(goal)
            unit.step(undo, label=f"sync saving_goals:{goal.id}")
        return goal

    def _computed_amount(self, goal: SavingGoal) -> int:
        net = case(
            (Transaction.type == TransactionType.expense, Transaction.amount),
            (Transaction.type == TransactionType.income, -Transaction.amount),
            else_=0,
        )
        stmt = select(func.coalesce(func.sum(net), 0)).where(
            Transaction.saving_goal_id == goal.id,
            Transaction.deleted_at.is_(None),
        )
        self.session.flush()
        return int(goal.initial_amount + (self.session.execute(stmt).scalar_one() or 0))

    def _post(
        self,
        goal: SavingGoal,
        txn_type: TransactionType,
        amount: int,
        occurred_at: Optional[datetime],
        label: str,
    ) -> Transaction:
        return TransactionService(self.session, self.user_id).create(
            TransactionIn(
                wallet_id=goal.wallet_id,
                type=txn_type,
                amount=amount,
                occurred_at=occurred_at,
                note=f"Saving goal {label}: {goal.name}",
            ),
            source=TransactionSource.saving_goal,
            saving_goal_id=goal.id,
        )

    @staticmethod
    def _check_amount(amount) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount("Amount must be a positive number")

    @staticmethod
    def _refresh_flags(goal: SavingGoal) -> None:
        completed = goal.current_amount >= goal.target_amount
        goal.is_completed = completed
        goal.is_active = not completed


class RecurringBillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, bill_id: int) -> RecurringBill:
        bill = self.session.scalar(
            select(RecurringBill)
            .options(joinedload(RecurringBill.wallet), joinedload(RecurringBill.category))
            .where(RecurringBill.id == bill_id, RecurringBill.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if not bill:
            raise NotFoundError("Recurring bill not found", code="BILL_NOT_FOUND")
        return bill

    def list_all(
        self, active: Optional[bool] = None, type: Optional[CategoryType] = None
    ) -> list[RecurringBill]:
        stmt = (
            select(RecurringBill)
            .where(RecurringBill.user_id == self.user_id)
            .order_by(RecurringBill.next_run, RecurringBill.id)
        )
        if active is not None:
            stmt = stmt.where(RecurringBill.active.is_(active))
        if type:
            stmt = stmt.where(RecurringBill.type == type)
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringBillIn) -> RecurringBill:
        self._check_refs(data.wallet_id, data.category_id, data.type)
        if data.ends_at and data.ends_at < data.next_run:
            raise ValidationError(
                "ends_at must be on or after next_run", code="INVALID_ENDS_AT"
            )
        bill = RecurringBill(user_id=self.user_id, **data.model_dump())
        bill.name = bill.name.strip()
        self.session.add(bill)
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def update(self, bill_id: int, data: RecurringBillUpdate) -> RecurringBill:
        bill = self.get(bill_id)
        changes = data.model_dump(exclude_unset=True)
        wallet_id = changes.get("wallet_id") or bill.wallet_id
        category_id = changes.get("category_id", bill.category_id)
        bill_type = changes.get("type") or bill.type
        self._check_refs(wallet_id, category_id, bill_type)
        next_run = changes.get("next_run") or bill.next_run
        ends_at = changes.get("ends_at", bill.ends_at)
        if ends_at and ends_at < next_run:
            raise ValidationError(
                "ends_at must be on or after next_run", code="INVALID_ENDS_AT"
            )
        for field, value in changes.items():
            if value is None and field not in ("category_id", "cron_rule", "ends_at"):
                continue
            setattr(bill, field, value)
        self.session.commit()
        return self.get(bill_id)

    def delete(self, bill_id: int) -> None:
        bill = self.get(bill_id)
        bill.deleted_at = datetime.utcnow()
        self.session.commit()

    def pay(self, bill_id: int, now: Optional[datetime] = None) -> Transaction:
        return RecurringBillPayer(self.session, self.user_id).pay(bill_id, now=now)

    def pay_due(self, now: Optional[datetime] = None) -> int:
        return RecurringBillPayer.pay_due(self.session, now=now)

    def _check_refs(
        self, wallet_id: int, category_id: Optional[int], bill_type: CategoryType
    ) -> None:
        WalletService(self.session, self.user_id).get(wallet_id)
        if category_id is not None:
            assert_category(self.session, self.user_id, category_id, bill_type)
