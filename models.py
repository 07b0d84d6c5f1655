from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base, SoftDeleteMixin


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    debt = "debt"
    loan = "loan"
    transfer = "transfer"
    adjust = "adjust"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class WalletType(str, Enum):
    cash = "cash"
    bank = "bank"
    credit = "credit"


class TransactionSource(str, Enum):
    manual = "manual"
    saving_goal = "saving_goal"
    recurring_bill = "recurring_bill"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


class BillFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"
    custom = "custom"


class GroupRole(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


class GroupTransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class GroupTransactionScope(str, Enum):
    group = "group"
    personal = "personal"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Wallet(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "wallets"
    owner_key: ClassVar[str] = "user_id"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[WalletType] = mapped_column(
        SAEnum(WalletType), nullable=False, default=WalletType.cash
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND")
    initial_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (Index("ix_wallets_user_default", "user_id", "is_default"),)


class Category(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "categories"
    owner_key: ClassVar[str] = "user_id"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    icon: Mapped[str] = mapped_column(String(50), nullable=False, default="default")

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id"
    )

    __table_args__ = (Index("ix_categories_user_type", "user_id", "type"),)


class Transaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    to_wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    # Magnitude for every type except adjust, where it is the signed correction.
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    counterparty_name: Mapped[str] = mapped_column(
        String(120), nullable=False, default=""
    )
    counterparty_contact: Mapped[str] = mapped_column(
        String(120), nullable=False, default=""
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    is_settled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    adjust_reason: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    adjust_from: Mapped[Optional[int]] = mapped_column(BigInteger)
    adjust_to: Mapped[Optional[int]] = mapped_column(BigInteger)

    source: Mapped[TransactionSource] = mapped_column(
        SAEnum(TransactionSource), nullable=False, default=TransactionSource.manual
    )
    saving_goal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("saving_goals.id")
    )
    recurring_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_bills.id")
    )

    wallet: Mapped["Wallet"] = relationship("Wallet", foreign_keys=[wallet_id])
    to_wallet: Mapped[Optional["Wallet"]] = relationship(
        "Wallet", foreign_keys=[to_wallet_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "occurred_at"),
        Index("ix_transactions_wallet", "wallet_id"),
        Index("ix_transactions_to_wallet", "to_wallet_id"),
        Index("ix_transactions_user_type_date", "user_id", "type", "occurred_at"),
        Index("ix_transactions_goal", "saving_goal_id"),
        CheckConstraint(
            "amount >= 0 OR type = 'adjust'", name="ck_transactions_amount_positive"
        ),
    )


class Budget(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    limit_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    category: Mapped["Category"] = relationship("Category")
    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet")

    __table_args__ = (
        CheckConstraint("limit_amount >= 0", name="ck_budget_limit_positive"),
        Index("ix_budgets_user_category", "user_id", "category_id", "start_date"),
    )


class SavingGoal(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "saving_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    initial_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    target_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    wallet: Mapped["Wallet"] = relationship("Wallet")

    __table_args__ = (
        CheckConstraint("target_amount >= 0", name="ck_goal_target_positive"),
        Index("ix_goals_user_wallet_active", "user_id", "wallet_id", "is_active"),
    )


class RecurringBill(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "recurring_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    frequency: Mapped[BillFrequency] = mapped_column(
        SAEnum(BillFrequency), nullable=False
    )
    cron_rule: Mapped[Optional[str]] = mapped_column(String(120))
    next_run: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_create_transaction: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    wallet: Mapped["Wallet"] = relationship("Wallet")
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bill_amount_positive"),
        Index("ix_bills_user_active_next", "user_id", "active", "next_run"),
    )


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    members: Mapped[list["GroupMember"]] = relationship(
        "GroupMember", back_populates="group"
    )


class GroupMember(Base, TimestampMixin):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[GroupRole] = mapped_column(
        SAEnum(GroupRole), nullable=False, default=GroupRole.member
    )

    group: Mapped["Group"] = relationship("Group", back_populates="members")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class GroupWallet(Base, TimestampMixin):
    __tablename__ = "group_wallets"
    owner_key: ClassVar[str] = "group_id"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND")
    initial_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_group_wallet_name"),
    )


class GroupCategory(Base, TimestampMixin):
    __tablename__ = "group_categories"
    owner_key: ClassVar[str] = "group_id"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class GroupBudget(Base, TimestampMixin):
    __tablename__ = "group_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    category_id: Mapped[int] = mapped_column(
        ForeignKey("group_categories.id"), nullable=False
    )
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("group_wallets.id"))
    limit_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("limit_amount >= 0", name="ck_group_budget_limit_positive"),
    )


class GroupTransaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "group_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id"), nullable=False)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    scope: Mapped[GroupTransactionScope] = mapped_column(
        SAEnum(GroupTransactionScope),
        nullable=False,
        default=GroupTransactionScope.group,
    )
    type: Mapped[GroupTransactionType] = mapped_column(
        SAEnum(GroupTransactionType), nullable=False
    )
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("group_wallets.id"))
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("group_categories.id")
    )
    from_wallet_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("group_wallets.id")
    )
    to_wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("group_wallets.id"))
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    paid_by: Mapped[Optional[int]] = mapped_column(Integer)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    wallet: Mapped[Optional["GroupWallet"]] = relationship(
        "GroupWallet", foreign_keys=[wallet_id]
    )
    from_wallet: Mapped[Optional["GroupWallet"]] = relationship(
        "GroupWallet", foreign_keys=[from_wallet_id]
    )
    to_wallet: Mapped[Optional["GroupWallet"]] = relationship(
        "GroupWallet", foreign_keys=[to_wallet_id]
    )
    category: Mapped[Optional["GroupCategory"]] = relationship("GroupCategory")
    splits: Mapped[list["GroupTransactionSplit"]] = relationship(
        "GroupTransactionSplit",
        back_populates="transaction",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_group_txn_group_date", "group_id", "occurred_at"),
        Index("ix_group_txn_group_type_date", "group_id", "type", "occurred_at"),
        CheckConstraint("amount >= 0", name="ck_group_txn_amount_positive"),
    )


class GroupTransactionSplit(Base):
    __tablename__ = "group_transaction_splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("group_transactions.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction: Mapped["GroupTransaction"] = relationship(
        "GroupTransaction", back_populates="splits"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_split_amount_positive"),
    )
