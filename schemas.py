from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    BillFrequency,
    BudgetPeriod,
    CategoryType,
    GroupRole,
    GroupTransactionScope,
    GroupTransactionType,
    TransactionSource,
    TransactionType,
    WalletType,
)


class WalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: WalletType = WalletType.cash
    currency: str = Field(default="VND", min_length=3, max_length=3)
    balance: int = 0


class WalletUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[WalletType] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None
    icon: str = "default"


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    parent_id: Optional[int] = None
    icon: Optional[str] = None


class TransactionIn(BaseModel):
    wallet_id: int
    type: TransactionType
    amount: int = 0
    category_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    occurred_at: Optional[datetime] = None
    note: str = Field(default="", max_length=500)
    counterparty_name: str = Field(default="", max_length=120)
    counterparty_contact: str = Field(default="", max_length=120)
    due_date: Optional[date] = None
    adjust_reason: str = Field(default="", max_length=200)
    adjust_to: Optional[int] = None


class TransactionUpdate(BaseModel):
    """Partial update; only fields the caller sets are applied."""

    model_config = ConfigDict(extra="forbid")

    wallet_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount: Optional[int] = None
    category_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    occurred_at: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=500)
    counterparty_name: Optional[str] = Field(default=None, max_length=120)
    counterparty_contact: Optional[str] = Field(default=None, max_length=120)
    due_date: Optional[date] = None
    adjust_reason: Optional[str] = Field(default=None, max_length=200)
    adjust_to: Optional[int] = None


class BudgetIn(BaseModel):
    name: str = Field(default="", max_length=120)
    category_id: int
    wallet_id: Optional[int] = None
    limit_amount: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: str = ""


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=120)
    category_id: Optional[int] = None
    wallet_id: Optional[int] = None
    limit_amount: Optional[int] = Field(default=None, ge=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: Optional[str] = None


class SavingGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    wallet_id: int
    target_amount: int = Field(..., ge=0)
    initial_amount: int = Field(default=0, ge=0)
    target_date: Optional[date] = None
    description: str = ""


class SavingGoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[date] = None
    description: Optional[str] = None


class GoalAmountIn(BaseModel):
    amount: int


class RecurringBillIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    wallet_id: int
    category_id: Optional[int] = None
    amount: int = Field(..., gt=0)
    type: CategoryType
    frequency: BillFrequency
    cron_rule: Optional[str] = None
    next_run: datetime
    ends_at: Optional[datetime] = None
    active: bool = True
    auto_create_transaction: bool = True
    description: str = ""


class RecurringBillUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[int] = Field(default=None, gt=0)
    type: Optional[CategoryType] = None
    frequency: Optional[BillFrequency] = None
    cron_rule: Optional[str] = None
    next_run: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    active: Optional[bool] = None
    auto_create_transaction: Optional[bool] = None
    description: Optional[str] = None


class GroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class GroupMemberIn(BaseModel):
    user_id: int
    role: GroupRole = GroupRole.member


class GroupWalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    currency: str = Field(default="VND", min_length=3, max_length=3)
    balance: int = 0


class GroupCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType


class GroupBudgetIn(BaseModel):
    name: str = Field(default="", max_length=120)
    category_id: int
    wallet_id: Optional[int] = None
    limit_amount: int = Field(..., ge=0)
    start_date: date
    end_date: date


class SplitIn(BaseModel):
    user_id: int
    amount: int


class GroupTransactionIn(BaseModel):
    type: GroupTransactionType
    amount: int
    occurred_at: datetime
    scope: GroupTransactionScope = GroupTransactionScope.group
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    from_wallet_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    note: str = Field(default="", max_length=500)
    paid_by: Optional[int] = None
    splits: list[SplitIn] = Field(default_factory=list)


class GroupTransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[GroupTransactionType] = None
    amount: Optional[int] = None
    occurred_at: Optional[datetime] = None
    scope: Optional[GroupTransactionScope] = None
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    from_wallet_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)
    paid_by: Optional[int] = None
    splits: Optional[list[SplitIn]] = None


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: WalletType
    currency: str
    initial_balance: int
    balance: int
    is_default: bool
    is_archived: bool


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wallet_id: int
    to_wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    type: TransactionType
    amount: int
    occurred_at: datetime
    note: str
    counterparty_name: str
    due_date: Optional[date] = None
    is_settled: bool
    adjust_reason: str
    adjust_from: Optional[int] = None
    adjust_to: Optional[int] = None
    source: TransactionSource
    saving_goal_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    wallet: Optional[WalletOut] = None
    to_wallet: Optional[WalletOut] = None
    category: Optional[CategoryOut] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category_id: int
    wallet_id: Optional[int] = None
    limit_amount: int
    period: BudgetPeriod
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    description: str


class SavingGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wallet_id: int
    name: str
    target_amount: int
    initial_amount: int
    current_amount: int
    is_active: bool
    is_completed: bool


class SplitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    amount: int


class GroupTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    created_by: int
    type: GroupTransactionType
    scope: GroupTransactionScope
    amount: int
    occurred_at: datetime
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    from_wallet_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    note: str
    paid_by: Optional[int] = None
    splits: list[SplitOut] = Field(default_factory=list)
