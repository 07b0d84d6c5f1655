"""Shared wallets, categories, budgets and transactions owned by a group.

Every operation checks membership first; mutating wallets, categories and
budgets additionally needs the owner or admin role.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from errors import (
    AuthorizationError,
    InvalidAmount,
    InvalidTransfer,
    NotFoundError,
    StateConflict,
    ValidationError,
    WalletNotFound,
)
from ledger import WalletLedger, effects_for
from models import (
    CategoryType,
    Group,
    GroupBudget,
    GroupCategory,
    GroupMember,
    GroupRole,
    GroupTransaction,
    GroupTransactionScope,
    GroupTransactionSplit,
    GroupTransactionType,
    GroupWallet,
)
from schemas import (
    GroupBudgetIn,
    GroupCategoryIn,
    GroupIn,
    GroupMemberIn,
    GroupTransactionIn,
    GroupTransactionUpdate,
    GroupWalletIn,
)
from services import assert_category, get_current_user_id
from unit_of_work import atomic

logger = logging.getLogger(__name__)

MANAGE_ROLES = (GroupRole.owner, GroupRole.admin)
MAX_PAGE_SIZE = 500


class GroupService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def create(self, data: GroupIn) -> Group:
        group = Group(name=data.name.strip(), owner_id=self.user_id)
        group.members.append(GroupMember(user_id=self.user_id, role=GroupRole.owner))
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        logger.info(f"group_created: id={group.id} owner_id={self.user_id}")
        return group

    def list_for_user(self) -> list[Group]:
        stmt = (
            select(Group)
            .join(GroupMember, GroupMember.group_id == Group.id)
            .where(GroupMember.user_id == self.user_id, Group.is_active.is_(True))
            .order_by(Group.created_at.desc(), Group.id.desc())
        )
        return self.session.scalars(stmt).all()

    def add_member(self, group_id: int, data: GroupMemberIn) -> GroupMember:
        self.require_manage_role(group_id)
        if data.role == GroupRole.owner:
            raise ValidationError("A group has exactly one owner", code="INVALID_ROLE")
        if self.membership(group_id, data.user_id) is not None:
            raise StateConflict("User is already a member", code="ALREADY_MEMBER")
        member = GroupMember(group_id=group_id, user_id=data.user_id, role=data.role)
        self.session.add(member)
        self.session.commit()
        self.session.refresh(member)
        return member

    def remove_member(self, group_id: int, user_id: int) -> None:
        self.require_manage_role(group_id)
        member = self.membership(group_id, user_id)
        if member is None:
            raise NotFoundError("Member not found", code="MEMBER_NOT_FOUND")
        if member.role == GroupRole.owner:
            raise StateConflict("Cannot remove the group owner", code="OWNER_REQUIRED")
        self.session.delete(member)
        self.session.commit()

    def members(self, group_id: int) -> list[GroupMember]:
        self.require_membership(group_id)
        stmt = (
            select(GroupMember)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.id)
        )
        return self.session.scalars(stmt).all()

    def membership(self, group_id: int, user_id: int) -> Optional[GroupMember]:
        return self.session.scalar(
            select(GroupMember).where(
                GroupMember.group_id == group_id, GroupMember.user_id == user_id
            )
        )

    def require_membership(self, group_id: int) -> GroupMember:
        group = self.session.get(Group, group_id)
        if not group or not group.is_active:
            raise NotFoundError("Group not found", code="GROUP_NOT_FOUND")
        member = self.membership(group_id, self.user_id)
        if member is None:
            raise AuthorizationError("You are not a member of this group", code="NOT_MEMBER")
        return member

    def require_manage_role(self, group_id: int) -> GroupMember:
        member = self.require_membership(group_id)
        if member.role not in MANAGE_ROLES:
            raise AuthorizationError(
                "Only the owner or an admin can do this", code="NO_PERMISSION"
            )
        return member


class _GroupScoped:
    def __init__(self, session: Session, group_id: int, user_id: Optional[int] = None) -> None:
        self.session = session
        self.group_id = group_id
        self.user_id = user_id or get_current_user_id()
        self.groups = GroupService(session, self.user_id)


class GroupWalletService(_GroupScoped):
    def list_all(self, include_inactive: bool = False) -> list[GroupWallet]:
        self.groups.require_membership(self.group_id)
        stmt = (
            select(GroupWallet)
            .where(GroupWallet.group_id == self.group_id)
            .order_by(GroupWallet.created_at, GroupWallet.id)
        )
        if not include_inactive:
            stmt = stmt.where(GroupWallet.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def create(self, data: GroupWalletIn) -> GroupWallet:
        self.groups.require_manage_role(self.group_id)
        name = data.name.strip()
        taken = self.session.scalar(
            select(GroupWallet.id).where(
                GroupWallet.group_id == self.group_id, GroupWallet.name == name
            )
        )
        if taken:
            raise ValidationError("Wallet name already exists", code="WALLET_NAME_TAKEN")
        wallet = GroupWallet(
            group_id=self.group_id,
            name=name,
            currency=data.currency.upper(),
            initial_balance=data.balance,
            balance=data.balance,
            created_by=self.user_id,
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def get(self, wallet_id: int) -> GroupWallet:
        wallet = self.session.scalar(
            select(GroupWallet)
            .where(GroupWallet.id == wallet_id, GroupWallet.group_id == self.group_id)
            .execution_options(populate_existing=True)
        )
        if not wallet:
            raise WalletNotFound("Group wallet not found")
        return wallet

    def assert_active(self, wallet_id: Optional[int], label: str = "Wallet") -> GroupWallet:
        if wallet_id is None:
            raise ValidationError(f"{label} is required", code="WALLET_REQUIRED")
        wallet = self.get(wallet_id)
        if not wallet.is_active:
            raise WalletNotFound(f"{label} is not active in this group")
        return wallet

    def disable(self, wallet_id: int) -> GroupWallet:
        self.groups.require_manage_role(self.group_id)
        wallet = self.get(wallet_id)
        wallet.is_active = False
        self.session.commit()
        return wallet

    def expected_balance(self, wallet_id: int) -> int:
        wallet = self.get(wallet_id)
        effects = self.session.execute(select(self._effect_sum(wallet_id))).scalar_one()
        return int(wallet.initial_balance + (effects or 0))

    def recalculate(self, wallet_id: int) -> GroupWallet:
        self.groups.require_manage_role(self.group_id)
        self.get(wallet_id)
        with atomic(self.session):
            WalletLedger(self.session, GroupWallet).reset(
                wallet_id, GroupWallet.initial_balance + self._effect_sum(wallet_id)
            )
        return self.get(wallet_id)

    @staticmethod
    def _effect_sum(wallet_id: int):
        effect = case(
            (
                and_(
                    GroupTransaction.wallet_id == wallet_id,
                    GroupTransaction.type == GroupTransactionType.income,
                ),
                GroupTransaction.amount,
            ),
            (
                and_(
                    GroupTransaction.wallet_id == wallet_id,
                    GroupTransaction.type == GroupTransactionType.expense,
                ),
                -GroupTransaction.amount,
            ),
            (
                and_(
                    GroupTransaction.from_wallet_id == wallet_id,
                    GroupTransaction.type == GroupTransactionType.transfer,
                ),
                -GroupTransaction.amount,
            ),
            (
                and_(
                    GroupTransaction.to_wallet_id == wallet_id,
                    GroupTransaction.type == GroupTransactionType.transfer,
                ),
                GroupTransaction.amount,
            ),
            else_=0,
        )
        return (
            select(func.coalesce(func.sum(effect), 0))
            .where(GroupTransaction.deleted_at.is_(None))
            .scalar_subquery()
        )


class GroupCategoryService(_GroupScoped):
    def list_all(self, type: Optional[CategoryType] = None) -> list[GroupCategory]:
        self.groups.require_membership(self.group_id)
        stmt = (
            select(GroupCategory)
            .where(
                GroupCategory.group_id == self.group_id,
                GroupCategory.is_active.is_(True),
            )
            .order_by(GroupCategory.type, GroupCategory.name)
        )
        if type:
            stmt = stmt.where(GroupCategory.type == type)
        return self.session.scalars(stmt).all()

    def create(self, data: GroupCategoryIn) -> GroupCategory:
        self.groups.require_manage_role(self.group_id)
        category = GroupCategory(
            group_id=self.group_id, name=data.name.strip(), type=data.type
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def disable(self, category_id: int) -> GroupCategory:
        self.groups.require_manage_role(self.group_id)
        category = self.assert_category(category_id)
        category.is_active = False
        self.session.commit()
        return category

    def assert_category(self, category_id: int, expected_type=None) -> GroupCategory:
        return assert_category(
            self.session, self.group_id, category_id, expected_type, model=GroupCategory
        )


class GroupBudgetService(_GroupScoped):
    def create(self, data: GroupBudgetIn) -> GroupBudget:
        self.groups.require_manage_role(self.group_id)
        GroupCategoryService(self.session, self.group_id, self.user_id).assert_category(
            data.category_id, CategoryType.expense
        )
        if data.wallet_id is not None:
            GroupWalletService(self.session, self.group_id, self.user_id).assert_active(
                data.wallet_id
            )
        if data.start_date > data.end_date:
            raise ValidationError("Start date must be before end date")
        budget = GroupBudget(group_id=self.group_id, **data.model_dump())
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def list_all(self) -> list[GroupBudget]:
        self.groups.require_membership(self.group_id)
        stmt = (
            select(GroupBudget)
            .where(GroupBudget.group_id == self.group_id, GroupBudget.is_active.is_(True))
            .order_by(GroupBudget.start_date.desc(), GroupBudget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> GroupBudget:
        budget = self.session.scalar(
            select(GroupBudget).where(
                GroupBudget.id == budget_id, GroupBudget.group_id == self.group_id
            )
        )
        if not budget:
            raise NotFoundError("Group budget not found", code="BUDGET_NOT_FOUND")
        return budget

    def disable(self, budget_id: int) -> GroupBudget:
        self.groups.require_manage_role(self.group_id)
        budget = self.get(budget_id)
        budget.is_active = False
        self.session.commit()
        return budget

    def compute_spent(self, budget_id: int) -> int:
        self.groups.require_membership(self.group_id)
        budget = self.get(budget_id)
        start = datetime.combine(budget.start_date, datetime.min.time())
        end = datetime.combine(budget.end_date, datetime.max.time())
        stmt = select(func.coalesce(func.sum(GroupTransaction.amount), 0)).where(
            GroupTransaction.group_id == self.group_id,
            GroupTransaction.deleted_at.is_(None),
            GroupTransaction.type == GroupTransactionType.expense,
            GroupTransaction.category_id == budget.category_id,
            GroupTransaction.occurred_at >= start,
            GroupTransaction.occurred_at <= end,
        )
        if budget.wallet_id is not None:
            stmt = stmt.where(GroupTransaction.wallet_id == budget.wallet_id)
        return int(self.session.execute(stmt).scalar_one() or 0)


@dataclass
class GroupTransactionFilters:
    type: Optional[GroupTransactionType] = None
    scope: Optional[GroupTransactionScope] = None
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    paid_by: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class GroupTransactionService(_GroupScoped):
    """Group ledger entries. Types are income, expense and transfer only.

    Income and expense move ``wallet_id``; a transfer debits ``from_wallet_id``
    and credits ``to_wallet_id``. Deleted group transactions are not restorable.
    """

    def __init__(self, session: Session, group_id: int, user_id: Optional[int] = None) -> None:
        super().__init__(session, group_id, user_id)
        self.ledger = WalletLedger(session, GroupWallet)
        self.wallets = GroupWalletService(session, group_id, self.user_id)
        self.categories = GroupCategoryService(session, group_id, self.user_id)

    def list(
        self,
        filters: Optional[GroupTransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GroupTransaction]:
        self.groups.require_membership(self.group_id)
        filters = filters or GroupTransactionFilters()
        stmt = (
            select(GroupTransaction)
            .options(selectinload(GroupTransaction.splits))
            .where(GroupTransaction.group_id == self.group_id)
            .order_by(GroupTransaction.occurred_at.desc(), GroupTransaction.id.desc())
            .offset(offset)
            .limit(min(limit, MAX_PAGE_SIZE))
        )
        if filters.type:
            stmt = stmt.where(GroupTransaction.type == filters.type)
        if filters.scope:
            stmt = stmt.where(GroupTransaction.scope == filters.scope)
        if filters.wallet_id:
            stmt = stmt.where(GroupTransaction.wallet_id == filters.wallet_id)
        if filters.category_id:
            stmt = stmt.where(GroupTransaction.category_id == filters.category_id)
        if filters.paid_by:
            stmt = stmt.where(GroupTransaction.paid_by == filters.paid_by)
        if filters.start:
            stmt = stmt.where(GroupTransaction.occurred_at >= filters.start)
        if filters.end:
            stmt = stmt.where(GroupTransaction.occurred_at <= filters.end)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: int) -> GroupTransaction:
        self.groups.require_membership(self.group_id)
        txn = self.session.scalar(
            select(GroupTransaction)
            .options(
                selectinload(GroupTransaction.splits),
                joinedload(GroupTransaction.wallet),
                joinedload(GroupTransaction.from_wallet),
                joinedload(GroupTransaction.to_wallet),
                joinedload(GroupTransaction.category),
            )
            .where(
                GroupTransaction.id == transaction_id,
                GroupTransaction.group_id == self.group_id,
            )
            .execution_options(populate_existing=True)
        )
        if not txn:
            raise NotFoundError("Group transaction not found", code="TRANSACTION_NOT_FOUND")
        return txn

    def create(self, data: GroupTransactionIn) -> GroupTransaction:
        self.groups.require_membership(self.group_id)
        state = data.model_dump()
        with atomic(self.session) as unit:
            state = self._validated(state)
            splits = state.pop("splits")
            txn = GroupTransaction(
                group_id=self.group_id, created_by=self.user_id, **state
            )
            txn.splits = [GroupTransactionSplit(**split) for split in splits]
            unit.add(txn)
            self.ledger.apply(self._effects(txn))
        logger.info(
            f"group_transaction_created: id={txn.id} group_id={self.group_id} "
            f"type={txn.type.value} amount={txn.amount}"
        )
        return self.get(txn.id)

    def update(self, transaction_id: int, data: GroupTransactionUpdate) -> GroupTransaction:
        self.groups.require_membership(self.group_id)
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session) as unit:
            txn = self._load(transaction_id)
            old_effects = self._effects(txn)
            state = self._state_of(txn)
            state.update(changes)
            state = self._validated(state)
            splits = state.pop("splits")

            self.ledger.revert(old_effects)
            undo = self._snapshot_with_splits(unit, txn)
            for field, value in state.items():
                setattr(txn, field, value)
            if "splits" in changes:
                txn.splits = [GroupTransactionSplit(**split) for split in splits]
            unit.step(undo, label=f"update group_transactions:{txn.id}")
            self.ledger.apply(self._effects(txn))
        logger.info(f"group_transaction_updated: id={transaction_id} fields={sorted(changes)}")
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        self.groups.require_membership(self.group_id)
        with atomic(self.session) as unit:
            txn = self._load(transaction_id)
            self.ledger.revert(self._effects(txn))
            undo = unit.snapshot(txn)
            txn.deleted_at = datetime.utcnow()
            unit.step(undo, label=f"delete group_transactions:{txn.id}")
        logger.info(f"group_transaction_deleted: id={transaction_id}")

    def _load(self, transaction_id: int) -> GroupTransaction:
        txn = self.session.scalar(
            select(GroupTransaction)
            .where(
                GroupTransaction.id == transaction_id,
                GroupTransaction.group_id == self.group_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not txn:
            raise NotFoundError("Group transaction not found", code="TRANSACTION_NOT_FOUND")
        return txn

    def _snapshot_with_splits(self, unit, txn: GroupTransaction) -> Callable[[], None]:
        restore_row = unit.snapshot(txn)
        old_splits = [(s.user_id, s.amount) for s in txn.splits]

        def restore() -> None:
            restore_row()
            current = self.session.get(GroupTransaction, txn.id)
            current.splits = [
                GroupTransactionSplit(user_id=user_id, amount=amount)
                for user_id, amount in old_splits
            ]

        return restore

    @staticmethod
    def _effects(txn: GroupTransaction):
        if txn.type == GroupTransactionType.transfer:
            return effects_for(txn.type, txn.from_wallet_id, txn.amount, txn.to_wallet_id)
        return effects_for(txn.type, txn.wallet_id, txn.amount)

    @staticmethod
    def _state_of(txn: GroupTransaction) -> dict:
        return {
            "type": txn.type,
            "amount": txn.amount,
            "occurred_at": txn.occurred_at,
            "scope": txn.scope,
            "wallet_id": txn.wallet_id,
            "category_id": txn.category_id,
            "from_wallet_id": txn.from_wallet_id,
            "to_wallet_id": txn.to_wallet_id,
            "note": txn.note,
            "paid_by": txn.paid_by,
            "splits": [{"user_id": s.user_id, "amount": s.amount} for s in txn.splits],
        }

    def _validated(self, state: dict) -> dict:
        txn_type = GroupTransactionType(state["type"])
        state["type"] = txn_type
        amount = state.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmount("Amount must be greater than 0", code="AMOUNT_MUST_BE_GT_0")
        if state.get("occurred_at") is None:
            raise ValidationError("Transaction date is required", code="INVALID_DATE")
        if state.get("note") is None:
            state["note"] = ""

        if txn_type == GroupTransactionType.transfer:
            from_id, to_id = state.get("from_wallet_id"), state.get("to_wallet_id")
            if from_id is None or to_id is None:
                raise InvalidTransfer(
                    "Transfer requires fromWalletId and toWalletId",
                    code="TRANSFER_WALLET_REQUIRED",
                )
            if from_id == to_id:
                raise InvalidTransfer(
                    "Cannot transfer within the same wallet", code="TRANSFER_WALLET_SAME"
                )
            self.wallets.assert_active(from_id, "Source wallet")
            self.wallets.assert_active(to_id, "Destination wallet")
            state["wallet_id"] = None
            state["category_id"] = None
        else:
            self.wallets.assert_active(state.get("wallet_id"))
            if state.get("category_id") is None:
                raise ValidationError("Category is required", code="CATEGORY_REQUIRED")
            self.categories.assert_category(state["category_id"], txn_type)
            state["from_wallet_id"] = None
            state["to_wallet_id"] = None

        if state.get("paid_by") is not None:
            self._require_member(state["paid_by"], "paid_by")
        splits = []
        for split in state.get("splits") or []:
            split = dict(split)
            if split["amount"] < 0:
                raise ValidationError(
                    "Split amounts cannot be negative", code="SPLIT_AMOUNT_INVALID"
                )
            self._require_member(split["user_id"], "split")
            splits.append(split)
        state["splits"] = splits
        return state

    def _require_member(self, user_id: int, field: str) -> None:
        if self.groups.membership(self.group_id, user_id) is None:
            raise ValidationError(
                f"{field} user is not a member of this group", code="NOT_GROUP_MEMBER"
            )
