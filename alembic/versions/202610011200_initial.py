"""initial ledger schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


transaction_type = sa.Enum(
    "income", "expense", "debt", "loan", "transfer", "adjust", name="transactiontype"
)
category_type = sa.Enum("income", "expense", name="categorytype")
wallet_type = sa.Enum("cash", "bank", "credit", name="wallettype")
transaction_source = sa.Enum(
    "manual", "saving_goal", "recurring_bill", name="transactionsource"
)
budget_period = sa.Enum("weekly", "monthly", "yearly", "custom", name="budgetperiod")
bill_frequency = sa.Enum(
    "daily", "weekly", "biweekly", "monthly", "yearly", "custom", name="billfrequency"
)
group_role = sa.Enum("owner", "admin", "member", name="grouprole")
group_transaction_type = sa.Enum(
    "income", "expense", "transfer", name="grouptransactiontype"
)
group_transaction_scope = sa.Enum("group", "personal", name="grouptransactionscope")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", wallet_type, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("initial_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_wallets_user_default", "wallets", ["user_id", "is_default"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", category_type, nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("icon", sa.String(length=50), nullable=False, server_default="default"),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_categories_user_type", "categories", ["user_id", "type"])

    op.create_table(
        "saving_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount", sa.BigInteger(), nullable=False),
        sa.Column("initial_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("target_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("target_amount >= 0", name="ck_goal_target_positive"),
    )
    op.create_index(
        "ix_goals_user_wallet_active", "saving_goals", ["user_id", "wallet_id", "is_active"]
    )

    op.create_table(
        "recurring_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("type", category_type, nullable=False),
        sa.Column("frequency", bill_frequency, nullable=False),
        sa.Column("cron_rule", sa.String(length=120)),
        sa.Column("next_run", sa.DateTime(), nullable=False),
        sa.Column("last_paid_at", sa.DateTime()),
        sa.Column("ends_at", sa.DateTime()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_create_transaction", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_bill_amount_positive"),
    )
    op.create_index(
        "ix_bills_user_active_next", "recurring_bills", ["user_id", "active", "next_run"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("to_wallet_id", sa.Integer(), sa.ForeignKey("wallets.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("counterparty_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column(
            "counterparty_contact", sa.String(length=120), nullable=False, server_default=""
        ),
        sa.Column("due_date", sa.Date()),
        sa.Column("is_settled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("adjust_reason", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("adjust_from", sa.BigInteger()),
        sa.Column("adjust_to", sa.BigInteger()),
        sa.Column("source", transaction_source, nullable=False, server_default="manual"),
        sa.Column("saving_goal_id", sa.Integer(), sa.ForeignKey("saving_goals.id")),
        sa.Column("recurring_bill_id", sa.Integer(), sa.ForeignKey("recurring_bills.id")),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount >= 0 OR type = 'adjust'", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "occurred_at"])
    op.create_index("ix_transactions_wallet", "transactions", ["wallet_id"])
    op.create_index("ix_transactions_to_wallet", "transactions", ["to_wallet_id"])
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "occurred_at"]
    )
    op.create_index("ix_transactions_goal", "transactions", ["saving_goal_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id")),
        sa.Column("limit_amount", sa.BigInteger(), nullable=False),
        sa.Column("period", budget_period, nullable=False, server_default="monthly"),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("limit_amount >= 0", name="ck_budget_limit_positive"),
    )
    op.create_index(
        "ix_budgets_user_category", "budgets", ["user_id", "category_id", "start_date"]
    )

    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", group_role, nullable=False, server_default="member"),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )

    op.create_table(
        "group_wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("initial_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "name", name="uq_group_wallet_name"),
    )

    op.create_table(
        "group_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", category_type, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "group_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("group_categories.id"), nullable=False
        ),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("group_wallets.id")),
        sa.Column("limit_amount", sa.BigInteger(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("limit_amount >= 0", name="ck_group_budget_limit_positive"),
    )

    op.create_table(
        "group_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("scope", group_transaction_scope, nullable=False, server_default="group"),
        sa.Column("type", group_transaction_type, nullable=False),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("group_wallets.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("group_categories.id")),
        sa.Column("from_wallet_id", sa.Integer(), sa.ForeignKey("group_wallets.id")),
        sa.Column("to_wallet_id", sa.Integer(), sa.ForeignKey("group_wallets.id")),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        sa.Column("paid_by", sa.Integer()),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_group_txn_amount_positive"),
    )
    op.create_index(
        "ix_group_txn_group_date", "group_transactions", ["group_id", "occurred_at"]
    )
    op.create_index(
        "ix_group_txn_group_type_date",
        "group_transactions",
        ["group_id", "type", "occurred_at"],
    )

    op.create_table(
        "group_transaction_splits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("group_transactions.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_split_amount_positive"),
    )


def downgrade():
    op.drop_table("group_transaction_splits")
    op.drop_index("ix_group_txn_group_type_date", table_name="group_transactions")
    op.drop_index("ix_group_txn_group_date", table_name="group_transactions")
    op.drop_table("group_transactions")
    op.drop_table("group_budgets")
    op.drop_table("group_categories")
    op.drop_table("group_wallets")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_index("ix_budgets_user_category", table_name="budgets")
    op.drop_table("budgets")
    for name in (
        "ix_transactions_goal",
        "ix_transactions_user_type_date",
        "ix_transactions_to_wallet",
        "ix_transactions_wallet",
        "ix_transactions_user_date",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bills_user_active_next", table_name="recurring_bills")
    op.drop_table("recurring_bills")
    op.drop_index("ix_goals_user_wallet_active", table_name="saving_goals")
    op.drop_table("saving_goals")
    op.drop_index("ix_categories_user_type", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_wallets_user_default", table_name="wallets")
    op.drop_table("wallets")
