"""initial budget schema

Revision ID: 202610171200
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610171200"
down_revision = None
branch_labels = None
depends_on = None

CATEGORY_TYPES = ("fixed", "variable", "savings")
TRANSACTION_TYPES = ("income", "expense", "savings")
ACCOUNT_TYPES = ("checking", "savings", "credit", "investment", "cash")


def upgrade():
    op.create_table(
        "monthly_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("total_budget_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fixed_budget_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "variable_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "savings_budget_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_budget_user_month"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "monthly_budget_id",
            sa.Integer(),
            sa.ForeignKey("monthly_budgets.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", sa.Enum(*CATEGORY_TYPES, name="categorytype"), nullable=False),
        sa.Column(
            "budget_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_budget_categories_budget", "budget_categories", ["monthly_budget_id"]
    )
    op.create_index("ix_budget_categories_user", "budget_categories", ["user_id"])

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "account_type",
            sa.Enum(*ACCOUNT_TYPES, name="accounttype"),
            nullable=False,
            server_default="checking",
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_bank_accounts_user_active", "bank_accounts", ["user_id", "is_active"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id"),
            nullable=False,
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column(
            "receiving_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")
        ),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "receiving_account_id IS NULL OR type = 'savings'",
            name="ck_transactions_receiving_savings_only",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_category", "transactions", ["category_id"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_receiving_account", "transactions", ["receiving_account_id"]
    )

    op.create_table(
        "account_transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "from_account_id",
            sa.Integer(),
            sa.ForeignKey("bank_accounts.id"),
            nullable=False,
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("transfer_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        sa.CheckConstraint(
            "from_account_id <> to_account_id", name="ck_transfers_distinct_accounts"
        ),
    )
    op.create_index("ix_account_transfers_from", "account_transfers", ["from_account_id"])
    op.create_index("ix_account_transfers_to", "account_transfers", ["to_account_id"])


def downgrade():
    op.drop_index("ix_account_transfers_to", table_name="account_transfers")
    op.drop_index("ix_account_transfers_from", table_name="account_transfers")
    op.drop_table("account_transfers")
    op.drop_index("ix_transactions_receiving_account", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bank_accounts_user_active", table_name="bank_accounts")
    op.drop_table("bank_accounts")
    op.drop_index("ix_budget_categories_user", table_name="budget_categories")
    op.drop_index("ix_budget_categories_budget", table_name="budget_categories")
    op.drop_table("budget_categories")
    op.drop_table("monthly_budgets")
