"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _status_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "status",
            sa.Enum("active", "deleted", name="recordstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _txn_type() -> sa.Enum:
    return sa.Enum("income", "expense", "transfer", name="transactiontype")


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="categorytype"), nullable=False
        ),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_status_columns(),
    )
    op.create_index("ix_categories_user_type", "categories", ["user_id", "type"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.Integer()),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "cash",
                "bank",
                "credit_card",
                "e_wallet",
                "investment",
                "other",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "opening_balance", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "currency", sa.String(length=3), nullable=False, server_default="USD"
        ),
        sa.Column("icon", sa.String(length=50)),
        sa.Column("color", sa.String(length=9)),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_status_columns(),
    )
    op.create_index("ix_accounts_user_status", "accounts", ["user_id", "status"])

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("anchor_day", sa.Integer()),
        sa.Column("next_execution_date", sa.Date(), nullable=False),
        sa.Column("last_executed_at", sa.DateTime()),
        sa.Column(
            "is_paused", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_status_columns(),
        sa.CheckConstraint("amount > 0", name="ck_recurring_amount_positive"),
        sa.CheckConstraint("type <> 'transfer'", name="ck_recurring_not_transfer"),
    )
    op.create_index(
        "ix_recurring_due",
        "recurring_transactions",
        ["status", "is_paused", "next_execution_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("reference_number", sa.String(length=100)),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column(
            "transfer_to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")
        ),
        sa.Column(
            "recurring_source_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        *_status_columns(),
        sa.UniqueConstraint(
            "recurring_source_id",
            "occurrence_date",
            name="uq_txn_recurring_occurrence",
        ),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "transfer_to_account_id IS NULL OR transfer_to_account_id <> account_id",
            name="ck_transactions_transfer_distinct",
        ),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "transaction_date"]
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "transaction_date"],
    )
    op.create_index(
        "ix_transactions_user_type_date",
        "transactions",
        ["user_id", "type", "transaction_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        # Percent stored in hundredths: 8000 == 80.00%.
        sa.Column(
            "alert_threshold", sa.BigInteger(), nullable=False, server_default="8000"
        ),
        *_status_columns(),
        sa.CheckConstraint("amount >= 0", name="ck_budgets_amount_non_negative"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budgets_month_range"),
    )
    op.create_index("ix_budgets_user_period", "budgets", ["user_id", "year", "month"])


def downgrade() -> None:
    op.drop_index("ix_budgets_user_period", table_name="budgets")
    op.drop_table("budgets")
    for name in (
        "ix_transactions_user_type_date",
        "ix_transactions_user_category_date",
        "ix_transactions_account",
        "ix_transactions_user_date",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_due", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_index("ix_accounts_user_status", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ix_categories_user_type", table_name="categories")
    op.drop_table("categories")
