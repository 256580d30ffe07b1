"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("type", sa.Enum("CASH", "GOAL", name="accounttype"), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )
    op.create_index("ix_accounts_user_type", "accounts", ["user_id", "type", "id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("name_key", sa.String(length=100), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name_key", name="uq_category_user_name"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("merchant", sa.String(length=60), nullable=False),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column("frequency", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_post_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents IS NULL OR amount_cents >= 0",
            name="ck_subscription_amount_positive",
        ),
    )
    op.create_index(
        "ix_subscriptions_active_next", "subscriptions", ["is_active", "next_post_at"]
    )

    op.create_table(
        "category_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("custom_name", sa.String(length=100)),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "cash_flows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum("INCOME", "EXPENSE", name="cashflowtype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("description", sa.String(length=255)),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "subscription_id", "occurred_at", name="uq_cash_flow_subscription_period"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_cash_flow_amount_positive"),
    )
    op.create_index(
        "ix_cash_flows_user_occurred", "cash_flows", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_cash_flows_user_account", "cash_flows", ["user_id", "account_id"]
    )
    op.create_index(
        "ix_cash_flows_user_category_occurred",
        "cash_flows",
        ["user_id", "category_id", "occurred_at"],
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "saved_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("due_date", sa.Date()),
        sa.Column(
            "status",
            sa.Enum("IN_PROGRESS", "COMPLETED", name="goalstatus"),
            nullable=False,
        ),
        sa.Column("linked_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_goal_user_name"),
        sa.CheckConstraint("target_amount_cents >= 0", name="ck_goal_target_positive"),
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "from_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "to_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transfer_amount_positive"),
    )


def downgrade():
    op.drop_table("transfers")
    op.drop_table("goals")
    op.drop_index("ix_cash_flows_user_category_occurred", table_name="cash_flows")
    op.drop_index("ix_cash_flows_user_account", table_name="cash_flows")
    op.drop_index("ix_cash_flows_user_occurred", table_name="cash_flows")
    op.drop_table("cash_flows")
    op.drop_table("category_budgets")
    op.drop_index("ix_subscriptions_active_next", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_type", table_name="accounts")
    op.drop_table("accounts")
