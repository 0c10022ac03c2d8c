"""credit_ledger_schema

Revision ID: 0001_credit_ledger
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_credit_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_value = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("credit_balance >= 0", name="chk_accounts_credit_balance_nonnegative"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "credit_operations",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("meta", json_value, nullable=True),
        sa.Column("created_at", sa.Integer(), nullable=False),
        sa.CheckConstraint("kind IN ('grant','debit')", name="chk_credit_operations_kind"),
        sa.CheckConstraint("status IN ('success','failed')", name="chk_credit_operations_status"),
        sa.CheckConstraint("amount > 0", name="chk_credit_operations_amount_positive"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_credit_operations_idempotency_key"),
    )
    op.create_index("ix_credit_operations_account_id", "credit_operations", ["account_id"], unique=False)
    op.create_index("ix_credit_operations_reference_id", "credit_operations", ["reference_id"], unique=False)
    op.create_index(
        "idx_credit_operations_account_created_at",
        "credit_operations",
        ["account_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("external_price_id", sa.String(length=255), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("credits_granted > 0", name="chk_plans_credits_positive"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plans_external_price_id", "plans", ["external_price_id"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("plan_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("current_period_start", sa.Integer(), nullable=True),
        sa.Column("current_period_end", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_account_id", "subscriptions", ["account_id"], unique=False)
    op.create_index(
        "ix_subscriptions_stripe_subscription_id",
        "subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_subscriptions_stripe_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_account_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_plans_external_price_id", table_name="plans")
    op.drop_table("plans")
    op.drop_index("idx_credit_operations_account_created_at", table_name="credit_operations")
    op.drop_index("ix_credit_operations_reference_id", table_name="credit_operations")
    op.drop_index("ix_credit_operations_account_id", table_name="credit_operations")
    op.drop_table("credit_operations")
    op.drop_table("accounts")
