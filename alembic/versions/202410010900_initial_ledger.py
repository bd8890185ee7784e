"""initial ledger schema

Revision ID: 202410010900
Revises:
Create Date: 2024-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202410010900"
down_revision = None
branch_labels = None
depends_on = None


FINANCE_KINDS = ("income", "expense", "autopay")
AUTOPAY_CADENCES = ("1d", "7d", "15d", "monthly")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("credential", sa.String(255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(200), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
    )

    op.create_table(
        "finance_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column(
            "kind", sa.Enum(*FINANCE_KINDS, name="financekind"), nullable=False
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("entry_date", sa.Date(), nullable=False),
        sa.Column("source_key", sa.String(120), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_finance_entries_amount_positive"
        ),
    )
    op.create_index(
        "ix_finance_entries_user_date", "finance_entries", ["user_email", "entry_date"]
    )
    op.create_index(
        "ix_finance_entries_user_source",
        "finance_entries",
        ["user_email", "source_key"],
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("current_amount_cents", sa.Integer(), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("current_amount_cents >= 0", name="ck_goals_current_nonneg"),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goals_target_positive"),
    )
    op.create_index("ix_goals_user", "goals", ["user_email"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("month_key", sa.String(7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.UniqueConstraint("user_email", "month_key", name="uq_budget_user_month"),
    )

    op.create_table(
        "autopay_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "cadence",
            sa.Enum(*AUTOPAY_CADENCES, name="autopaycadence"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("next_payment_date", sa.Date(), nullable=False),
        sa.Column(
            "active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_autopay_amount_positive"),
    )
    op.create_index(
        "ix_autopay_user_active_next",
        "autopay_plans",
        ["user_email", "active", "next_payment_date"],
    )


def downgrade() -> None:
    op.drop_index("ix_autopay_user_active_next", table_name="autopay_plans")
    op.drop_table("autopay_plans")
    op.drop_table("budgets")
    op.drop_index("ix_goals_user", table_name="goals")
    op.drop_table("goals")
    op.drop_index("ix_finance_entries_user_source", table_name="finance_entries")
    op.drop_index("ix_finance_entries_user_date", table_name="finance_entries")
    op.drop_table("finance_entries")
    op.drop_table("settings")
    op.drop_table("users")
